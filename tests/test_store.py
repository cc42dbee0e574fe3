from datetime import date

import pytest
from sqlalchemy.exc import OperationalError

from conftest import snapshot_payload
from tradewatch.core.date_utils import date_range_for, previous_business_day
from tradewatch.core.events import Operation
from tradewatch.errors import NotFoundError, StoreError, ValidationError
from tradewatch.services.models import TradeSnapshot, win_rate
from tradewatch.services.store import ALL_ROWS


def _ingest(store, **kw):
    return store.upsert_snapshot(TradeSnapshot.from_payload(snapshot_payload(**kw)))


class TestSnapshot:
    @pytest.mark.parametrize(
        "body",
        [{}, {"acc_number": 1001}, {"date": "2024-01-15"},
         {"acc_number": 0, "date": "2024-01-15"}, ["not", "a", "dict"]],
    )
    def test_missing_fields_rejected(self, body):
        with pytest.raises(ValidationError):
            TradeSnapshot.from_payload(body)

    def test_counters_default_to_zero(self):
        snap = TradeSnapshot.from_payload({"acc_number": "42", "date": "2024-01-15"})
        assert snap.acc_number == 42
        assert snap.history["win"] == 0
        assert snap.history_params()["current_profit"] == 0.0


class TestUpsert:
    def test_insert_then_update_same_day(self, store):
        account_id, op = _ingest(store, equity=1050.0)
        assert op is Operation.INSERT
        again_id, op = _ingest(store, equity=900.0)
        assert again_id == account_id
        assert op is Operation.UPDATE

        rows = store.history(acc_number=1001, limit=ALL_ROWS)
        assert len(rows) == 1
        assert rows[0]["equity"] == 900.0
        assert store.get_account(1001)["history_count"] == 1

    def test_new_day_adds_row(self, store):
        _ingest(store, day="2024-01-15")
        _, op = _ingest(store, day="2024-01-16")
        assert op is Operation.INSERT
        rows = store.history(acc_number=1001)
        assert [r["date"][:10] for r in rows] == ["2024-01-16", "2024-01-15"]

    def test_history_limit_offset(self, store):
        for d in ("2024-01-10", "2024-01-11", "2024-01-12"):
            _ingest(store, day=d)
        rows = store.history(acc_number=1001, limit=1, offset=1)
        assert [r["date"][:10] for r in rows] == ["2024-01-11"]
        assert len(store.history(limit=ALL_ROWS)) == 3

    def test_accounts_with_history_picks_latest_in_range(self, store):
        _ingest(store, day="2024-01-10", equity=1010.0)
        _ingest(store, day="2024-01-12", equity=1020.0)
        _ingest(store, acc_number=2002, day="2024-01-01")

        rows = store.accounts_with_history(date(2024, 1, 10), date(2024, 1, 11))
        by_acc = {r["acc_number"]: r for r in rows}
        assert by_acc[1001]["history"]["date"][:10] == "2024-01-10"
        assert by_acc[2002]["history"] is None
        assert by_acc[1001]["history_count"] == 2


class TestStats:
    def test_win_rate(self):
        assert win_rate(0, 0) == 0
        assert win_rate(7, 10) == 70.0
        assert win_rate(1, 3) == 33.33

    def test_today_vs_previous_business_day(self, store):
        # 2024-01-15 is a Monday
        _ingest(store, day="2024-01-15", total_trade=10, win=7, loss=3)
        _ingest(store, acc_number=2002, day="2024-01-12", total_trade=4,
                win=1, loss=3)
        stats = store.stats(today=date(2024, 1, 15))
        assert stats.total_accounts == 2
        assert stats.total_closed_trades == 10
        assert stats.win_rate == 70.0
        assert stats.before_total_closed_trades == 4
        assert stats.before_total_wins == 1

    def test_no_trades_zero_win_rate(self, store):
        _ingest(store, total_trade=0, win=0, loss=0)
        assert store.stats(today=date(2024, 1, 15)).win_rate == 0

    def test_single_account(self, store):
        _ingest(store)
        _ingest(store, acc_number=2002, balance=5.0)
        stats = store.stats(acc_number=2002, today=date(2024, 1, 15))
        assert stats.total_accounts == 1
        assert stats.total_balance == 5.0


class TestMutations:
    def test_delete_account_removes_history(self, store):
        _ingest(store)
        old = store.delete_account(1001)
        assert old["acc_number"] == 1001
        assert store.list_accounts() == []
        assert store.history(limit=ALL_ROWS) == []
        with pytest.raises(NotFoundError):
            store.delete_account(1001)

    def test_update_account(self, store):
        _ingest(store)
        cat = store.create_category("Prop firm")
        old, new = store.update_account(1001, "Alice", "a@x.io", cat["id"])
        assert old["name"] is None
        assert new["name"] == "Alice"
        assert new["category_title"] == "Prop firm"
        assert store.count_accounts(cat["id"]) == 1

    def test_update_missing_account(self, store):
        with pytest.raises(NotFoundError):
            store.update_account(1, None, None, None)

    def test_category_crud(self, store):
        with pytest.raises(ValidationError):
            store.create_category("")
        cat = store.create_category("Swing")
        renamed = store.update_category(cat["id"], "Scalp")
        assert renamed["title"] == "Scalp"
        assert [c["title"] for c in store.list_categories()] == ["Scalp"]
        with pytest.raises(NotFoundError):
            store.update_category(cat["id"] + 100, "x")

    def test_delete_category_detaches_accounts(self, store):
        _ingest(store)
        cat = store.create_category("Swing")
        store.update_account(1001, None, None, cat["id"])
        store.delete_category(cat["id"])
        assert store.list_categories() == []
        assert store.get_account(1001)["category_id"] is None

    def test_delete_category_is_atomic(self, store, monkeypatch):
        _ingest(store)
        cat = store.create_category("Swing")
        store.update_account(1001, None, None, cat["id"])

        def fail(conn, category_id):
            raise OperationalError("DELETE FROM categories", {}, Exception("boom"))

        monkeypatch.setattr(store, "_delete_category_row", fail)
        with pytest.raises(StoreError):
            store.delete_category(cat["id"])

        assert store.get_category(cat["id"])["title"] == "Swing"
        assert store.get_account(1001)["category_id"] == cat["id"]

    def test_delete_account_is_atomic(self, store, monkeypatch):
        _ingest(store, day="2024-01-15")
        _ingest(store, day="2024-01-16")

        def fail(conn, account_id):
            raise OperationalError("DELETE FROM accounts", {}, Exception("boom"))

        monkeypatch.setattr(store, "_delete_account_row", fail)
        with pytest.raises(StoreError):
            store.delete_account(1001)

        # history delete ran first in the same transaction and was rolled back
        assert store.get_account(1001)["acc_number"] == 1001
        assert len(store.history(acc_number=1001, limit=ALL_ROWS)) == 2

    def test_delete_missing_category(self, store):
        with pytest.raises(NotFoundError):
            store.delete_category(999)


class TestDates:
    def test_previous_business_day(self):
        assert previous_business_day(date(2024, 1, 15)) == date(2024, 1, 12)
        assert previous_business_day(date(2024, 1, 16)) == date(2024, 1, 15)
        assert previous_business_day(date(2024, 1, 14)) == date(2024, 1, 12)

    def test_date_ranges(self):
        today = date(2024, 1, 15)
        assert date_range_for("today", today) == (today, today)
        assert date_range_for("yesterday", today) == (date(2024, 1, 14),) * 2
        assert date_range_for("last7days", today) == (date(2024, 1, 9), today)
        assert date_range_for("last30days", today)[0] == date(2023, 12, 17)
        with pytest.raises(ValueError):
            date_range_for("lastyear", today)
