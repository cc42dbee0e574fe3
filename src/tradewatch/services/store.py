"""Relational store for accounts, their daily history and categories.

All single-row mutations are one server-side statement (upsert-by-key or
delete-by-key). The two operations that touch dependent rows before
removing a parent (account delete, category delete) run in one
transaction: either both statements commit or neither does.
"""

from __future__ import annotations

import contextlib
from datetime import date
from typing import Any, Iterator, Optional

import pandas as pd
from sqlalchemy import text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

from tradewatch.core.date_utils import previous_business_day
from tradewatch.core.events import Operation
from tradewatch.core.logs import get_logger
from tradewatch.core.utils import _json_row, _to_float, _to_int, _utcnow
from tradewatch.errors import NotFoundError, StoreError, ValidationError
from tradewatch.services.models import TradeSnapshot, TradeStats, win_rate

log = get_logger("TradewatchStore")

# ``limit`` sentinel meaning "return every row".
ALL_ROWS = -1

HISTORY_COLS: tuple[str, ...] = (
    "current_total_trade",
    "current_profit",
    "current_lot",
    "current_order_buy_count",
    "current_order_sell_count",
    "history_total_trade",
    "history_profit",
    "history_lot",
    "history_order_buy_count",
    "history_order_sell_count",
    "history_win",
    "history_loss",
)

_ACCOUNT_SELECT = """
    SELECT a.id,
           a.acc_number,
           a.name,
           a.email,
           a.balance,
           a.equity,
           a.category_id,
           c.title AS category_title,
           a.updated_at,
           (SELECT COUNT(*) FROM history h2
             WHERE h2.account_id = a.id) AS history_count
      FROM accounts a
      LEFT JOIN categories c ON a.category_id = c.id
"""


def _now_iso() -> str:
    return _utcnow().isoformat()


class TradingStore:
    """SQL repository over a SQLAlchemy engine."""

    def __init__(self, engine: Engine):
        self.engine = engine

    @contextlib.contextmanager
    def _tx(self, op: str) -> Iterator[Connection]:
        """Run a block in one transaction; DB errors become StoreError."""
        try:
            with self.engine.begin() as conn:
                yield conn
        except SQLAlchemyError as exc:
            log.exception("%s failed; transaction rolled back", op)
            raise StoreError(f"Failed to {op}") from exc

    # ──────────────────────────────────────────────────────────────
    #  Ingest
    # ──────────────────────────────────────────────────────────────

    def upsert_snapshot(self, snap: TradeSnapshot) -> tuple[int, Operation]:
        """Upsert the account and its history row for ``snap.date``.

        Returns the account id and whether the history row was inserted or
        updated.
        """
        now = _now_iso()
        day = snap.date.isoformat()
        with self._tx("save trade data") as conn:
            account_id = conn.execute(
                text(
                    """
                    INSERT INTO accounts (acc_number, balance, equity, updated_at)
                    VALUES (:acc_number, :balance, :equity, :now)
                    ON CONFLICT (acc_number) DO UPDATE SET
                        balance = EXCLUDED.balance,
                        equity = EXCLUDED.equity,
                        updated_at = EXCLUDED.updated_at
                    RETURNING id
                    """
                ),
                {
                    "acc_number": snap.acc_number,
                    "balance": snap.balance,
                    "equity": snap.equity,
                    "now": now,
                },
            ).scalar_one()

            existing = conn.execute(
                text(
                    "SELECT id FROM history "
                    "WHERE account_id = :account_id AND date = :date"
                ),
                {"account_id": account_id, "date": day},
            ).scalar_one_or_none()

            cols = ", ".join(HISTORY_COLS)
            placeholders = ", ".join(f":{c}" for c in HISTORY_COLS)
            sets = ",\n".join(f"{c} = EXCLUDED.{c}" for c in HISTORY_COLS)
            conn.execute(
                text(
                    f"""
                    INSERT INTO history (account_id, date, {cols}, updated_at)
                    VALUES (:account_id, :date, {placeholders}, :now)
                    ON CONFLICT (account_id, date) DO UPDATE SET
                        {sets},
                        updated_at = EXCLUDED.updated_at
                    """
                ),
                {
                    "account_id": account_id,
                    "date": day,
                    "now": now,
                    **snap.history_params(),
                },
            )
        op = Operation.INSERT if existing is None else Operation.UPDATE
        return int(account_id), op

    # ──────────────────────────────────────────────────────────────
    #  Listings
    # ──────────────────────────────────────────────────────────────

    def list_accounts(self, acc_number: Optional[int] = None) -> list[dict]:
        sql = _ACCOUNT_SELECT
        params: dict[str, Any] = {}
        if acc_number is not None:
            sql += " WHERE a.acc_number = :acc_number"
            params["acc_number"] = acc_number
        sql += " ORDER BY a.updated_at DESC"
        with self._tx("fetch accounts") as conn:
            rows = conn.execute(text(sql), params).mappings().all()
        out = []
        for r in rows:
            row = _json_row(r)
            row["history_count"] = _to_int(row["history_count"])
            out.append(row)
        return out

    def get_account(self, acc_number: int) -> dict:
        rows = self.list_accounts(acc_number)
        if not rows:
            raise NotFoundError("Account not found")
        return rows[0]

    def accounts_with_history(self, start: date, end: date) -> list[dict]:
        """Return accounts joined with their latest history in a range."""
        hist_cols = ",\n".join(f"h.{c}" for c in HISTORY_COLS)
        sql = f"""
            SELECT a.id,
                   a.acc_number,
                   a.name,
                   a.email,
                   a.balance,
                   a.equity,
                   a.category_id,
                   c.title AS category_title,
                   a.updated_at AS account_updated_at,
                   h.id AS history_id,
                   h.date AS history_date,
                   {hist_cols},
                   h.updated_at AS history_updated_at,
                   (SELECT COUNT(*) FROM history h2
                     WHERE h2.account_id = a.id) AS history_count
              FROM accounts a
              LEFT JOIN categories c ON a.category_id = c.id
              LEFT JOIN history h ON h.id = (
                    SELECT h3.id FROM history h3
                     WHERE h3.account_id = a.id
                       AND h3.date BETWEEN :start AND :end
                  ORDER BY h3.date DESC, h3.updated_at DESC
                     LIMIT 1
              )
          ORDER BY a.updated_at DESC
        """
        with self._tx("fetch accounts with history") as conn:
            rows = conn.execute(
                text(sql),
                {"start": start.isoformat(), "end": end.isoformat()},
            ).mappings().all()

        out = []
        for r in rows:
            row = _json_row(r)
            history = None
            if row["history_id"] is not None:
                history = {
                    "id": row["history_id"],
                    "account_id": row["id"],
                    "acc_number": row["acc_number"],
                    "email": row["email"],
                    "date": row["history_date"],
                    "balance": row["balance"],
                    "equity": row["equity"],
                    **{c: row[c] for c in HISTORY_COLS},
                    "updated_at": row["history_updated_at"],
                }
            out.append(
                {
                    "id": row["id"],
                    "acc_number": row["acc_number"],
                    "name": row["name"],
                    "email": row["email"],
                    "balance": row["balance"],
                    "equity": row["equity"],
                    "category_id": row["category_id"],
                    "category_title": row["category_title"],
                    "updated_at": row["account_updated_at"],
                    "history_count": _to_int(row["history_count"]),
                    "history": history,
                }
            )
        return out

    def history(
        self,
        acc_number: Optional[int] = None,
        start: Optional[date] = None,
        end: Optional[date] = None,
        limit: int = 30,
        offset: int = 0,
    ) -> list[dict]:
        """Return history rows joined with account fields, newest first."""
        where = ["1=1"]
        params: dict[str, Any] = {}
        if acc_number is not None:
            where.append("a.acc_number = :acc_number")
            params["acc_number"] = acc_number
        if start is not None:
            where.append("h.date >= :start")
            params["start"] = start.isoformat()
        if end is not None:
            where.append("h.date <= :end")
            params["end"] = end.isoformat()

        sql = f"""
            SELECT h.*,
                   a.acc_number,
                   a.email,
                   a.balance,
                   a.equity
              FROM history h
              JOIN accounts a ON h.account_id = a.id
             WHERE {' AND '.join(where)}
          ORDER BY h.date DESC, h.updated_at DESC
        """
        if limit != ALL_ROWS:
            if limit < 0 or offset < 0:
                raise ValidationError("limit and offset must be >= 0")
            sql += " LIMIT :limit OFFSET :offset"
            params["limit"] = limit
            params["offset"] = offset

        with self._tx("fetch history") as conn:
            df = pd.read_sql(text(sql), conn, params=params)
        df = df.astype(object).where(df.notna(), None)
        return [_json_row(r) for r in df.to_dict(orient="records")]

    # ──────────────────────────────────────────────────────────────
    #  Stats
    # ──────────────────────────────────────────────────────────────

    def _history_sums(
        self,
        conn: Connection,
        day: date,
        acc_number: Optional[int],
    ) -> dict[str, Any]:
        sql = """
            SELECT COALESCE(SUM(h.current_total_trade), 0) AS open_trades,
                   COALESCE(SUM(h.current_profit), 0) AS open_profit,
                   COALESCE(SUM(h.history_total_trade), 0) AS closed_trades,
                   COALESCE(SUM(h.history_profit), 0) AS closed_profit,
                   COALESCE(SUM(h.history_win), 0) AS wins,
                   COALESCE(SUM(h.history_loss), 0) AS losses
              FROM history h
              JOIN accounts a ON h.account_id = a.id
             WHERE h.date = :day
        """
        params: dict[str, Any] = {"day": day.isoformat()}
        if acc_number is not None:
            sql += " AND a.acc_number = :acc_number"
            params["acc_number"] = acc_number
        return dict(conn.execute(text(sql), params).mappings().one())

    def stats(
        self,
        acc_number: Optional[int] = None,
        today: Optional[date] = None,
    ) -> TradeStats:
        """Aggregate today vs. the previous business day."""
        today = today or date.today()
        before = previous_business_day(today)

        sql = """
            SELECT COUNT(a.id) AS total_accounts,
                   COALESCE(SUM(a.balance), 0) AS total_balance,
                   COALESCE(SUM(a.equity), 0) AS total_equity
              FROM accounts a
        """
        params: dict[str, Any] = {}
        if acc_number is not None:
            sql += " WHERE a.acc_number = :acc_number"
            params["acc_number"] = acc_number

        with self._tx("fetch stats") as conn:
            acc = conn.execute(text(sql), params).mappings().one()
            cur = self._history_sums(conn, today, acc_number)
            prev = self._history_sums(conn, before, acc_number)

        closed = _to_int(cur["closed_trades"])
        wins = _to_int(cur["wins"])
        return TradeStats(
            total_accounts=_to_int(acc["total_accounts"]),
            total_balance=_to_float(acc["total_balance"]),
            total_equity=_to_float(acc["total_equity"]),
            total_open_trades=_to_int(cur["open_trades"]),
            total_open_profit=_to_float(cur["open_profit"]),
            total_closed_trades=closed,
            total_closed_profit=_to_float(cur["closed_profit"]),
            total_wins=wins,
            total_losses=_to_int(cur["losses"]),
            win_rate=win_rate(wins, closed),
            before_total_open_trades=_to_int(prev["open_trades"]),
            before_total_open_profit=_to_float(prev["open_profit"]),
            before_total_closed_trades=_to_int(prev["closed_trades"]),
            before_total_closed_profit=_to_float(prev["closed_profit"]),
            before_total_wins=_to_int(prev["wins"]),
            before_total_losses=_to_int(prev["losses"]),
        )

    # ──────────────────────────────────────────────────────────────
    #  Account mutations
    # ──────────────────────────────────────────────────────────────

    def update_account(
        self,
        acc_number: int,
        name: Optional[str],
        email: Optional[str],
        category_id: Optional[int],
    ) -> tuple[dict, dict]:
        """Update display fields; return ``(old_row, new_row)``."""
        old = self.get_account(acc_number)
        with self._tx("update account") as conn:
            result = conn.execute(
                text(
                    """
                    UPDATE accounts
                       SET name = :name,
                           email = :email,
                           category_id = :category_id,
                           updated_at = :now
                     WHERE acc_number = :acc_number
                    """
                ),
                {
                    "name": name,
                    "email": email,
                    "category_id": category_id,
                    "now": _now_iso(),
                    "acc_number": acc_number,
                },
            )
            if result.rowcount == 0:
                raise NotFoundError("Account not found")
        return old, self.get_account(acc_number)

    def _delete_account_history(self, conn: Connection, account_id: int) -> None:
        conn.execute(
            text("DELETE FROM history WHERE account_id = :account_id"),
            {"account_id": account_id},
        )

    def _delete_account_row(self, conn: Connection, account_id: int) -> None:
        conn.execute(
            text("DELETE FROM accounts WHERE id = :account_id"),
            {"account_id": account_id},
        )

    def delete_account(self, acc_number: int) -> dict:
        """Delete an account and all its history atomically."""
        with self._tx("delete account") as conn:
            row = conn.execute(
                text(
                    "SELECT id, acc_number, name, email, balance, equity, "
                    "category_id, updated_at "
                    "FROM accounts WHERE acc_number = :acc_number"
                ),
                {"acc_number": acc_number},
            ).mappings().first()
            if row is None:
                raise NotFoundError("Account not found")
            self._delete_account_history(conn, row["id"])
            self._delete_account_row(conn, row["id"])
        return _json_row(row)

    # ──────────────────────────────────────────────────────────────
    #  Categories
    # ──────────────────────────────────────────────────────────────

    def list_categories(self) -> list[dict]:
        with self._tx("fetch categories") as conn:
            rows = conn.execute(
                text(
                    "SELECT id, title, created_at, updated_at "
                    "FROM categories ORDER BY title ASC"
                )
            ).mappings().all()
        return [_json_row(r) for r in rows]

    def get_category(self, category_id: int) -> dict:
        with self._tx("fetch category") as conn:
            row = conn.execute(
                text(
                    "SELECT id, title, created_at, updated_at "
                    "FROM categories WHERE id = :id"
                ),
                {"id": category_id},
            ).mappings().first()
        if row is None:
            raise NotFoundError("Category not found")
        return _json_row(row)

    def create_category(self, title: str) -> dict:
        if not title:
            raise ValidationError("Title is required")
        now = _now_iso()
        with self._tx("create category") as conn:
            new_id = conn.execute(
                text(
                    "INSERT INTO categories (title, created_at, updated_at) "
                    "VALUES (:title, :now, :now) RETURNING id"
                ),
                {"title": title, "now": now},
            ).scalar_one()
        return self.get_category(int(new_id))

    def update_category(self, category_id: int, title: str) -> dict:
        if not title or not category_id:
            raise ValidationError("Title and ID are required")
        with self._tx("update category") as conn:
            result = conn.execute(
                text(
                    "UPDATE categories SET title = :title, updated_at = :now "
                    "WHERE id = :id"
                ),
                {"title": title, "now": _now_iso(), "id": category_id},
            )
            if result.rowcount == 0:
                raise NotFoundError("Category not found")
        return self.get_category(category_id)

    def _detach_category(self, conn: Connection, category_id: int) -> None:
        conn.execute(
            text(
                "UPDATE accounts SET category_id = NULL "
                "WHERE category_id = :id"
            ),
            {"id": category_id},
        )

    def _delete_category_row(self, conn: Connection, category_id: int) -> int:
        result = conn.execute(
            text("DELETE FROM categories WHERE id = :id"),
            {"id": category_id},
        )
        return result.rowcount

    def delete_category(self, category_id: int) -> None:
        """Null dependent account references, then delete the category."""
        if not category_id:
            raise ValidationError("ID is required")
        with self._tx("delete category") as conn:
            self._detach_category(conn, category_id)
            if self._delete_category_row(conn, category_id) == 0:
                raise NotFoundError("Category not found")

    def count_accounts(self, category_id: int) -> int:
        with self._tx("fetch accounts count") as conn:
            count = conn.execute(
                text(
                    "SELECT COUNT(*) FROM accounts "
                    "WHERE category_id = :id"
                ),
                {"id": category_id},
            ).scalar_one()
        return _to_int(count)
