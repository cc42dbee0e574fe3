"""View reconciliation: derived presentation state over fetched rows.

Sort, filter and pagination are pure functions of (base rows, state). The
views recompute them on every read; nothing derived is cached, so a new
snapshot or a state change is visible immediately.
"""

from __future__ import annotations

import enum
import math
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Any, Callable, Optional, Sequence

from tradewatch.core.date_utils import parse_timestamp
from tradewatch.core.utils import _to_float, _to_int, _utcnow

# ``page_size`` sentinel meaning "show every row on one page".
PAGE_SIZE_ALL = -1
INACTIVE_AFTER = timedelta(minutes=5)
_EPOCH = 0.0


class SortField(str, enum.Enum):
    ACCOUNT = "account"
    NAME = "name"
    BALANCE = "balance"
    EQUITY = "equity"
    LAST_UPDATE = "last_update"


class SortDirection(str, enum.Enum):
    ASC = "asc"
    DESC = "desc"


@dataclass(frozen=True)
class SortState:
    field: SortField = SortField.ACCOUNT
    direction: SortDirection = SortDirection.ASC

    def toggle(self, field: SortField) -> "SortState":
        """Same field flips direction; a new field starts ascending."""
        field = SortField(field)
        if field is self.field:
            flipped = (
                SortDirection.DESC
                if self.direction is SortDirection.ASC
                else SortDirection.ASC
            )
            return SortState(field, flipped)
        return SortState(field, SortDirection.ASC)


@dataclass(frozen=True)
class FilterState:
    category_id: Optional[int] = None
    inactive_only: bool = False


def _history_updated(row: dict) -> Optional[datetime]:
    history = row.get("history")
    if not history:
        return None
    return parse_timestamp(history.get("updated_at"))


def _sort_key(field: SortField) -> Callable[[dict], Any]:
    if field is SortField.ACCOUNT:
        return lambda r: _to_int(r.get("acc_number"))
    if field is SortField.NAME:
        return lambda r: (r.get("name") or "").lower()
    if field is SortField.BALANCE:
        return lambda r: _to_float(r.get("balance"))
    if field is SortField.EQUITY:
        return lambda r: _to_float(r.get("equity"))

    def last_update(r: dict) -> float:
        ts = _history_updated(r)
        return ts.timestamp() if ts else _EPOCH

    return last_update


def sort_accounts(
    rows: Sequence[dict],
    field: SortField = SortField.ACCOUNT,
    direction: SortDirection = SortDirection.ASC,
) -> list[dict]:
    """Stable sort; text compares case-insensitively."""
    return sorted(
        rows,
        key=_sort_key(SortField(field)),
        reverse=SortDirection(direction) is SortDirection.DESC,
    )


def is_inactive(
    row: dict,
    now: Optional[datetime] = None,
    window: timedelta = INACTIVE_AFTER,
) -> bool:
    """No history, or no history update within ``window`` of ``now``."""
    updated = _history_updated(row)
    if updated is None:
        return True
    now = now or _utcnow()
    return now - updated > window


def filter_accounts(
    rows: Sequence[dict],
    category_id: Optional[int] = None,
    inactive_only: bool = False,
    now: Optional[datetime] = None,
    window: timedelta = INACTIVE_AFTER,
) -> list[dict]:
    out = list(rows)
    if category_id is not None:
        out = [r for r in out if r.get("category_id") == category_id]
    if inactive_only:
        now = now or _utcnow()
        out = [r for r in out if is_inactive(r, now, window)]
    return out


@dataclass(frozen=True)
class Page:
    rows: list
    page: int
    page_size: int
    total: int
    pages: int


def paginate(rows: Sequence[Any], page: int = 1, page_size: int = 100) -> Page:
    """Slice ``rows`` into 1-based pages; ``PAGE_SIZE_ALL`` shows all."""
    total = len(rows)
    if page_size == PAGE_SIZE_ALL:
        return Page(list(rows), 1, PAGE_SIZE_ALL, total, 1)
    if page_size <= 0:
        raise ValueError("page_size must be positive or PAGE_SIZE_ALL")
    pages = max(1, math.ceil(total / page_size))
    page = min(max(1, page), pages)
    start = (page - 1) * page_size
    return Page(list(rows[start:start + page_size]), page, page_size, total, pages)


def floating_pl(row: dict) -> float:
    return _to_float(row.get("equity")) - _to_float(row.get("balance"))


@dataclass
class DashboardView:
    """Dashboard state: authoritative rows plus filter/sort state."""

    accounts: list[dict] = field(default_factory=list)
    stats: dict = field(default_factory=dict)
    sort: SortState = field(default_factory=SortState)
    filters: FilterState = field(default_factory=FilterState)
    date_filter: str = "today"
    inactive_after: timedelta = INACTIVE_AFTER
    revision: int = 0

    def apply(self, snapshot: Any) -> None:
        """Replace base data wholesale with a fetched snapshot."""
        self.accounts = list(snapshot.accounts)
        self.stats = dict(snapshot.stats)
        self.revision += 1

    def sort_by(self, field: SortField) -> None:
        self.sort = self.sort.toggle(SortField(field))

    def set_category(self, category_id: Optional[int]) -> None:
        self.filters = replace(self.filters, category_id=category_id)

    def set_inactive_only(self, flag: bool) -> None:
        self.filters = replace(self.filters, inactive_only=flag)

    def visible(self, now: Optional[datetime] = None) -> list[dict]:
        rows = filter_accounts(
            self.accounts,
            self.filters.category_id,
            self.filters.inactive_only,
            now,
            self.inactive_after,
        )
        return sort_accounts(rows, self.sort.field, self.sort.direction)

    def inactive_count(self, now: Optional[datetime] = None) -> int:
        now = now or _utcnow()
        return sum(
            1 for r in self.accounts if is_inactive(r, now, self.inactive_after)
        )


@dataclass
class AccountDetailView:
    """One account with its paginated history."""

    acc_number: int
    account: Optional[dict] = None
    history: list[dict] = field(default_factory=list)
    page: int = 1
    page_size: int = 100
    revision: int = 0

    def apply(self, snapshot: Any) -> None:
        self.account = snapshot.account
        self.history = list(snapshot.history)
        self.revision += 1

    def set_page(self, page: int) -> None:
        self.page = max(1, page)

    def set_page_size(self, page_size: int) -> None:
        self.page_size = page_size
        self.page = 1
