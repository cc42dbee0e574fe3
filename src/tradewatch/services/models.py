"""Typed records passed between the ingest path, the store and the API."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import date
from typing import Any, Mapping

from tradewatch.core.date_utils import parse_date
from tradewatch.core.utils import _to_float, _to_int
from tradewatch.errors import ValidationError

CURRENT_KEYS = (
    "total_trade",
    "profit",
    "lot",
    "order_buy_count",
    "order_sell_count",
)
HISTORY_KEYS = CURRENT_KEYS + ("win", "loss")

# Float-valued counters; everything else is an integer count.
_FLOAT_KEYS = {"profit", "lot"}


def _counters(raw: Any, keys: tuple[str, ...], group: str) -> dict[str, Any]:
    if raw is None:
        raw = {}
    if not isinstance(raw, Mapping):
        raise ValidationError(f"{group} must be an object")
    out: dict[str, Any] = {}
    for k in keys:
        if k in _FLOAT_KEYS:
            out[k] = _to_float(raw.get(k))
        else:
            out[k] = _to_int(raw.get(k))
    return out


@dataclass(frozen=True)
class TradeSnapshot:
    """One ingest payload: account totals plus two counter groups."""

    acc_number: int
    date: date
    balance: float
    equity: float
    current: dict[str, Any] = field(default_factory=dict)
    history: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, data: Any) -> "TradeSnapshot":
        """Validate an ingest body; nothing is written when this raises."""
        if not isinstance(data, Mapping):
            raise ValidationError("Request body must be a JSON object")
        acc_raw = data.get("acc_number")
        date_raw = data.get("date")
        if not acc_raw or not date_raw:
            raise ValidationError("Missing required fields: acc_number, date")
        try:
            acc_number = int(acc_raw)
        except (TypeError, ValueError):
            raise ValidationError(
                f"acc_number must be an integer: {acc_raw!r}"
            ) from None
        try:
            snap_date = parse_date(date_raw)
        except (TypeError, ValueError):
            raise ValidationError(f"date is not a valid date: {date_raw!r}") from None
        return cls(
            acc_number=acc_number,
            date=snap_date,
            balance=_to_float(data.get("balance")),
            equity=_to_float(data.get("equity")),
            current=_counters(data.get("current"), CURRENT_KEYS, "current"),
            history=_counters(data.get("history"), HISTORY_KEYS, "history"),
        )

    def history_params(self) -> dict[str, Any]:
        """Flatten the counter groups into ``history`` column names."""
        params = {f"current_{k}": self.current.get(k, 0) for k in CURRENT_KEYS}
        params.update(
            {f"history_{k}": self.history.get(k, 0) for k in HISTORY_KEYS}
        )
        return params


@dataclass
class TradeStats:
    total_accounts: int = 0
    total_balance: float = 0.0
    total_equity: float = 0.0
    total_open_trades: int = 0
    total_open_profit: float = 0.0
    total_closed_trades: int = 0
    total_closed_profit: float = 0.0
    total_wins: int = 0
    total_losses: int = 0
    win_rate: float = 0.0
    # Previous business day
    before_total_open_trades: int = 0
    before_total_open_profit: float = 0.0
    before_total_closed_trades: int = 0
    before_total_closed_profit: float = 0.0
    before_total_wins: int = 0
    before_total_losses: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def win_rate(wins: int, closed: int) -> float:
    """Return wins / closed * 100 rounded to 2 places; 0 with no trades."""
    if closed <= 0:
        return 0.0
    return round(wins / closed * 100, 2)
