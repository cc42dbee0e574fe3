"""Date helpers shared between the web layer and the live client."""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from typing import Any, Optional

import pandas as pd

DATE_FILTERS = ("today", "yesterday", "last7days", "last30days")


def previous_business_day(d: date) -> date:
    """Return the most recent weekday strictly before ``d``."""
    return (pd.Timestamp(d) - pd.offsets.BDay(1)).date()


def date_range_for(
    date_filter: str, today: Optional[date] = None
) -> tuple[date, date]:
    """Return the inclusive ``(start, end)`` dates for a dashboard filter."""
    today = today or date.today()
    if date_filter == "today":
        return today, today
    if date_filter == "yesterday":
        y = today - timedelta(days=1)
        return y, y
    if date_filter == "last7days":
        return today - timedelta(days=6), today
    if date_filter == "last30days":
        return today - timedelta(days=29), today
    raise ValueError(f"unknown date filter: {date_filter!r}")


def parse_date(value: Any) -> Optional[date]:
    """Parse ``YYYY-MM-DD`` strings, dates and timestamps; ``None`` passes."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return pd.Timestamp(str(value)).date()


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Return an aware UTC datetime from DB or JSON values."""
    if value is None or value == "":
        return None
    try:
        ts = pd.to_datetime(value, utc=True)
    except (TypeError, ValueError):
        return None
    if pd.isna(ts):
        return None
    out = ts.to_pydatetime()
    if out.tzinfo is None:
        out = out.replace(tzinfo=timezone.utc)
    return out
