"""Change events published after committed writes.

Events are transient: they are not persisted and carry no delivery or
ordering guarantee. Consumers treat an event only as a hint that the
authoritative state changed and re-read it in full.

Wire format (one JSON object per notification)::

    {"source_table": "history", "operation": "update",
     "new_state": {...} | null, "old_state": {...} | null,
     "emitted_at": "2024-01-15T10:00:00+00:00"}
"""

from __future__ import annotations

import enum
import json
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional, Union

import pandas as pd

from tradewatch.core.utils import _json_safe, _utcnow
from tradewatch.errors import ValidationError


class SourceTable(str, enum.Enum):
    ACCOUNTS = "accounts"
    HISTORY = "history"


class Operation(str, enum.Enum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


class EventFormatError(ValidationError):
    """Raised when a transport payload is not a valid ChangeEvent."""


def _state(value: Any, key: str) -> Optional[dict[str, Any]]:
    if value is None:
        return None
    if not isinstance(value, dict):
        raise EventFormatError(f"{key} must be an object or null")
    return value


@dataclass(frozen=True)
class ChangeEvent:
    """One committed write, tagged by the table it touched."""

    source_table: SourceTable
    operation: Operation
    new_state: Optional[dict[str, Any]] = None
    old_state: Optional[dict[str, Any]] = None
    emitted_at: datetime = field(default_factory=_utcnow)

    def to_payload(self) -> dict[str, Any]:
        return {
            "source_table": self.source_table.value,
            "operation": self.operation.value,
            "new_state": (
                {k: _json_safe(v) for k, v in self.new_state.items()}
                if self.new_state is not None
                else None
            ),
            "old_state": (
                {k: _json_safe(v) for k, v in self.old_state.items()}
                if self.old_state is not None
                else None
            ),
            "emitted_at": self.emitted_at.isoformat(),
        }

    def to_json(self) -> str:
        return json.dumps(self.to_payload())

    @classmethod
    def parse(cls, raw: Union[str, bytes, dict]) -> "ChangeEvent":
        """Validate a raw transport payload into a ChangeEvent."""
        if isinstance(raw, (str, bytes)):
            try:
                raw = json.loads(raw)
            except ValueError as exc:
                raise EventFormatError(f"payload is not JSON: {exc}") from exc
        if not isinstance(raw, dict):
            raise EventFormatError("payload must be a JSON object")

        try:
            source_table = SourceTable(raw.get("source_table"))
        except ValueError:
            raise EventFormatError(
                f"unknown source_table: {raw.get('source_table')!r}"
            ) from None
        try:
            operation = Operation(raw.get("operation"))
        except ValueError:
            raise EventFormatError(
                f"unknown operation: {raw.get('operation')!r}"
            ) from None

        emitted_raw = raw.get("emitted_at")
        if emitted_raw is None:
            emitted_at = _utcnow()
        else:
            try:
                emitted_at = pd.to_datetime(emitted_raw, utc=True).to_pydatetime()
            except (TypeError, ValueError) as exc:
                raise EventFormatError(f"bad emitted_at: {emitted_raw!r}") from exc
        if emitted_at.tzinfo is None:
            emitted_at = emitted_at.replace(tzinfo=timezone.utc)

        return cls(
            source_table=source_table,
            operation=operation,
            new_state=_state(raw.get("new_state"), "new_state"),
            old_state=_state(raw.get("old_state"), "old_state"),
            emitted_at=emitted_at,
        )


_SAFE_RE = re.compile(r"[^a-z0-9_]")


def channel_name(raw: str) -> str:
    """Return a safe Postgres identifier for a NOTIFY channel.

    Lowercase, collapse non-alphanumeric runs to one underscore, strip
    edge underscores and prefix leading digits with ``c_``. Empty results
    fall back to ``trading``.
    """
    s = _SAFE_RE.sub("_", raw.lower())
    s = re.sub(r"_+", "_", s).strip("_")
    if not s:
        s = "trading"
    if s[0].isdigit():
        s = f"c_{s}"
    return s
