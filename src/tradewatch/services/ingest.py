"""Ingest path: upsert a trade snapshot, then publish one change event."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from tradewatch.core.events import ChangeEvent, Operation, SourceTable
from tradewatch.core.logs import get_logger
from tradewatch.services.models import TradeSnapshot
from tradewatch.services.publisher import EventPublisher
from tradewatch.services.store import TradingStore

log = get_logger("TradewatchIngest")


@dataclass(frozen=True)
class IngestResult:
    account_id: int
    operation: Operation
    published: bool


def ingest_payload(
    store: TradingStore,
    publisher: EventPublisher,
    payload: Any,
) -> IngestResult:
    """Validate, upsert and publish.

    Validation failures raise before any write. The publish happens after
    the commit and never affects the stored result.
    """
    snap = TradeSnapshot.from_payload(payload)
    return ingest_snapshot(store, publisher, snap)


def ingest_snapshot(
    store: TradingStore,
    publisher: EventPublisher,
    snap: TradeSnapshot,
) -> IngestResult:
    account_id, op = store.upsert_snapshot(snap)
    event = ChangeEvent(
        source_table=SourceTable.HISTORY,
        operation=op,
        new_state={
            "account_id": account_id,
            "acc_number": snap.acc_number,
            "balance": snap.balance,
            "equity": snap.equity,
            "current": dict(snap.current),
            "history": dict(snap.history),
            "date": snap.date.isoformat(),
        },
    )
    published = publisher.publish(event)
    log.info(
        "ingest acc_number=%s date=%s op=%s published=%s",
        snap.acc_number,
        snap.date,
        op.value,
        published,
    )
    return IngestResult(account_id=account_id, operation=op, published=published)
