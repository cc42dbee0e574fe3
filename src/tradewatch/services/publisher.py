"""Fire-and-forget publishing of change events."""

from __future__ import annotations

from tradewatch.core.events import ChangeEvent
from tradewatch.core.logs import get_logger
from tradewatch.infrastructure.transport import ChangeTransport

log = get_logger("TradewatchPublisher")


class EventPublisher:
    """Hand committed-write events to the transport.

    Called only after the write has committed. A failed publish is logged
    and reported as ``False``; the write is never retried or rolled back.
    """

    def __init__(self, transport: ChangeTransport, channel: str = "trading"):
        self.transport = transport
        self.channel = channel

    def publish(self, event: ChangeEvent) -> bool:
        try:
            self.transport.publish(self.channel, event.to_json())
        except Exception:
            log.exception(
                "publish failed channel=%s table=%s op=%s",
                self.channel,
                event.source_table.value,
                event.operation.value,
            )
            return False
        log.debug(
            "published channel=%s table=%s op=%s",
            self.channel,
            event.source_table.value,
            event.operation.value,
        )
        return True
