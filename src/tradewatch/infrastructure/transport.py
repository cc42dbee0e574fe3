"""Event transports that fan change notifications out to subscribers.

Two interchangeable implementations, one per deployment:

* ``PgNotifyTransport`` - Postgres ``pg_notify`` / ``LISTEN``;
* ``LocalBroadcaster`` - in-process queues, used when the store is not
  Postgres (SQLite dev deployments, tests). Only listeners inside the same
  process receive events.

Neither offers delivery, ordering or replay guarantees.
"""

from __future__ import annotations

import queue
import select
import threading
from typing import Iterator, Optional, Protocol

import psycopg2
import psycopg2.extensions
from sqlalchemy import text
from sqlalchemy.engine import Engine

from tradewatch.core.events import channel_name
from tradewatch.core.logs import get_logger
from tradewatch.infrastructure.db import is_postgres, libpq_url

log = get_logger("TradewatchTransport")


class ChangeTransport(Protocol):
    def publish(self, channel: str, payload: str) -> None:
        ...

    def listen(
        self, channel: str, timeout: float
    ) -> Iterator[Optional[str]]:
        """Yield payloads; yield ``None`` after ``timeout`` s of silence.

        The first item is always ``None``, yielded once the subscription
        is live.
        """
        ...


class PgNotifyTransport:
    """Publish via ``pg_notify`` and listen on a dedicated connection."""

    def __init__(self, engine: Engine, dsn: Optional[str] = None):
        self.engine = engine
        self.dsn = dsn or libpq_url(engine)

    def publish(self, channel: str, payload: str) -> None:
        # Own autocommit transaction: never part of the caller's write.
        with self.engine.begin() as conn:
            conn.execute(
                text("SELECT pg_notify(:channel, :payload)"),
                {"channel": channel_name(channel), "payload": payload},
            )

    def listen(
        self, channel: str, timeout: float
    ) -> Iterator[Optional[str]]:
        conn = psycopg2.connect(self.dsn)
        conn.set_isolation_level(psycopg2.extensions.ISOLATION_LEVEL_AUTOCOMMIT)
        cur = conn.cursor()
        cur.execute(f"LISTEN {channel_name(channel)};")
        try:
            yield None
            while True:
                if select.select([conn], [], [], timeout) == ([], [], []):
                    yield None
                    continue
                conn.poll()
                while conn.notifies:
                    note = conn.notifies.pop(0)
                    yield note.payload
        finally:
            try:
                cur.close()
            finally:
                conn.close()


class LocalBroadcaster:
    """In-process fan-out with one bounded queue per listener."""

    def __init__(self, maxsize: int = 256):
        self.maxsize = maxsize
        self._lock = threading.Lock()
        self._listeners: dict[str, list[queue.Queue]] = {}

    def listener_count(self, channel: str) -> int:
        with self._lock:
            return len(self._listeners.get(channel_name(channel), []))

    def publish(self, channel: str, payload: str) -> None:
        with self._lock:
            targets = list(self._listeners.get(channel_name(channel), []))
        for q in targets:
            try:
                q.put_nowait(payload)
            except queue.Full:
                log.debug("listener queue full; dropping event")

    def subscribe(self, channel: str) -> queue.Queue:
        q: queue.Queue = queue.Queue(maxsize=self.maxsize)
        with self._lock:
            self._listeners.setdefault(channel_name(channel), []).append(q)
        return q

    def unsubscribe(self, channel: str, q: queue.Queue) -> None:
        with self._lock:
            listeners = self._listeners.get(channel_name(channel), [])
            if q in listeners:
                listeners.remove(q)

    def listen(
        self, channel: str, timeout: float
    ) -> Iterator[Optional[str]]:
        q = self.subscribe(channel)
        try:
            yield None
            while True:
                try:
                    yield q.get(timeout=timeout)
                except queue.Empty:
                    yield None
        finally:
            self.unsubscribe(channel, q)


def transport_for(engine: Engine) -> ChangeTransport:
    """Pick the transport matching the store backend."""
    if is_postgres(engine):
        return PgNotifyTransport(engine)
    return LocalBroadcaster()
