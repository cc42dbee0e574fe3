"""Client-side subscription to the change stream.

``SSETransportClient`` reads the server's ``/stream/trading`` endpoint with
aiohttp and owns reconnection (EventSource semantics: wait ``retry`` ms,
then reconnect). ``ClientSubscriber`` is scoped to one mounted view: it
validates each payload into a ``ChangeEvent`` and hands it to the
coalescer, and its teardown cancels everything it started.
"""

from __future__ import annotations

import asyncio
import contextlib
import enum
from dataclasses import dataclass
from typing import AsyncIterator, Callable, Optional, Protocol

import aiohttp

from tradewatch.core.events import ChangeEvent, EventFormatError
from tradewatch.core.logs import ViewLoggerAdapter, get_logger
from tradewatch.live.coalesce import Coalescer

log = get_logger("TradewatchLive")


class ConnectionStatus(str, enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


@dataclass(frozen=True)
class ConnectionState:
    status: ConnectionStatus = ConnectionStatus.DISCONNECTED

    @property
    def connected(self) -> bool:
        return self.status is ConnectionStatus.CONNECTED


StateCallback = Callable[[ConnectionStatus], None]


class MessageSource(Protocol):
    on_state: Optional[StateCallback]

    def messages(self) -> AsyncIterator[str]:
        ...


class SSEParser:
    """Incremental parser for ``text/event-stream`` lines."""

    def __init__(self) -> None:
        self._data: list[str] = []
        self.retry_ms: Optional[int] = None

    def feed_line(self, line: str) -> Optional[str]:
        """Consume one line; return a payload when an event completes."""
        line = line.rstrip("\r\n")
        if not line:
            if not self._data:
                return None
            payload = "\n".join(self._data)
            self._data = []
            return payload
        if line.startswith(":"):
            return None
        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if name == "data":
            self._data.append(value)
        elif name == "retry" and value.isdigit():
            self.retry_ms = int(value)
        return None


class SSETransportClient:
    """Server-Sent-Events reader with EventSource-style reconnects."""

    def __init__(
        self,
        session: aiohttp.ClientSession,
        url: str,
        *,
        retry_sec: float = 3.0,
        reconnect: bool = True,
    ):
        self.session = session
        self.url = url
        self.retry_sec = retry_sec
        self.reconnect = reconnect
        self.on_state: Optional[StateCallback] = None

    def _notify(self, status: ConnectionStatus) -> None:
        if self.on_state is not None:
            self.on_state(status)

    async def messages(self) -> AsyncIterator[str]:
        while True:
            parser = SSEParser()
            self._notify(ConnectionStatus.CONNECTING)
            try:
                async with self.session.get(
                    self.url,
                    headers={"Accept": "text/event-stream"},
                    timeout=aiohttp.ClientTimeout(total=None, sock_connect=10),
                ) as resp:
                    resp.raise_for_status()
                    self._notify(ConnectionStatus.CONNECTED)
                    async for raw in resp.content:
                        line = raw.decode("utf-8", errors="replace")
                        payload = parser.feed_line(line)
                        if payload is not None:
                            yield payload
            except aiohttp.ClientError as exc:
                log.warning("stream %s failed: %s", self.url, exc)
            finally:
                self._notify(ConnectionStatus.DISCONNECTED)
            if not self.reconnect:
                return
            if parser.retry_ms is not None:
                self.retry_sec = parser.retry_ms / 1000.0
            await asyncio.sleep(self.retry_sec)


class ClientSubscriber:
    """One subscription per mounted view.

    ``async with`` opens the subscription and guarantees teardown on every
    exit path; after teardown no coalesced update is emitted.
    """

    def __init__(
        self,
        source: MessageSource,
        coalescer: Coalescer,
        *,
        logger: Optional[ViewLoggerAdapter] = None,
        on_state: Optional[StateCallback] = None,
    ):
        self.source = source
        self.coalescer = coalescer
        self.log = logger or ViewLoggerAdapter(log, "view")
        self.connection = ConnectionState()
        self._on_state = on_state
        self._task: Optional[asyncio.Task] = None
        source.on_state = self._transport_state

    def _transport_state(self, status: ConnectionStatus) -> None:
        if status is self.connection.status:
            return
        self.connection = ConnectionState(status)
        self.log.info("connection %s", status.value)
        if self._on_state is not None:
            self._on_state(status)

    def receive(self, raw: str) -> Optional[ChangeEvent]:
        """Validate one payload and buffer it in the coalescer."""
        try:
            event = ChangeEvent.parse(raw)
        except EventFormatError as exc:
            self.log.warning("dropping malformed event: %s", exc)
            return None
        self.log.debug(
            "event table=%s op=%s (debouncing)",
            event.source_table.value,
            event.operation.value,
        )
        self.coalescer.push(event)
        return event

    async def _run(self) -> None:
        stream = self.source.messages()
        try:
            async for raw in stream:
                self.receive(raw)
        except asyncio.CancelledError:
            raise
        except Exception:
            self.log.exception("subscription failed")
        finally:
            with contextlib.suppress(Exception):
                await stream.aclose()
            self._transport_state(ConnectionStatus.DISCONNECTED)

    def open(self) -> None:
        if self._task is None:
            self._task = asyncio.get_running_loop().create_task(self._run())

    async def close(self) -> None:
        self.coalescer.close()
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def __aenter__(self) -> "ClientSubscriber":
        self.open()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()
