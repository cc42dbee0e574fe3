"""Live client pipeline: subscriber, refresh trigger and session wiring."""

import asyncio
import contextlib
from unittest.mock import AsyncMock, MagicMock

import aiohttp
import pytest
from aiohttp import web

from tradewatch.config import Settings
from tradewatch.core.events import ChangeEvent, Operation, SourceTable
from tradewatch.live import session as live_session
from tradewatch.live.coalesce import Coalescer, QuietPeriodPolicy
from tradewatch.live.refresh import DashboardSnapshot, RefreshTrigger
from tradewatch.live.session import LiveDashboard
from tradewatch.live.subscriber import (
    ClientSubscriber,
    ConnectionStatus,
    SSEParser,
    SSETransportClient,
)
from tradewatch.live.view import DashboardView

EVENT = ChangeEvent(SourceTable.HISTORY, Operation.INSERT).to_json()


class FakeSource:
    """Message source that replays a list, then idles until cancelled."""

    def __init__(self, items):
        self.items = list(items)
        self.on_state = None
        self.drained = asyncio.Event()

    async def messages(self):
        self.on_state(ConnectionStatus.CONNECTED)
        for item in self.items:
            yield item
        self.drained.set()
        await asyncio.Event().wait()


@contextlib.asynccontextmanager
async def sse_server(handler):
    """Serve ``handler`` at /stream/trading on an ephemeral local port."""
    app = web.Application()
    app.router.add_get("/stream/trading", handler)
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, "127.0.0.1", 0)
    await site.start()
    host, port = runner.addresses[0][:2]
    try:
        yield f"http://{host}:{port}/stream/trading"
    finally:
        await runner.cleanup()


async def _collect(client, count):
    out = []
    stream = client.messages()
    try:
        async for payload in stream:
            out.append(payload)
            if len(out) == count:
                break
    finally:
        await stream.aclose()
    return out


class TestSSEParser:
    def test_events_and_comments(self):
        p = SSEParser()
        assert p.feed_line(": connected\n") is None
        assert p.feed_line("\n") is None
        assert p.feed_line("data: {\"a\": 1}\n") is None
        assert p.feed_line("\n") == '{"a": 1}'

    def test_multiline_data_and_retry(self):
        p = SSEParser()
        p.feed_line("retry: 1500")
        p.feed_line("data: one")
        p.feed_line("data:two")
        assert p.feed_line("") == "one\ntwo"
        assert p.retry_ms == 1500


class TestSSETransportClient:
    @pytest.mark.asyncio
    async def test_reconnects_using_server_retry(self):
        hits = []
        done = asyncio.Event()

        async def handler(request):
            hits.append(request.path)
            resp = web.StreamResponse(
                headers={"Content-Type": "text/event-stream"}
            )
            await resp.prepare(request)
            if len(hits) == 1:
                await resp.write(b"retry: 50\n\n")
            await resp.write(f"data: {EVENT}\n\n".encode())
            if len(hits) > 1:
                with contextlib.suppress(asyncio.TimeoutError):
                    await asyncio.wait_for(done.wait(), 2.0)
            return resp

        states = []
        async with sse_server(handler) as url:
            async with aiohttp.ClientSession() as session:
                # 5 s default would outlast the wait_for below
                client = SSETransportClient(session, url, retry_sec=5.0)
                client.on_state = states.append
                payloads = await asyncio.wait_for(_collect(client, 2), 3.0)
            done.set()

        assert payloads == [EVENT, EVENT]
        assert len(hits) == 2
        assert client.retry_sec == 0.05
        assert states == [
            ConnectionStatus.CONNECTING,
            ConnectionStatus.CONNECTED,
            ConnectionStatus.DISCONNECTED,
            ConnectionStatus.CONNECTING,
            ConnectionStatus.CONNECTED,
            ConnectionStatus.DISCONNECTED,
        ]

    @pytest.mark.asyncio
    async def test_undecodable_bytes_do_not_end_stream(self):
        done = asyncio.Event()

        async def handler(request):
            resp = web.StreamResponse(
                headers={"Content-Type": "text/event-stream"}
            )
            await resp.prepare(request)
            await resp.write(b"data: caf\xe9\n\n")
            await resp.write(f"data: {EVENT}\n\n".encode())
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(done.wait(), 2.0)
            return resp

        states = []
        async with sse_server(handler) as url:
            async with aiohttp.ClientSession() as session:
                client = SSETransportClient(session, url, reconnect=False)
                client.on_state = states.append
                payloads = await asyncio.wait_for(_collect(client, 2), 3.0)
            done.set()

        assert payloads == ["caf\ufffd", EVENT]
        assert states.count(ConnectionStatus.CONNECTED) == 1


class TestClientSubscriber:
    @pytest.mark.asyncio
    async def test_malformed_events_are_dropped(self):
        updates = []
        source = FakeSource(["garbage", '{"source_table": "orders"}', EVENT])
        coalescer = Coalescer(updates.append, QuietPeriodPolicy(0.03, 0.03))
        states = []
        async with ClientSubscriber(source, coalescer,
                                    on_state=states.append) as sub:
            await asyncio.wait_for(source.drained.wait(), 1.0)
            await asyncio.sleep(0.15)
            assert sub.connection.connected
        assert len(updates) == 1
        assert updates[0].absorbed == 1
        assert states == [ConnectionStatus.CONNECTED,
                          ConnectionStatus.DISCONNECTED]

    @pytest.mark.asyncio
    async def test_close_cancels_pending_update(self):
        updates = []
        source = FakeSource([EVENT, EVENT])
        coalescer = Coalescer(updates.append, QuietPeriodPolicy(0.1, 0.1))
        sub = ClientSubscriber(source, coalescer)
        sub.open()
        await asyncio.wait_for(source.drained.wait(), 1.0)
        await sub.close()
        await asyncio.sleep(0.2)
        assert updates == []
        assert not sub.connection.connected

    def test_receive_validates(self):
        coalescer = MagicMock()
        sub = ClientSubscriber(FakeSource([]), coalescer)
        assert sub.receive("{}") is None
        coalescer.push.assert_not_called()
        event = sub.receive(EVENT)
        assert event.source_table is SourceTable.HISTORY
        coalescer.push.assert_called_once()


class TestRefreshTrigger:
    @pytest.mark.asyncio
    async def test_stale_response_is_discarded(self):
        gates = []
        values = iter(["old", "new"])

        async def fetch():
            gate = asyncio.Event()
            gates.append(gate)
            value = next(values)
            await gate.wait()
            return value

        applied = []
        trigger = RefreshTrigger(fetch, applied.append)
        first = trigger.trigger()
        second = trigger.trigger()
        while len(gates) < 2:
            await asyncio.sleep(0)

        gates[1].set()
        assert await second is True
        gates[0].set()
        assert await first is False

        assert applied == ["new"]
        assert trigger.discarded == 1
        assert trigger.in_flight == 0

    @pytest.mark.asyncio
    async def test_failed_fetch_keeps_state(self):
        applied = []

        async def fetch():
            raise RuntimeError("503")

        trigger = RefreshTrigger(fetch, applied.append)
        assert await trigger.refresh_now() is False
        assert applied == []

    @pytest.mark.asyncio
    async def test_aclose_cancels_in_flight(self):
        started = asyncio.Event()

        async def fetch():
            started.set()
            await asyncio.sleep(10)

        applied = []
        trigger = RefreshTrigger(fetch, applied.append)
        trigger.trigger()
        await started.wait()
        await trigger.aclose()
        assert trigger.in_flight == 0
        assert applied == []


class TestLiveDashboard:
    @pytest.mark.asyncio
    async def test_mount_refresh_and_unmount(self, monkeypatch):
        calls = []

        async def fake_fetch(self):
            calls.append(1)
            return DashboardSnapshot(
                accounts=[{"acc_number": len(calls)}], stats={}
            )

        monkeypatch.setattr(LiveDashboard, "_fetch", fake_fetch)
        settings = Settings(history_quiet_sec=0.03, accounts_quiet_sec=0.03)
        source = FakeSource([EVENT, EVENT, EVENT])
        renders = []
        view = DashboardView()

        async with LiveDashboard(
            "http://dash.local",
            view,
            settings=settings,
            session=MagicMock(),
            source=source,
            render=lambda v: renders.append(v.revision),
        ) as live:
            assert view.revision == 1
            await asyncio.wait_for(source.drained.wait(), 1.0)
            await asyncio.sleep(0.2)
            assert live.connected

        # one initial load plus one coalesced refresh for the burst
        assert renders == [1, 2]
        assert view.accounts == [{"acc_number": 2}]
        assert not live.connected

    @pytest.mark.asyncio
    async def test_events_during_initial_load_schedule_refresh(
        self, monkeypatch
    ):
        source = FakeSource([EVENT])
        seen = []

        async def fake_fetch(self):
            if not seen:
                # the stream delivers while the first load is in flight
                await asyncio.wait_for(source.drained.wait(), 1.0)
            seen.append(self.connected)
            return DashboardSnapshot(
                accounts=[{"acc_number": len(seen)}], stats={}
            )

        monkeypatch.setattr(LiveDashboard, "_fetch", fake_fetch)
        settings = Settings(history_quiet_sec=0.03, accounts_quiet_sec=0.03)
        view = DashboardView()

        async with LiveDashboard("http://dash.local", view, settings=settings,
                                 session=MagicMock(), source=source):
            assert view.revision == 1
            await asyncio.sleep(0.2)

        assert seen == [True, True]
        assert view.accounts == [{"acc_number": 2}]

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "user, password, expected",
        [
            ("admin", "s3cret", aiohttp.BasicAuth("admin", "s3cret")),
            (None, None, None),
        ],
    )
    async def test_owned_session_sends_basic_auth(self, monkeypatch, user,
                                                  password, expected):
        created = []

        def fake_session(**kwargs):
            session = MagicMock()
            session.close = AsyncMock()
            created.append((kwargs, session))
            return session

        async def fake_fetch(self):
            return DashboardSnapshot(accounts=[], stats={})

        monkeypatch.setattr(live_session.aiohttp, "ClientSession", fake_session)
        monkeypatch.setattr(LiveDashboard, "_fetch", fake_fetch)
        settings = Settings(basic_auth_user=user, basic_auth_password=password)

        async with LiveDashboard("http://dash.local", DashboardView(),
                                 settings=settings, source=FakeSource([])):
            pass

        assert len(created) == 1
        kwargs, session = created[0]
        assert kwargs["auth"] == expected
        session.close.assert_awaited_once()
