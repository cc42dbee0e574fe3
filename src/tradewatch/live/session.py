"""Wire the live pipeline for one mounted view.

    SSE stream -> ClientSubscriber -> Coalescer -> RefreshTrigger
              -> DashboardFetcher -> view.apply -> render

``async with LiveDashboard(...)`` is the view's mount: it opens the
subscription, then loads the data once. Leaving the block is the unmount: the
quiet-period timer, the stream reader, in-flight refetches and the HTTP
session are all torn down, whatever the exit path.
"""

from __future__ import annotations

import asyncio
from typing import Callable, Optional, Union

import aiohttp

from tradewatch.config import Settings
from tradewatch.core.logs import ViewLoggerAdapter, get_logger
from tradewatch.live.coalesce import Coalescer, QuietPeriodPolicy
from tradewatch.live.refresh import DashboardFetcher, RefreshTrigger
from tradewatch.live.subscriber import (
    ClientSubscriber,
    ConnectionStatus,
    MessageSource,
    SSETransportClient,
)
from tradewatch.live.view import AccountDetailView, DashboardView

log = get_logger("TradewatchLive")

View = Union[DashboardView, AccountDetailView]


class LiveDashboard:
    def __init__(
        self,
        base_url: str,
        view: View,
        *,
        settings: Optional[Settings] = None,
        render: Optional[Callable[[View], None]] = None,
        on_connection: Optional[Callable[[ConnectionStatus], None]] = None,
        session: Optional[aiohttp.ClientSession] = None,
        source: Optional[MessageSource] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.view = view
        self.settings = settings or Settings()
        self.render = render
        self.on_connection = on_connection
        self._session = session
        self._owns_session = session is None
        self._source = source
        if isinstance(view, AccountDetailView):
            label = f"account {view.acc_number}"
        else:
            label = "dashboard"
        self.log = ViewLoggerAdapter(log, label)
        self.subscriber: Optional[ClientSubscriber] = None
        self.trigger: Optional[RefreshTrigger] = None

    @property
    def connected(self) -> bool:
        return bool(self.subscriber and self.subscriber.connection.connected)

    async def _fetch(self):
        fetcher = DashboardFetcher(self._session, self.base_url)
        if isinstance(self.view, AccountDetailView):
            return await fetcher.fetch_account(
                self.view.acc_number, self.view.page, self.view.page_size
            )
        return await fetcher.fetch_dashboard(self.view.date_filter)

    def _apply(self, snapshot) -> None:
        self.view.apply(snapshot)
        if self.render is not None:
            self.render(self.view)

    async def refresh(self) -> bool:
        """Manual full reload."""
        assert self.trigger is not None
        return await self.trigger.refresh_now()

    def _auth(self) -> Optional[aiohttp.BasicAuth]:
        if not self.settings.auth_enabled:
            return None
        return aiohttp.BasicAuth(
            self.settings.basic_auth_user, self.settings.basic_auth_password
        )

    async def __aenter__(self) -> "LiveDashboard":
        if self._session is None:
            self._session = aiohttp.ClientSession(auth=self._auth())
        try:
            self.trigger = RefreshTrigger(self._fetch, self._apply, logger=self.log)
            policy = QuietPeriodPolicy(
                history_sec=self.settings.history_quiet_sec,
                accounts_sec=self.settings.accounts_quiet_sec,
            )
            coalescer = Coalescer(self.trigger.trigger, policy)
            source = self._source or SSETransportClient(
                self._session, f"{self.base_url}/stream/trading"
            )
            self.subscriber = ClientSubscriber(
                source,
                coalescer,
                logger=self.log,
                on_state=self.on_connection,
            )
            # subscribe first so writes landing during the initial load
            # still schedule a refresh
            self.subscriber.open()
            await self.trigger.refresh_now()
        except BaseException:
            await self._teardown()
            raise
        return self

    async def _teardown(self) -> None:
        if self.subscriber is not None:
            await self.subscriber.close()
        if self.trigger is not None:
            await self.trigger.aclose()
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self._teardown()

    async def run(self) -> None:
        """Block until cancelled."""
        await asyncio.Event().wait()
