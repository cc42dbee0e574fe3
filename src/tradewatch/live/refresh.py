"""Refresh trigger: turn a coalesced update into a full refetch.

Refetches always read the complete current state; nothing is patched from
the event payload. Overlapping refetches may race. Each one is stamped
with a sequence number and a response older than the one already applied
is discarded, so the view never moves backwards.
"""

from __future__ import annotations

import asyncio
import contextlib
import itertools
from dataclasses import dataclass
from datetime import date
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar

import aiohttp

from tradewatch.core.date_utils import date_range_for
from tradewatch.core.logs import ViewLoggerAdapter, get_logger
from tradewatch.live.coalesce import CoalescedUpdate
from tradewatch.services.store import ALL_ROWS

log = get_logger("TradewatchLive")

T = TypeVar("T")


@dataclass(frozen=True)
class DashboardSnapshot:
    accounts: list[dict]
    stats: dict


@dataclass(frozen=True)
class AccountSnapshot:
    account: Optional[dict]
    history: list[dict]


class DashboardFetcher:
    """Read-only HTTP client for the listing and stats endpoints."""

    def __init__(self, session: aiohttp.ClientSession, base_url: str):
        self.session = session
        self.base_url = base_url.rstrip("/")

    async def _get_json(self, path: str, params: Optional[dict] = None) -> Any:
        async with self.session.get(
            f"{self.base_url}{path}", params=params
        ) as resp:
            resp.raise_for_status()
            return await resp.json()

    async def fetch_dashboard(
        self,
        date_filter: str = "today",
        today: Optional[date] = None,
    ) -> DashboardSnapshot:
        start, end = date_range_for(date_filter, today)
        accounts = await self._get_json(
            "/api/trading/accounts-with-history",
            {"start_date": start.isoformat(), "end_date": end.isoformat()},
        )
        stats = await self._get_json("/api/trading/stats")
        return DashboardSnapshot(accounts=accounts, stats=stats)

    async def fetch_account(
        self,
        acc_number: int,
        page: int = 1,
        page_size: int = 100,
    ) -> AccountSnapshot:
        accounts = await self._get_json(
            "/api/trading/accounts", {"acc_number": str(acc_number)}
        )
        params = {"acc_number": str(acc_number)}
        if page_size == ALL_ROWS:
            params["limit"] = str(ALL_ROWS)
        else:
            params["limit"] = str(page_size)
            params["offset"] = str((max(page, 1) - 1) * page_size)
        history = await self._get_json("/api/trading/history", params)
        return AccountSnapshot(
            account=accounts[0] if accounts else None,
            history=history,
        )


class RefreshTrigger(Generic[T]):
    """Run full refetches and apply only the newest response."""

    def __init__(
        self,
        fetch: Callable[[], Awaitable[T]],
        apply: Callable[[T], None],
        *,
        logger: Optional[ViewLoggerAdapter] = None,
    ):
        self.fetch = fetch
        self.apply = apply
        self.log = logger or ViewLoggerAdapter(log, "view")
        self._seq = itertools.count(1)
        self.applied_seq = 0
        self.discarded = 0
        self._tasks: set[asyncio.Task] = set()

    def trigger(self, update: Optional[CoalescedUpdate] = None) -> asyncio.Task:
        """Schedule a refetch; safe to call from a loop callback."""
        seq = next(self._seq)
        if update is not None:
            self.log.info(
                "refresh #%d after %d coalesced event(s)", seq, update.absorbed
            )
        task = asyncio.get_running_loop().create_task(self._run(seq))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def refresh_now(self) -> bool:
        """Manual "reload everything"; returns whether it was applied."""
        return await self._run(next(self._seq))

    async def _run(self, seq: int) -> bool:
        try:
            data = await self.fetch()
        except asyncio.CancelledError:
            raise
        except Exception:
            self.log.exception("refresh #%d failed; keeping last state", seq)
            return False
        if seq < self.applied_seq:
            self.discarded += 1
            self.log.debug(
                "refresh #%d superseded by #%d; discarded", seq, self.applied_seq
            )
            return False
        self.applied_seq = seq
        self.apply(data)
        return True

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    async def aclose(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._tasks.clear()
