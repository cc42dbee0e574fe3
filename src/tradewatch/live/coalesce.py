"""Debounce/coalesce unit for one dashboard subscription.

Rapid bursts of change events collapse into one ``CoalescedUpdate`` that
carries only the last event, emitted once the stream has been quiet for
the event's quiet period. Intermediate events are dropped: a refresh
always re-reads the authoritative state, so only the fact that something
changed matters.

``CoalesceMachine`` holds the state and the transitions; ``Coalescer``
drives it from an asyncio loop with a single timer handle.

    Idle --event--> Pending(event, deadline)
    Pending --event--> Pending(new event, new deadline)
    Pending --timer (now >= deadline)--> Idle, emit
    any --teardown--> Closed
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional, Union

from tradewatch.core.events import ChangeEvent, SourceTable
from tradewatch.core.logs import get_logger
from tradewatch.core.utils import _utcnow

log = get_logger("TradewatchLive")


@dataclass(frozen=True)
class QuietPeriodPolicy:
    """Quiet period (seconds) per source table."""

    history_sec: float = 3.0
    accounts_sec: float = 5.0

    def for_event(self, event: ChangeEvent) -> float:
        if event.source_table is SourceTable.HISTORY:
            return self.history_sec
        return self.accounts_sec


@dataclass(frozen=True)
class CoalescedUpdate:
    event: ChangeEvent
    # Events folded into this update, including the emitted one.
    absorbed: int = 1
    fired_at: datetime = field(default_factory=_utcnow)


@dataclass(frozen=True)
class Idle:
    pass


@dataclass(frozen=True)
class Pending:
    last_event: ChangeEvent
    deadline: float
    absorbed: int = 1


@dataclass(frozen=True)
class Closed:
    pass


State = Union[Idle, Pending, Closed]


class CoalesceMachine:
    """Single-slot state machine; times are monotonic seconds."""

    def __init__(self, policy: Optional[QuietPeriodPolicy] = None):
        self.policy = policy or QuietPeriodPolicy()
        self.state: State = Idle()

    @property
    def closed(self) -> bool:
        return isinstance(self.state, Closed)

    @property
    def pending_event(self) -> Optional[ChangeEvent]:
        if isinstance(self.state, Pending):
            return self.state.last_event
        return None

    def event_received(self, event: ChangeEvent, now: float) -> Optional[float]:
        """Overwrite the pending slot; return the new deadline.

        Returns ``None`` once torn down.
        """
        if isinstance(self.state, Closed):
            return None
        absorbed = 1
        if isinstance(self.state, Pending):
            absorbed = self.state.absorbed + 1
        deadline = now + self.policy.for_event(event)
        self.state = Pending(event, deadline, absorbed)
        return deadline

    def timer_fired(self, now: float) -> Optional[CoalescedUpdate]:
        """Emit the pending event if its deadline has passed."""
        state = self.state
        if not isinstance(state, Pending):
            return None
        if now < state.deadline:
            # Stale timer: a later event moved the deadline.
            return None
        self.state = Idle()
        return CoalescedUpdate(event=state.last_event, absorbed=state.absorbed)

    def torn_down(self) -> None:
        self.state = Closed()


class Coalescer:
    """Asyncio driver for ``CoalesceMachine`` with one timer handle."""

    def __init__(
        self,
        on_update: Callable[[CoalescedUpdate], None],
        policy: Optional[QuietPeriodPolicy] = None,
        *,
        loop: Optional[asyncio.AbstractEventLoop] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.machine = CoalesceMachine(policy)
        self.on_update = on_update
        self._loop = loop
        self._clock = clock
        self._handle: Optional[asyncio.TimerHandle] = None

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    @property
    def timer_pending(self) -> bool:
        return self._handle is not None

    def _now(self) -> float:
        if self._clock is not None:
            return self._clock()
        return self.loop.time()

    def _schedule(self, deadline: float, now: float) -> None:
        self._cancel_timer()
        self._handle = self.loop.call_later(
            max(0.0, deadline - now), self._fire
        )

    def push(self, event: ChangeEvent) -> None:
        """Buffer ``event`` and restart the quiet-period timer."""
        now = self._now()
        deadline = self.machine.event_received(event, now)
        if deadline is None:
            return
        self._schedule(deadline, now)

    def _fire(self) -> None:
        self._handle = None
        now = self._now()
        update = self.machine.timer_fired(now)
        if update is None:
            state = self.machine.state
            if isinstance(state, Pending):
                self._schedule(state.deadline, now)
            return
        log.debug(
            "coalesced %d event(s) table=%s op=%s",
            update.absorbed,
            update.event.source_table.value,
            update.event.operation.value,
        )
        try:
            self.on_update(update)
        except Exception:
            log.exception("refresh trigger failed")

    def _cancel_timer(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def close(self) -> None:
        """Tear down: cancel the timer; nothing is emitted afterwards."""
        self._cancel_timer()
        self.machine.torn_down()
