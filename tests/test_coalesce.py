"""Quiet-period coalescing: machine transitions and the asyncio driver."""

import asyncio

import pytest

from tradewatch.core.events import ChangeEvent, Operation, SourceTable
from tradewatch.live.coalesce import (
    Closed,
    CoalesceMachine,
    Coalescer,
    Idle,
    Pending,
    QuietPeriodPolicy,
)


def _history(n: int) -> ChangeEvent:
    return ChangeEvent(SourceTable.HISTORY, Operation.UPDATE,
                       new_state={"n": n})


def _accounts(n: int) -> ChangeEvent:
    return ChangeEvent(SourceTable.ACCOUNTS, Operation.UPDATE,
                       new_state={"n": n})


class TestCoalesceMachine:
    def test_quiet_periods_per_table(self):
        policy = QuietPeriodPolicy()
        assert policy.for_event(_history(1)) == 3.0
        assert policy.for_event(_accounts(1)) == 5.0

    def test_burst_keeps_only_last_event(self):
        m = CoalesceMachine()
        for i in range(5):
            m.event_received(_history(i), now=float(i) * 0.5)
        assert isinstance(m.state, Pending)
        # last event at t=2.0, deadline 5.0
        assert m.timer_fired(4.9) is None
        update = m.timer_fired(5.0)
        assert update is not None
        assert update.event.new_state == {"n": 4}
        assert update.absorbed == 5
        assert isinstance(m.state, Idle)

    def test_spaced_events_emit_each(self):
        m = CoalesceMachine()
        m.event_received(_history(1), now=0.0)
        first = m.timer_fired(3.0)
        m.event_received(_history(2), now=10.0)
        second = m.timer_fired(13.0)
        assert first.event.new_state == {"n": 1}
        assert second.event.new_state == {"n": 2}

    def test_later_event_restarts_with_its_own_quiet_period(self):
        m = CoalesceMachine()
        m.event_received(_history(1), now=0.0)
        deadline = m.event_received(_accounts(2), now=1.0)
        assert deadline == 6.0
        assert m.timer_fired(3.0) is None

    def test_teardown_drops_pending(self):
        m = CoalesceMachine()
        m.event_received(_history(1), now=0.0)
        m.torn_down()
        assert isinstance(m.state, Closed)
        assert m.timer_fired(100.0) is None
        assert m.event_received(_history(2), now=101.0) is None
        assert m.pending_event is None

    def test_timer_on_idle_is_noop(self):
        assert CoalesceMachine().timer_fired(1.0) is None


class TestCoalescer:
    @pytest.mark.asyncio
    async def test_burst_emits_once(self):
        updates = []
        c = Coalescer(updates.append, QuietPeriodPolicy(0.05, 0.05))
        for i in range(5):
            c.push(_history(i))
            await asyncio.sleep(0.005)
        await asyncio.sleep(0.2)
        assert len(updates) == 1
        assert updates[0].event.new_state == {"n": 4}
        assert updates[0].absorbed == 5
        assert not c.timer_pending

    @pytest.mark.asyncio
    async def test_spaced_events_emit_twice(self):
        updates = []
        c = Coalescer(updates.append, QuietPeriodPolicy(0.03, 0.03))
        c.push(_history(1))
        await asyncio.sleep(0.15)
        c.push(_history(2))
        await asyncio.sleep(0.15)
        assert [u.event.new_state["n"] for u in updates] == [1, 2]

    @pytest.mark.asyncio
    async def test_close_before_quiet_period_emits_nothing(self):
        updates = []
        c = Coalescer(updates.append, QuietPeriodPolicy(0.05, 0.05))
        c.push(_history(1))
        c.close()
        c.push(_history(2))
        await asyncio.sleep(0.15)
        assert updates == []
        assert not c.timer_pending

    @pytest.mark.asyncio
    async def test_callback_error_is_contained(self):
        calls = []

        def boom(update):
            calls.append(update)
            raise RuntimeError("refresh failed")

        c = Coalescer(boom, QuietPeriodPolicy(0.02, 0.02))
        c.push(_history(1))
        await asyncio.sleep(0.1)
        c.push(_history(2))
        await asyncio.sleep(0.1)
        assert len(calls) == 2
