"""
tests/unit/test_timer.py — TaskTimer state machine

Covers:
  - STOPPED → SCHEDULED → RUNNING → STOPPED lifecycle
  - single-use: arming twice raises TimerStateError
  - cancel() before fire, after fire, and while running
  - run_immediately still records the computed instant as the fired occurrence
  - handler result replaces properties; None / empty leaves them alone
  - handler errors, bad return types and unknown handlers become failures
  - sync handlers run off the loop, async handlers are awaited
  - seconds_until() clamping and timezone handling
"""

from __future__ import annotations

import asyncio
import threading
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from taskcadence.exceptions import HandlerNotFoundError, TaskExecutionError, TimerStateError
from taskcadence.scheduler.handlers import HandlerRegistry
from taskcadence.scheduler.timer import TaskTimer, call_handler, seconds_until
from taskcadence.scheduler.types import FixedClock, TaskDescriptor, TimerStatus


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

NOW = datetime(2024, 1, 20, 10, 0, tzinfo=timezone.utc)


def _make_descriptor(handler: str = "work", **kw) -> TaskDescriptor:
    fields = dict(id=7, handler=handler, schedule_time=NOW, properties={"count": "0"})
    fields.update(kw)
    return TaskDescriptor(**fields)


def _make_timer(handlers: HandlerRegistry, descriptor: TaskDescriptor | None = None, clock=None):
    notifier = MagicMock()
    on_complete = MagicMock()
    timer = TaskTimer(
        descriptor or _make_descriptor(),
        handlers=handlers,
        clock=clock or FixedClock(NOW),
        notifier=notifier,
        on_complete=on_complete,
    )
    return timer, notifier, on_complete


async def _wait_for(predicate, timeout: float = 2.0) -> bool:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        if predicate():
            return True
        await asyncio.sleep(0.005)
    return predicate()


@pytest.fixture
def handlers() -> HandlerRegistry:
    return HandlerRegistry()


# ─────────────────────────────────────────────────────────────────────────────
# Lifecycle
# ─────────────────────────────────────────────────────────────────────────────

class TestLifecycle:

    def test_new_timer_is_stopped(self, handlers):
        timer, _, _ = _make_timer(handlers)
        assert timer.status is TimerStatus.STOPPED
        assert timer.scheduled_for is None
        assert not timer.has_pending_alarm

    @pytest.mark.asyncio
    async def test_arm_sets_scheduled(self, handlers):
        handlers.register("work", lambda props: None)
        timer, _, _ = _make_timer(handlers)
        at = NOW + timedelta(hours=1)
        timer.arm(at)
        assert timer.status is TimerStatus.SCHEDULED
        assert timer.scheduled_for == at
        assert timer.has_pending_alarm
        assert timer.cancel()

    @pytest.mark.asyncio
    async def test_fire_completes_and_records_execution(self, handlers):
        handlers.register("work", lambda props: None)
        clock = FixedClock(NOW)
        timer, notifier, on_complete = _make_timer(handlers, clock=clock)

        timer.arm(NOW)
        assert await _wait_for(lambda: on_complete.called)

        completed_timer, updated = on_complete.call_args.args
        assert completed_timer is timer
        assert updated.schedule_time == NOW
        assert updated.last_execution == NOW
        assert updated.properties == {"count": "0"}
        notifier.notify_success.assert_called_once_with(updated)
        notifier.notify_failure.assert_not_called()
        assert timer.status is TimerStatus.STOPPED
        assert timer.descriptor is updated

    @pytest.mark.asyncio
    async def test_arm_twice_raises(self, handlers):
        handlers.register("work", lambda props: None)
        timer, _, _ = _make_timer(handlers)
        timer.arm(NOW + timedelta(hours=1))
        with pytest.raises(TimerStateError):
            timer.arm(NOW + timedelta(hours=2))
        timer.cancel()

    @pytest.mark.asyncio
    async def test_rearm_after_fire_raises(self, handlers):
        handlers.register("work", lambda props: None)
        timer, _, on_complete = _make_timer(handlers)
        timer.arm(NOW)
        assert await _wait_for(lambda: on_complete.called)
        with pytest.raises(TimerStateError):
            timer.arm(NOW)

    @pytest.mark.asyncio
    async def test_arm_after_uses_clock(self, handlers):
        handlers.register("work", lambda props: None)
        timer, _, _ = _make_timer(handlers)
        timer.arm_after(timedelta(minutes=5))
        assert timer.scheduled_for == NOW + timedelta(minutes=5)
        timer.cancel()

    def test_arm_outside_event_loop_raises(self, handlers):
        timer, _, _ = _make_timer(handlers)
        with pytest.raises(RuntimeError):
            timer.arm(NOW)
        assert timer.status is TimerStatus.STOPPED


# ─────────────────────────────────────────────────────────────────────────────
# Cancellation
# ─────────────────────────────────────────────────────────────────────────────

class TestCancel:

    @pytest.mark.asyncio
    async def test_cancel_before_fire(self, handlers):
        calls: list[dict] = []
        handlers.register("work", lambda props: calls.append(props))
        timer, notifier, on_complete = _make_timer(handlers)

        timer.arm(NOW + timedelta(milliseconds=50))
        assert timer.cancel() is True
        assert timer.status is TimerStatus.STOPPED

        await asyncio.sleep(0.15)
        assert calls == []
        on_complete.assert_not_called()
        notifier.notify_success.assert_not_called()
        assert not timer.has_pending_alarm

    @pytest.mark.asyncio
    async def test_cancel_twice_returns_false(self, handlers):
        handlers.register("work", lambda props: None)
        timer, _, _ = _make_timer(handlers)
        timer.arm(NOW + timedelta(hours=1))
        assert timer.cancel() is True
        assert timer.cancel() is False

    def test_cancel_unarmed_returns_false(self, handlers):
        timer, _, _ = _make_timer(handlers)
        assert timer.cancel() is False

    @pytest.mark.asyncio
    async def test_cancel_while_running_lets_run_finish(self, handlers):
        started = asyncio.Event()
        release = asyncio.Event()

        async def slow(props):
            started.set()
            await release.wait()
            return {"done": "yes"}

        handlers.register("work", slow)
        timer, notifier, on_complete = _make_timer(handlers)
        timer.arm(NOW)

        await asyncio.wait_for(started.wait(), timeout=2)
        assert timer.status is TimerStatus.RUNNING
        assert timer.cancel() is False
        assert timer.status is TimerStatus.RUNNING

        release.set()
        assert await _wait_for(lambda: on_complete.called)
        _, updated = on_complete.call_args.args
        assert updated.properties == {"done": "yes"}
        notifier.notify_success.assert_called_once()


# ─────────────────────────────────────────────────────────────────────────────
# Firing
# ─────────────────────────────────────────────────────────────────────────────

class TestFire:

    @pytest.mark.asyncio
    async def test_naive_descriptor_records_naive_last_execution(self, handlers):
        handlers.register("work", lambda props: None)
        naive = NOW.replace(tzinfo=None)
        timer, _, on_complete = _make_timer(handlers, _make_descriptor(schedule_time=naive))
        timer.arm(naive)
        assert await _wait_for(lambda: on_complete.called)
        _, updated = on_complete.call_args.args
        assert updated.schedule_time == naive
        assert updated.last_execution == naive
        assert updated.last_execution.tzinfo is None

    @pytest.mark.asyncio
    async def test_run_immediately_records_computed_instant(self, handlers):
        handlers.register("work", lambda props: None)
        timer, _, on_complete = _make_timer(handlers)
        planned = NOW + timedelta(days=3)

        timer.arm(planned, run_immediately=True)
        assert timer.run_immediately
        assert await _wait_for(lambda: on_complete.called, timeout=1.0)

        _, updated = on_complete.call_args.args
        assert updated.schedule_time == planned
        assert updated.last_execution == NOW

    @pytest.mark.asyncio
    async def test_returned_map_replaces_properties(self, handlers):
        def bump(props):
            return {"count": str(int(props["count"]) + 1)}

        handlers.register("work", bump)
        timer, _, on_complete = _make_timer(handlers)
        timer.arm(NOW)
        assert await _wait_for(lambda: on_complete.called)
        _, updated = on_complete.call_args.args
        assert updated.properties == {"count": "1"}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("returned", [None, {}])
    async def test_empty_result_keeps_properties(self, handlers, returned):
        handlers.register("work", lambda props: returned)
        timer, _, on_complete = _make_timer(handlers)
        timer.arm(NOW)
        assert await _wait_for(lambda: on_complete.called)
        _, updated = on_complete.call_args.args
        assert updated.properties == {"count": "0"}

    @pytest.mark.asyncio
    async def test_handler_gets_a_copy_of_properties(self, handlers):
        def scribble(props):
            props["count"] = "999"
            props["extra"] = "x"

        handlers.register("work", scribble)
        descriptor = _make_descriptor()
        timer, _, on_complete = _make_timer(handlers, descriptor)
        timer.arm(NOW)
        assert await _wait_for(lambda: on_complete.called)
        assert descriptor.properties == {"count": "0"}
        _, updated = on_complete.call_args.args
        assert updated.properties == {"count": "0"}

    @pytest.mark.asyncio
    async def test_sync_handler_runs_off_loop_thread(self, handlers):
        seen: list[int] = []
        handlers.register("work", lambda props: seen.append(threading.get_ident()))
        timer, _, on_complete = _make_timer(handlers)
        timer.arm(NOW)
        assert await _wait_for(lambda: on_complete.called)
        assert seen and seen[0] != threading.get_ident()

    @pytest.mark.asyncio
    async def test_async_handler_is_awaited(self, handlers):
        async def work(props):
            await asyncio.sleep(0)
            return {"async": "true"}

        handlers.register("work", work)
        timer, notifier, on_complete = _make_timer(handlers)
        timer.arm(NOW)
        assert await _wait_for(lambda: on_complete.called)
        _, updated = on_complete.call_args.args
        assert updated.properties == {"async": "true"}
        notifier.notify_success.assert_called_once()


# ─────────────────────────────────────────────────────────────────────────────
# Failures
# ─────────────────────────────────────────────────────────────────────────────

class TestFailure:

    @pytest.mark.asyncio
    async def test_handler_exception_is_failure_outcome(self, handlers):
        def boom(props):
            raise RuntimeError("disk full")

        handlers.register("work", boom)
        timer, notifier, on_complete = _make_timer(handlers)
        timer.arm(NOW)
        assert await _wait_for(lambda: on_complete.called)

        notifier.notify_success.assert_not_called()
        notifier.notify_failure.assert_called_once()
        updated, error = notifier.notify_failure.call_args.args
        assert isinstance(error, TaskExecutionError)
        assert isinstance(error.__cause__, RuntimeError)
        assert error.task_id == 7
        assert error.handler == "work"
        assert "disk full" in str(error)

        # Failure still records the run and keeps the old properties.
        assert updated.last_execution == NOW
        assert updated.properties == {"count": "0"}
        assert timer.last_error is error
        assert timer.status is TimerStatus.STOPPED

    @pytest.mark.asyncio
    async def test_non_mapping_result_is_failure(self, handlers):
        handlers.register("work", lambda props: 42)
        timer, notifier, on_complete = _make_timer(handlers)
        timer.arm(NOW)
        assert await _wait_for(lambda: on_complete.called)
        _, error = notifier.notify_failure.call_args.args
        assert isinstance(error.cause, TypeError)

    @pytest.mark.asyncio
    async def test_unregistered_handler_at_fire_time_is_failure(self, handlers):
        timer, notifier, on_complete = _make_timer(handlers, _make_descriptor(handler="gone"))
        timer.arm(NOW)
        assert await _wait_for(lambda: on_complete.called)
        _, error = notifier.notify_failure.call_args.args
        assert isinstance(error.cause, HandlerNotFoundError)

    @pytest.mark.asyncio
    async def test_raising_notifier_does_not_block_completion(self, handlers):
        handlers.register("work", lambda props: None)
        timer, notifier, on_complete = _make_timer(handlers)
        notifier.notify_success.side_effect = RuntimeError("listener bug")
        timer.arm(NOW)
        assert await _wait_for(lambda: on_complete.called)
        assert timer.status is TimerStatus.STOPPED

    @pytest.mark.asyncio
    async def test_raising_completion_callback_leaves_timer_stopped(self, handlers):
        handlers.register("work", lambda props: None)
        timer, _, on_complete = _make_timer(handlers)
        on_complete.side_effect = RuntimeError("re-arm failed")
        timer.arm(NOW)
        assert await _wait_for(lambda: on_complete.called)
        await asyncio.sleep(0.01)
        assert timer.status is TimerStatus.STOPPED


# ─────────────────────────────────────────────────────────────────────────────
# Helpers under test
# ─────────────────────────────────────────────────────────────────────────────

class TestSecondsUntil:

    def test_future(self):
        assert seconds_until(NOW + timedelta(seconds=90), NOW) == 90.0

    def test_past_clamps_to_zero(self):
        assert seconds_until(NOW - timedelta(hours=1), NOW) == 0.0

    def test_mixed_offsets_compare_in_utc(self):
        plus_two = timezone(timedelta(hours=2))
        instant = datetime(2024, 1, 20, 12, 0, 30, tzinfo=plus_two)   # 10:00:30 UTC
        assert seconds_until(instant, NOW) == 30.0

    def test_naive(self):
        assert seconds_until(datetime(2024, 1, 1, 0, 1), datetime(2024, 1, 1)) == 60.0

    def test_naive_instant_against_aware_now_uses_wall_time(self):
        assert seconds_until(datetime(2024, 1, 20, 10, 0, 45), NOW) == 45.0


class TestCallHandler:

    @pytest.mark.asyncio
    async def test_callable_object_with_async_call(self):
        class Job:
            async def __call__(self, props):
                return {"seen": props["k"]}

        assert await call_handler(Job(), {"k": "v"}) == {"seen": "v"}

    @pytest.mark.asyncio
    async def test_sync_handler_returning_awaitable(self):
        async def inner():
            return {"wrapped": "1"}

        assert await call_handler(lambda props: inner(), {}) == {"wrapped": "1"}

    @pytest.mark.asyncio
    async def test_rejects_list_result(self):
        with pytest.raises(TypeError, match="mapping"):
            await call_handler(lambda props: ["nope"], {})
