"""
scheduler/timer.py — TaskTimer

Owns exactly one armed alarm for one task.

    STOPPED ──arm()──▶ SCHEDULED ──alarm fires──▶ RUNNING ──done──▶ STOPPED
                           │
                           └──cancel()──▶ STOPPED

A timer is single-use: one arm/fire cycle. The registry builds a fresh
TaskTimer for every occurrence.

The alarm is an asyncio Task sleeping until the target instant; that task
handle is the cancellation token. cancel() only affects a SCHEDULED timer —
a run that has already started is fire-and-forget and always completes.

Fire sequence:
  1. SCHEDULED → RUNNING
  2. resolve the handler, call it with a copy of the properties
     (sync handlers run in the loop's default executor)
  3. any exception becomes a TaskExecutionError (failure outcome)
  4. record_execution(): last_execution = now, schedule_time = fired instant
  5. RUNNING → STOPPED, notify listeners
  6. hand the updated descriptor back to the registry to re-arm
"""

from __future__ import annotations

import asyncio
import functools
import inspect
import threading
from datetime import datetime, timedelta, timezone
from typing import Callable, Mapping, Optional, Protocol

from taskcadence.exceptions import TaskExecutionError, TimerStateError
from taskcadence.observability.logger import bind_task, clear_task, get_logger
from taskcadence.scheduler.handlers import HandlerRegistry
from taskcadence.scheduler.types import (
    Clock,
    HandlerResult,
    TaskDescriptor,
    TaskHandler,
    TimerStatus,
    match_awareness,
)

log = get_logger(__name__)


class OutcomeNotifier(Protocol):
    def notify_success(self, descriptor: TaskDescriptor) -> None: ...

    def notify_failure(self, descriptor: TaskDescriptor, error: TaskExecutionError) -> None: ...


CompletionCallback = Callable[["TaskTimer", TaskDescriptor], None]


def seconds_until(instant: datetime, now: datetime) -> float:
    """Non-negative delay in seconds; aware datetimes are compared in UTC."""
    now = match_awareness(now, instant)
    if instant.tzinfo is not None and now.tzinfo is not None:
        instant = instant.astimezone(timezone.utc)
        now = now.astimezone(timezone.utc)
    return max(0.0, (instant - now).total_seconds())


async def call_handler(handler: TaskHandler, properties: dict[str, str]) -> HandlerResult:
    """Run a handler without blocking the event loop."""
    if inspect.iscoroutinefunction(handler) or inspect.iscoroutinefunction(
        getattr(handler, "__call__", None)
    ):
        result = await handler(properties)
    else:
        loop = asyncio.get_running_loop()
        result = await loop.run_in_executor(None, functools.partial(handler, properties))
        if inspect.isawaitable(result):
            result = await result
    if result is not None and not isinstance(result, Mapping):
        raise TypeError(
            f"Handler must return a mapping of properties or None, "
            f"got {type(result).__name__}"
        )
    return result


class TaskTimer:
    """One arm/fire cycle for one TaskDescriptor."""

    def __init__(
        self,
        descriptor: TaskDescriptor,
        *,
        handlers: HandlerRegistry,
        clock: Clock,
        notifier: OutcomeNotifier,
        on_complete: CompletionCallback,
        semaphore: Optional[asyncio.Semaphore] = None,
    ) -> None:
        self._descriptor = descriptor
        self._handlers = handlers
        self._clock = clock
        self._notifier = notifier
        self._on_complete = on_complete
        self._semaphore = semaphore

        self._lock = threading.Lock()
        self._status = TimerStatus.STOPPED
        self._used = False
        self._scheduled_for: Optional[datetime] = None
        self._run_immediately = False
        self._alarm: Optional[asyncio.Task] = None
        self.last_error: Optional[TaskExecutionError] = None

    # ── Introspection ─────────────────────────────────────────────────────────

    @property
    def task_id(self) -> int:
        return self._descriptor.id

    @property
    def descriptor(self) -> TaskDescriptor:
        return self._descriptor

    @property
    def status(self) -> TimerStatus:
        return self._status

    @property
    def scheduled_for(self) -> Optional[datetime]:
        return self._scheduled_for

    @property
    def run_immediately(self) -> bool:
        return self._run_immediately

    @property
    def has_pending_alarm(self) -> bool:
        return self._alarm is not None

    # ── Arm / cancel ──────────────────────────────────────────────────────────

    def arm(self, instant: datetime, run_immediately: bool = False) -> None:
        """
        Schedule the single-shot alarm at `instant`.

        With run_immediately the alarm fires right away; `instant` is still
        recorded as the occurrence that fired, so recurrence math continues
        from it. Must be called from the event loop thread.
        """
        loop = asyncio.get_running_loop()
        with self._lock:
            if self._used:
                raise TimerStateError(
                    f"Timer for task {self.task_id} was already armed; "
                    f"create a new TaskTimer for each occurrence."
                )
            self._used = True
            self._status = TimerStatus.SCHEDULED
            self._scheduled_for = instant
            self._run_immediately = run_immediately

            delay = 0.0 if run_immediately else seconds_until(instant, self._clock.now())
            self._alarm = loop.create_task(
                self._wait_and_fire(delay),
                name=f"taskcadence:timer:{self.task_id}",
            )
            self._alarm.add_done_callback(self._release_alarm)

        log.debug(
            "timer.armed",
            task_id=self.task_id,
            at=instant.isoformat(),
            delay_s=round(delay, 3),
            run_immediately=run_immediately,
        )

    def arm_after(self, delay: timedelta) -> None:
        """Arm at clock.now() + delay."""
        self.arm(self._clock.now() + delay)

    def cancel(self) -> bool:
        """
        Stop a SCHEDULED timer before it fires. Returns True if it was
        SCHEDULED. No effect on a RUNNING or already STOPPED timer.
        """
        with self._lock:
            if self._status is not TimerStatus.SCHEDULED:
                return False
            self._status = TimerStatus.STOPPED
            alarm = self._alarm
        if alarm is not None:
            alarm.cancel()
        log.debug("timer.cancelled", task_id=self.task_id)
        return True

    def _release_alarm(self, task: asyncio.Task) -> None:
        self._alarm = None
        if not task.cancelled() and task.exception() is not None:
            log.error(
                "timer.alarm_crashed",
                task_id=self.task_id,
                error=repr(task.exception()),
            )

    # ── Firing ────────────────────────────────────────────────────────────────

    async def _wait_and_fire(self, delay: float) -> None:
        try:
            if delay > 0:
                await asyncio.sleep(delay)
        except asyncio.CancelledError:
            return
        await self._fire()

    async def _fire(self) -> None:
        with self._lock:
            if self._status is not TimerStatus.SCHEDULED:
                return
            self._status = TimerStatus.RUNNING

        descriptor = self._descriptor
        bind_task(descriptor.id, descriptor.handler)
        try:
            log.info(
                "timer.fired",
                scheduled_for=self._scheduled_for.isoformat(),
                run_immediately=self._run_immediately,
            )
            result: HandlerResult = None
            error: Optional[TaskExecutionError] = None
            try:
                result = await self._invoke(descriptor)
            except Exception as e:
                error = TaskExecutionError(descriptor.id, descriptor.handler, e)
                error.__cause__ = e
                log.error("timer.task_error", error=str(error), exc_info=True)

            updated = descriptor.record_execution(
                fired_at=self._scheduled_for,
                finished_at=match_awareness(self._clock.now(), descriptor.schedule_time),
                properties=result,
            )
            self._descriptor = updated
            self.last_error = error
            with self._lock:
                self._status = TimerStatus.STOPPED

            try:
                if error is None:
                    self._notifier.notify_success(updated)
                else:
                    self._notifier.notify_failure(updated, error)
            except Exception as e:
                log.error("timer.notify_error", error=f"{type(e).__name__}: {e}", exc_info=True)

            self._on_complete(self, updated)
        except Exception as e:
            log.error("timer.complete_error", error=f"{type(e).__name__}: {e}", exc_info=True)
        finally:
            with self._lock:
                self._status = TimerStatus.STOPPED
            clear_task()

    async def _invoke(self, descriptor: TaskDescriptor) -> HandlerResult:
        handler = self._handlers.get(descriptor.handler)
        properties = dict(descriptor.properties)
        if self._semaphore is None:
            return await call_handler(handler, properties)
        async with self._semaphore:
            return await call_handler(handler, properties)

    def __repr__(self) -> str:
        at = self._scheduled_for.isoformat() if self._scheduled_for else None
        return f"<TaskTimer task={self.task_id} status={self._status.value} at={at}>"
