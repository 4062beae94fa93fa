"""
scheduler/registry.py — SchedulerRegistry

Table of task id → live TaskTimer. Built explicitly and injected; there is no
process-wide instance.

Guarantees:
  * At most one timer per task id. "Cancel previous, install new" happens
    under a single lock acquisition.
  * Executions of one id are strictly sequential: the next timer is armed
    only by the completing timer, as the last step of its fire sequence.
    The one exception is an explicit re-load during a run, see below.
  * A completion only re-arms if its timer is still the one registered for
    the id. A task re-loaded or cancelled while running keeps the newer state.
    Re-loading is fire-and-forget towards the in-flight run: its
    last_execution is not recorded yet, so a catch-up task can be armed for
    the occurrence that is still running and the two runs overlap.
  * One bad descriptor never stops load() from scheduling the rest.

The registry is loop-affine: call load() / cancel() / execute_now() from the
thread running the event loop that owns the timers.

Usage::

    handlers = HandlerRegistry()
    handlers.register("send_digest", send_digest)

    registry = SchedulerRegistry(handlers)
    registry.add_listener(audit_listener)
    registry.load(task_a, task_b)
    ...
    registry.cancel_all()
"""

from __future__ import annotations

import asyncio
import itertools
import threading
from dataclasses import dataclass
from typing import Optional

from taskcadence.exceptions import (
    HandlerNotFoundError,
    TaskConfigurationError,
    TaskExecutionError,
    TaskNotFoundError,
)
from taskcadence.observability.logger import get_logger
from taskcadence.scheduler.handlers import HandlerRegistry
from taskcadence.scheduler.listeners import ListenerFanout, SchedulerListener
from taskcadence.scheduler.recurrence import next_execution
from taskcadence.scheduler.timer import TaskTimer
from taskcadence.scheduler.types import Clock, SystemClock, TaskDescriptor, TimerStatus

log = get_logger(__name__)


@dataclass
class SchedulerStats:
    total_runs: int = 0
    successful_runs: int = 0
    failed_runs: int = 0
    retired_tasks: int = 0
    rejected_tasks: int = 0
    last_run_at: Optional[str] = None
    last_run_task: Optional[int] = None
    last_error: Optional[str] = None


class SchedulerRegistry:
    """
    Schedules TaskDescriptors and keeps one TaskTimer per task id.

    Introspection::

        registry.list()          # snapshot list of TaskTimer
        registry.get(task_id)    # TaskTimer or None
        registry.stats           # SchedulerStats counters
    """

    def __init__(
        self,
        handlers: HandlerRegistry,
        clock: Optional[Clock] = None,
        max_concurrent_tasks: Optional[int] = None,
    ) -> None:
        if max_concurrent_tasks is not None and max_concurrent_tasks < 1:
            raise ValueError("max_concurrent_tasks must be >= 1 or None")
        self._handlers = handlers
        self._clock: Clock = clock or SystemClock()
        self._semaphore = (
            asyncio.Semaphore(max_concurrent_tasks) if max_concurrent_tasks else None
        )

        self._timers: dict[int, TaskTimer] = {}
        self._lock = threading.RLock()
        self._listeners = ListenerFanout()

        self._ids = itertools.count(-1, -1)
        self._id_lock = threading.Lock()

        self.stats = SchedulerStats()

        log.info(
            "scheduler.init",
            handlers=handlers.names(),
            clock=repr(self._clock),
            max_concurrent=max_concurrent_tasks,
        )

    # ── Factory ───────────────────────────────────────────────────────────────

    @classmethod
    def from_settings(
        cls,
        settings,
        handlers: HandlerRegistry,
        clock: Optional[Clock] = None,
    ) -> "SchedulerRegistry":
        return cls(
            handlers=handlers,
            clock=clock or SystemClock(settings.scheduler.timezone),
            max_concurrent_tasks=settings.scheduler.max_concurrent_tasks,
        )

    @property
    def clock(self) -> Clock:
        return self._clock

    # ── Public API ────────────────────────────────────────────────────────────

    def load(self, *tasks: TaskDescriptor) -> None:
        """
        Schedule each task, replacing any timer already held for its id.

        Never raises for an individual task: configuration errors and
        unexpected failures are logged and that task is skipped.
        """
        for task in tasks:
            try:
                self._process(task)
            except (TaskConfigurationError, HandlerNotFoundError) as e:
                self.stats.rejected_tasks += 1
                log.warning("scheduler.task_rejected", task_id=task.id, error=str(e))
            except Exception as e:
                self.stats.rejected_tasks += 1
                log.error(
                    "scheduler.load_error",
                    task_id=getattr(task, "id", None),
                    error=f"{type(e).__name__}: {e}",
                    exc_info=True,
                )

    def cancel(self, task_id: int) -> None:
        """Cancel and forget the timer for task_id. Raises TaskNotFoundError."""
        with self._lock:
            timer = self._timers.pop(task_id, None)
            if timer is None:
                raise TaskNotFoundError(task_id)
            timer.cancel()
        log.info("scheduler.task_cancelled", task_id=task_id, status=timer.status.value)

    def cancel_all(self) -> int:
        """Cancel every timer. Returns how many were removed."""
        with self._lock:
            timers = list(self._timers.values())
            self._timers.clear()
            for timer in timers:
                timer.cancel()
        log.info("scheduler.all_cancelled", count=len(timers))
        return len(timers)

    def execute_now(self, task_id: int) -> bool:
        """
        Fire task_id immediately instead of waiting for its alarm.

        The computed next instant is still recorded as the occurrence that
        fired, so later recurrence math is unaffected. Returns False (and does
        nothing) when the task is already running. Raises TaskNotFoundError.
        """
        with self._lock:
            timer = self._timers.get(task_id)
            if timer is None:
                raise TaskNotFoundError(task_id)
            if timer.status is TimerStatus.RUNNING:
                log.warning("scheduler.execute_now_skipped.running", task_id=task_id)
                return False
            descriptor = timer.descriptor
            self.cancel(task_id)
            self._process(descriptor, run_now=True)
        return True

    def list(self) -> list[TaskTimer]:
        """Snapshot of every tracked timer."""
        with self._lock:
            return list(self._timers.values())

    def get(self, task_id: int) -> Optional[TaskTimer]:
        with self._lock:
            return self._timers.get(task_id)

    def generate_id(self) -> int:
        """
        Next id for tasks with no natural (persisted) id.

        Always negative, so it cannot collide with the non-negative ids that
        come from storage.
        """
        with self._id_lock:
            return next(self._ids)

    def __len__(self) -> int:
        with self._lock:
            return len(self._timers)

    def __contains__(self, task_id: object) -> bool:
        with self._lock:
            return task_id in self._timers

    # ── Listeners ─────────────────────────────────────────────────────────────

    def add_listener(self, listener: SchedulerListener) -> None:
        self._listeners.add(listener)

    def remove_listener(self, listener: SchedulerListener) -> bool:
        return self._listeners.remove(listener)

    def notify_success(self, descriptor: TaskDescriptor) -> None:
        self._record_run(descriptor, error=None)
        self._listeners.notify_success(descriptor)

    def notify_failure(self, descriptor: TaskDescriptor, error: TaskExecutionError) -> None:
        self._record_run(descriptor, error=error)
        self._listeners.notify_failure(descriptor, error)

    # ── Internals ─────────────────────────────────────────────────────────────

    def _record_run(self, descriptor: TaskDescriptor, error: Optional[TaskExecutionError]) -> None:
        with self._lock:
            self.stats.total_runs += 1
            self.stats.last_run_task = descriptor.id
            self.stats.last_run_at = (
                descriptor.last_execution.isoformat() if descriptor.last_execution else None
            )
            if error is None:
                self.stats.successful_runs += 1
            else:
                self.stats.failed_runs += 1
                self.stats.last_error = str(error)

    def _process(self, task: TaskDescriptor, run_now: bool = False) -> Optional[TaskTimer]:
        """
        Replace whatever is registered for task.id with a freshly armed timer,
        or drop the id if the task has no further occurrence.
        """
        with self._lock:
            previous = self._timers.pop(task.id, None)
            if previous is not None:
                previous.cancel()

            if not self._handlers.is_registered(task.handler):
                raise HandlerNotFoundError(
                    f"Task {task.id} names handler '{task.handler}', which is not registered."
                )

            now = self._clock.now()
            instant = next_execution(task, now)
            if instant is None:
                self.stats.retired_tasks += 1
                log.info("scheduler.task_retired", task_id=task.id, handler=task.handler)
                return None

            timer = TaskTimer(
                task,
                handlers=self._handlers,
                clock=self._clock,
                notifier=self,
                on_complete=self._on_timer_complete,
                semaphore=self._semaphore,
            )
            timer.arm(instant, run_immediately=run_now)
            self._timers[task.id] = timer

        log.info(
            "scheduler.task_armed",
            task_id=task.id,
            handler=task.handler,
            at=instant.isoformat(),
            run_now=run_now,
            replaced=previous is not None,
        )
        return timer

    def _on_timer_complete(self, timer: TaskTimer, updated: TaskDescriptor) -> None:
        with self._lock:
            if self._timers.get(updated.id) is not timer:
                log.info("scheduler.completion_superseded", task_id=updated.id)
                return
            try:
                self._process(updated)
            except Exception as e:
                # Keep the invariant: a failed re-arm leaves no stale entry.
                self._timers.pop(updated.id, None)
                log.error(
                    "scheduler.rearm_error",
                    task_id=updated.id,
                    error=f"{type(e).__name__}: {e}",
                    exc_info=True,
                )

    def __repr__(self) -> str:
        return f"<SchedulerRegistry timers={sorted(self._timers)}>"
