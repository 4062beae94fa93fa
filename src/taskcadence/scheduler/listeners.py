"""
scheduler/listeners.py — Execution Listener Fan-out

Observers are told about every firing: on_success(descriptor) or
on_failure(descriptor, error). The descriptor passed is the updated one
(last_execution / schedule_time / properties already recorded).

A listener that raises is logged and skipped. It never stops the other
listeners or the scheduler.
"""

from __future__ import annotations

import threading
from typing import Protocol

from taskcadence.exceptions import TaskExecutionError
from taskcadence.observability.logger import get_logger
from taskcadence.scheduler.types import TaskDescriptor

log = get_logger(__name__)


class SchedulerListener(Protocol):
    def on_success(self, descriptor: TaskDescriptor) -> None: ...

    def on_failure(self, descriptor: TaskDescriptor, error: TaskExecutionError) -> None: ...


class ListenerFanout:
    """Thread-safe listener list. Notification iterates a snapshot."""

    def __init__(self) -> None:
        self._listeners: list[SchedulerListener] = []
        self._lock = threading.RLock()

    def add(self, listener: SchedulerListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def remove(self, listener: SchedulerListener) -> bool:
        """Remove a listener. Returns False if it was not registered."""
        with self._lock:
            try:
                self._listeners.remove(listener)
            except ValueError:
                return False
            return True

    def snapshot(self) -> list[SchedulerListener]:
        with self._lock:
            return list(self._listeners)

    def notify_success(self, descriptor: TaskDescriptor) -> None:
        for listener in self.snapshot():
            try:
                listener.on_success(descriptor)
            except Exception as e:
                log.error(
                    "listener.success_error",
                    task_id=descriptor.id,
                    listener=type(listener).__name__,
                    error=f"{type(e).__name__}: {e}",
                    exc_info=True,
                )

    def notify_failure(self, descriptor: TaskDescriptor, error: TaskExecutionError) -> None:
        for listener in self.snapshot():
            try:
                listener.on_failure(descriptor, error)
            except Exception as e:
                log.error(
                    "listener.failure_error",
                    task_id=descriptor.id,
                    listener=type(listener).__name__,
                    error=f"{type(e).__name__}: {e}",
                    exc_info=True,
                )

    def __len__(self) -> int:
        with self._lock:
            return len(self._listeners)
