"""
exceptions.py — taskcadence Error Hierarchy

All scheduler-specific exceptions live here. Every layer raises typed
subclasses of TaskCadenceError — never bare Exception.

Import from here, not from individual modules:
    from taskcadence.exceptions import TaskNotFoundError, TaskConfigurationError

Hierarchy:
    TaskCadenceError
    ├── TaskConfigurationError
    ├── HandlerNotFoundError
    ├── TaskExecutionError
    ├── TaskNotFoundError
    └── TimerStateError
"""

from __future__ import annotations

from typing import Optional


# ─────────────────────────────────────────────────────────────────────────────
# Root
# ─────────────────────────────────────────────────────────────────────────────

class TaskCadenceError(Exception):
    """Base class for all taskcadence exceptions."""


# ─────────────────────────────────────────────────────────────────────────────
# Descriptor / lookup errors
# ─────────────────────────────────────────────────────────────────────────────

class TaskConfigurationError(TaskCadenceError):
    """A task descriptor is malformed (e.g. TIMED without an interval)."""

    def __init__(self, task_id: Optional[int], message: str) -> None:
        self.task_id = task_id
        super().__init__(f"Task {task_id}: {message}")


class HandlerNotFoundError(TaskCadenceError):
    """Requested handler name is not registered in the HandlerRegistry."""


class TaskNotFoundError(TaskCadenceError):
    """cancel() / execute_now() was called with an id the registry does not track."""

    def __init__(self, task_id: int) -> None:
        self.task_id = task_id
        super().__init__(f"Task {task_id} is not scheduled in this registry.")


# ─────────────────────────────────────────────────────────────────────────────
# Runtime errors
# ─────────────────────────────────────────────────────────────────────────────

class TaskExecutionError(TaskCadenceError):
    """A task handler raised. The original exception is kept as __cause__."""

    def __init__(self, task_id: int, handler: str, cause: BaseException) -> None:
        self.task_id = task_id
        self.handler = handler
        self.cause = cause
        super().__init__(
            f"Task {task_id} ('{handler}') failed: {type(cause).__name__}: {cause}"
        )


class TimerStateError(TaskCadenceError):
    """Illegal TaskTimer transition, e.g. arming a timer that was already used."""


__all__ = [
    "TaskCadenceError",
    "TaskConfigurationError",
    "HandlerNotFoundError",
    "TaskNotFoundError",
    "TaskExecutionError",
    "TimerStateError",
]
