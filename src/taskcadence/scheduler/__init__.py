"""
scheduler/ — Recurring Task Scheduler

    from taskcadence.scheduler import (
        HandlerRegistry, SchedulerRegistry, TaskDescriptor, RepeatFrequency,
    )
"""

from taskcadence.scheduler.handlers import HandlerRegistry
from taskcadence.scheduler.listeners import ListenerFanout, SchedulerListener
from taskcadence.scheduler.recurrence import next_execution, validate_task
from taskcadence.scheduler.registry import SchedulerRegistry, SchedulerStats
from taskcadence.scheduler.timer import TaskTimer
from taskcadence.scheduler.types import (
    LATE_ANY,
    Clock,
    FixedClock,
    RepeatFrequency,
    SystemClock,
    TaskDescriptor,
    TaskHandler,
    TimerStatus,
)

__all__ = [
    "LATE_ANY",
    "Clock",
    "FixedClock",
    "HandlerRegistry",
    "ListenerFanout",
    "RepeatFrequency",
    "SchedulerListener",
    "SchedulerRegistry",
    "SchedulerStats",
    "SystemClock",
    "TaskDescriptor",
    "TaskHandler",
    "TaskTimer",
    "TimerStatus",
    "next_execution",
    "validate_task",
]
