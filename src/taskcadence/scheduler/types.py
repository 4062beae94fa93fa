"""
scheduler/types.py — Scheduler Data Contracts

All dataclasses, enums and protocols shared across the scheduler layer.

  - RepeatFrequency:  TIMED | MONTHLY | DAILY (None on a descriptor = single-shot)
  - TimerStatus:      SCHEDULED | RUNNING | STOPPED
  - TaskDescriptor:   immutable task definition; updated by replace-on-write
  - TaskHandler:      the task body contract
  - Clock:            injected source of "now" (SystemClock, FixedClock)
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone, tzinfo
from enum import Enum
from typing import Any, Awaitable, Mapping, Optional, Protocol, Union
from zoneinfo import ZoneInfo

# late_execution sentinel: run late no matter how late.
LATE_ANY = -1


# ─────────────────────────────────────────────────────────────────────────────
# Enums
# ─────────────────────────────────────────────────────────────────────────────

class RepeatFrequency(str, Enum):
    TIMED   = "TIMED"     # every time_to_repeat milliseconds
    MONTHLY = "MONTHLY"   # every `recurrence` months
    DAILY   = "DAILY"     # every `recurrence` days


class TimerStatus(str, Enum):
    SCHEDULED = "SCHEDULED"
    RUNNING   = "RUNNING"
    STOPPED   = "STOPPED"


# ─────────────────────────────────────────────────────────────────────────────
# TaskDescriptor
# ─────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class TaskDescriptor:
    """
    Definition of one schedulable task.

    id                       Unique across the process. Same id = same task;
                             loading it again replaces the earlier timer.
    handler                  Name of the handler in the HandlerRegistry.
    schedule_time            Anchor for the first/reference occurrence.
    repeat_frequency         None for single-shot tasks.
    recurrence               Months (MONTHLY) or days (DAILY) between runs.
    monthly_by_day_of_month  MONTHLY: same day of month (True) or the same
                             "Nth weekday" of the month (False).
    time_to_repeat           TIMED: interval in milliseconds.
    late_execution           None = never run late, -1 = always,
                             N >= 0 = only if at most N ms late.
    last_execution           When the task last finished executing.
    stop_date                Occurrences strictly after this retire the task.
    properties               Opaque map handed to the handler.

    The datetimes must be all naive or all aware. Naive values are wall-clock
    times in the scheduler clock's timezone (UTC unless configured).

    Instances are never mutated; record_execution() returns the updated copy.
    """
    id: int
    handler: str
    schedule_time: datetime
    repeat_frequency: Optional[RepeatFrequency] = None
    recurrence: int = 1
    monthly_by_day_of_month: bool = True
    time_to_repeat: Optional[int] = None
    late_execution: Optional[int] = None
    last_execution: Optional[datetime] = None
    stop_date: Optional[datetime] = None
    properties: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.recurrence is None:
            object.__setattr__(self, "recurrence", 1)
        if self.monthly_by_day_of_month is None:
            object.__setattr__(self, "monthly_by_day_of_month", True)
        if isinstance(self.repeat_frequency, str) and not isinstance(self.repeat_frequency, RepeatFrequency):
            object.__setattr__(self, "repeat_frequency", RepeatFrequency(self.repeat_frequency.upper()))
        object.__setattr__(self, "properties", dict(self.properties or {}))

    @property
    def is_repeating(self) -> bool:
        return self.repeat_frequency is not None

    def record_execution(
        self,
        *,
        fired_at: datetime,
        finished_at: datetime,
        properties: Optional[Mapping[str, str]] = None,
    ) -> "TaskDescriptor":
        """
        Return the descriptor as it stands after one firing.

        schedule_time moves to the occurrence that fired (not "now") so later
        recurrence passes start close to the present. An empty or missing
        properties map means "no change".
        """
        changes: dict[str, Any] = {
            "schedule_time": fired_at,
            "last_execution": finished_at,
        }
        if properties:
            changes["properties"] = dict(properties)
        return replace(self, **changes)


# ─────────────────────────────────────────────────────────────────────────────
# Task body contract
# ─────────────────────────────────────────────────────────────────────────────

HandlerResult = Optional[Mapping[str, str]]


class TaskHandler(Protocol):
    """
    The task body. Receives a copy of the descriptor's properties and may
    return a replacement map. May raise; may be a coroutine function.
    """

    def __call__(
        self, properties: dict[str, str]
    ) -> Union[HandlerResult, Awaitable[HandlerResult]]: ...


# ─────────────────────────────────────────────────────────────────────────────
# Clocks
# ─────────────────────────────────────────────────────────────────────────────

class Clock(Protocol):
    def now(self) -> datetime: ...


def match_awareness(value: datetime, reference: datetime) -> datetime:
    """
    Express `value` the way `reference` is expressed. An aware value compared
    against a naive reference is read as wall-clock time in its own zone.
    A naive value against an aware reference is returned unchanged.
    """
    if reference.tzinfo is None and value.tzinfo is not None:
        return value.replace(tzinfo=None)
    return value


class SystemClock:
    """Wall clock in a fixed timezone (UTC by default)."""

    def __init__(self, tz: Union[str, tzinfo, None] = None) -> None:
        if isinstance(tz, str):
            tz = ZoneInfo(tz)
        self.tz: tzinfo = tz or timezone.utc

    def now(self) -> datetime:
        return datetime.now(self.tz)

    def __repr__(self) -> str:
        return f"<SystemClock tz={self.tz}>"


class FixedClock:
    """
    Manually driven clock for deterministic recurrence math.

        clock = FixedClock(datetime(2024, 1, 20, 10, 0))
        clock.advance(timedelta(hours=1))
    """

    def __init__(self, at: datetime) -> None:
        self._at = at
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            return self._at

    def set(self, at: datetime) -> None:
        with self._lock:
            self._at = at

    def advance(self, delta: timedelta) -> datetime:
        with self._lock:
            self._at = self._at + delta
            return self._at

    def __repr__(self) -> str:
        return f"<FixedClock at={self._at.isoformat()}>"
