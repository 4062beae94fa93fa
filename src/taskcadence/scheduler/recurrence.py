"""
scheduler/recurrence.py — Next-Execution Calculator

Pure functions. No I/O, no clock access, no mutation of the descriptor:
the caller samples "now" once and passes it in, so every comparison in one
pass sees the same instant.

Rules (in order):
  1. schedule_time still in the future      → schedule_time
  2. single-shot, already due               → now if the catch-up window is
                                              still open and the occurrence
                                              was never honoured, else None
  3. recurring                              → the most recent missed
                                              occurrence if it may still run
                                              late, else the next future one
  4. result strictly after stop_date        → None (task retires)

Month overflow (day 31 advanced into a 30-day month) clamps to the last day
of the target month. The clamped day then carries forward, since each step
starts from the previous occurrence.
"""

from __future__ import annotations

import calendar
from datetime import datetime, timedelta
from typing import Optional

from taskcadence.exceptions import TaskConfigurationError
from taskcadence.scheduler.types import (
    LATE_ANY,
    RepeatFrequency,
    TaskDescriptor,
    match_awareness,
)


# ─────────────────────────────────────────────────────────────────────────────
# Validation
# ─────────────────────────────────────────────────────────────────────────────

def validate_task(task: TaskDescriptor) -> None:
    """Raise TaskConfigurationError if the descriptor cannot be scheduled."""
    if task.schedule_time is None:
        raise TaskConfigurationError(task.id, "schedule_time is required")
    aware = task.schedule_time.tzinfo is not None
    for name in ("last_execution", "stop_date"):
        value = getattr(task, name)
        if value is not None and (value.tzinfo is not None) != aware:
            raise TaskConfigurationError(
                task.id,
                f"{name} and schedule_time must both be naive or both be timezone-aware",
            )
    if task.late_execution is not None and task.late_execution < LATE_ANY:
        raise TaskConfigurationError(
            task.id,
            f"late_execution must be None, -1 or >= 0, got {task.late_execution}",
        )
    freq = task.repeat_frequency
    if freq is RepeatFrequency.TIMED:
        if not task.time_to_repeat or task.time_to_repeat <= 0:
            raise TaskConfigurationError(
                task.id, "TIMED tasks need a positive time_to_repeat (ms)"
            )
    elif freq in (RepeatFrequency.MONTHLY, RepeatFrequency.DAILY):
        if task.recurrence < 1:
            raise TaskConfigurationError(
                task.id, f"recurrence must be >= 1, got {task.recurrence}"
            )


# ─────────────────────────────────────────────────────────────────────────────
# Calendar helpers
# ─────────────────────────────────────────────────────────────────────────────

def _shift_month(year: int, month: int, months: int) -> tuple[int, int]:
    index = year * 12 + (month - 1) + months
    return index // 12, index % 12 + 1


def add_months(value: datetime, months: int) -> datetime:
    """Add calendar months keeping day and time; clamp to the month's last day."""
    year, month = _shift_month(value.year, value.month, months)
    last_day = calendar.monthrange(year, month)[1]
    return value.replace(year=year, month=month, day=min(value.day, last_day))


def weekday_ordinal(value: datetime) -> tuple[int, int]:
    """Return (weekday, n) such that value is the n-th such weekday of its month."""
    return value.weekday(), (value.day - 1) // 7 + 1


def nth_weekday_of_month(year: int, month: int, weekday: int, ordinal: int) -> int:
    """
    Day of month of the `ordinal`-th `weekday` (Mon=0) in year/month.

    When the month has no such occurrence (e.g. a 5th Friday) step back
    whole weeks until the date falls inside the month.
    """
    first_weekday, days_in_month = calendar.monthrange(year, month)
    day = 1 + (weekday - first_weekday) % 7 + (ordinal - 1) * 7
    while day > days_in_month:
        day -= 7
    return day


def advance(task: TaskDescriptor, current: datetime) -> datetime:
    """One MONTHLY/DAILY step from `current`."""
    step = task.recurrence or 1
    if task.repeat_frequency is RepeatFrequency.DAILY:
        return current + timedelta(days=step)

    if task.monthly_by_day_of_month:
        return add_months(current, step)

    # Weekday and ordinal always come from the descriptor anchor: a rolled value
    # may sit on a 4th weekday only because its month had no 5th.
    weekday, ordinal = weekday_ordinal(task.schedule_time)
    year, month = _shift_month(current.year, current.month, step)
    day = nth_weekday_of_month(year, month, weekday, ordinal)
    return current.replace(year=year, month=month, day=day)


# ─────────────────────────────────────────────────────────────────────────────
# Catch-up rule
# ─────────────────────────────────────────────────────────────────────────────

def _may_run_late(task: TaskDescriptor, occurrence: datetime, now: datetime) -> bool:
    if task.late_execution is None:
        return False
    if task.last_execution is not None and not occurrence > task.last_execution:
        return False
    if task.late_execution == LATE_ANY:
        return True
    return occurrence + timedelta(milliseconds=task.late_execution) >= now


def _next_timed(task: TaskDescriptor, now: datetime) -> datetime:
    period = timedelta(milliseconds=task.time_to_repeat)
    periods = (now - task.schedule_time) // period
    most_past = task.schedule_time + periods * period
    if _may_run_late(task, most_past, now):
        return most_past
    return most_past + period


def _next_calendar(task: TaskDescriptor, now: datetime) -> datetime:
    most_past = task.schedule_time
    upcoming = advance(task, most_past)
    while upcoming < now:
        most_past = upcoming
        upcoming = advance(task, upcoming)
    if _may_run_late(task, most_past, now):
        return most_past
    return upcoming


# ─────────────────────────────────────────────────────────────────────────────
# Public API
# ─────────────────────────────────────────────────────────────────────────────

def next_execution(task: TaskDescriptor, now: datetime) -> Optional[datetime]:
    """
    Return the instant the task should fire next, or None if it retires.

    Naive descriptors are compared against `now` read as wall-clock time.
    An aware descriptor with a naive `now` has no common reference and raises
    TaskConfigurationError, as do malformed descriptors.
    """
    validate_task(task)
    now = match_awareness(now, task.schedule_time)
    if now.tzinfo is None and task.schedule_time.tzinfo is not None:
        raise TaskConfigurationError(
            task.id, "schedule_time is timezone-aware but the clock returns naive datetimes"
        )

    result: Optional[datetime]
    if task.schedule_time > now:
        result = task.schedule_time
    elif task.repeat_frequency is None:
        result = now if _may_run_late(task, task.schedule_time, now) else None
    elif task.repeat_frequency is RepeatFrequency.TIMED:
        result = _next_timed(task, now)
    else:
        result = _next_calendar(task, now)

    if result is not None and task.stop_date is not None and result > task.stop_date:
        return None
    return result
