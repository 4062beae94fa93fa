"""taskcadence — recurring task scheduler with calendar-aware recurrence."""

__version__ = "1.0.0"
