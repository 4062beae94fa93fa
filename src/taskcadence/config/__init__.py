from taskcadence.config.settings import (
    ConfigError,
    LoggingConfig,
    SchedulerConfig,
    Settings,
    load_settings,
)

__all__ = ["ConfigError", "LoggingConfig", "SchedulerConfig", "Settings", "load_settings"]
