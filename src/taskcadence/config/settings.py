"""
config/settings.py — taskcadence Runtime Settings

Merges config.yaml with environment variables.
Pydantic-powered — all fields are validated and typed.

  - SchedulerConfig rejects unknown IANA timezones at parse time
  - LoggingConfig rejects unknown log levels at parse time
  - validate_all() performs cross-field startup validation and raises
    ConfigError listing every problem found
  - load_settings() respects TASKCADENCE_CONFIG when no explicit
    config_path argument is given

Environment overrides use the TASKCADENCE_ prefix and "__" for nesting:
    TASKCADENCE_SCHEDULER__TIMEZONE=Europe/Lisbon
    TASKCADENCE_LOGGING__LEVEL=DEBUG
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# ─────────────────────────────────────────────────────────────────────────────
# Errors
# ─────────────────────────────────────────────────────────────────────────────

class ConfigError(Exception):
    """Raised by validate_all() when one or more config problems are found."""


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

_VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}

_BLOCKED_PATH_PREFIXES: tuple[str, ...] = (
    "/etc", "/proc", "/sys", "/dev", "/boot",
    "/private/etc",
    "/usr", "/bin", "/sbin", "/lib", "/lib64",
)


def _is_blocked_system_path(p: str) -> bool:
    try:
        resolved = str(Path(p).expanduser().resolve())
    except (ValueError, OSError):
        return False
    return any(
        resolved == prefix or resolved.startswith(prefix + "/")
        for prefix in _BLOCKED_PATH_PREFIXES
    )


# ─────────────────────────────────────────────────────────────────────────────
# Sub-models
# ─────────────────────────────────────────────────────────────────────────────

class SchedulerConfig(BaseModel):
    timezone: str = "UTC"
    max_concurrent_tasks: Optional[int] = None

    @field_validator("timezone")
    @classmethod
    def _known_timezone(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("scheduler.timezone must not be empty. Use 'UTC' or a tz name.")
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"scheduler.timezone '{v}' is not a known IANA timezone") from exc
        return v

    @field_validator("max_concurrent_tasks")
    @classmethod
    def _positive_tasks(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and v < 1:
            raise ValueError("scheduler.max_concurrent_tasks must be >= 1 (or null for no limit)")
        return v


class LoggingConfig(BaseModel):
    level: str = "INFO"
    log_dir: str = "./data/logs"
    max_file_size_mb: int = 100
    backup_count: int = 5
    console_output: bool = False
    json_format: bool = True

    @field_validator("level")
    @classmethod
    def _valid_log_level(cls, v: str) -> str:
        upper = v.upper()
        if upper not in _VALID_LOG_LEVELS:
            raise ValueError(
                f"logging.level '{v}' is not valid. "
                f"Must be one of: {sorted(_VALID_LOG_LEVELS)}"
            )
        return upper

    @field_validator("max_file_size_mb", "backup_count")
    @classmethod
    def _non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("logging sizes and counts must be >= 0")
        return v


# ─────────────────────────────────────────────────────────────────────────────
# Root Settings
# ─────────────────────────────────────────────────────────────────────────────

class Settings(BaseSettings):
    """
    taskcadence runtime settings.

    Priority (highest to lowest):
      1. Sections present in config.yaml (passed as init kwargs)
      2. Environment variables
      3. .env file
      4. Field defaults
    """

    model_config = SettingsConfigDict(
        env_prefix="TASKCADENCE_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
        case_sensitive=False,
    )

    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    # -- Convenience properties ----------------------------------------------

    @property
    def log_level(self) -> str:
        return self.logging.level.upper()

    @property
    def log_dir(self) -> Path:
        return Path(self.logging.log_dir)

    def validate_all(self) -> None:
        """
        Full startup validation. Raises ConfigError listing every problem found.

        Field validators catch type/value errors at parse time; this method
        catches the problems that only show up at runtime (paths resolving
        into system directories, a log file that would never rotate).
        """
        errors: list[str] = []

        if _is_blocked_system_path(self.logging.log_dir):
            errors.append(
                f"logging.log_dir '{self.logging.log_dir}' points to a protected "
                f"system directory. Use './data/logs'."
            )

        if self.logging.max_file_size_mb == 0 and self.logging.backup_count > 0:
            errors.append(
                "logging.backup_count is set but logging.max_file_size_mb is 0, "
                "so the log file never rotates. Set a size or backup_count: 0."
            )

        if errors:
            numbered = "\n".join(f"  {i+1}. {e}" for i, e in enumerate(errors))
            raise ConfigError(
                f"\n\ntaskcadence startup failed — {len(errors)} configuration "
                f"problem(s) found:\n\n{numbered}\n\n"
                f"Fix the issues above in config/config.yaml or your environment "
                f"and restart.\n"
            )


# ─────────────────────────────────────────────────────────────────────────────
# Loader
# ─────────────────────────────────────────────────────────────────────────────

_KNOWN_SECTIONS = {"scheduler", "logging"}


def _load_yaml(path: Path) -> dict:
    if not path.exists():
        return {}
    with path.open("r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def _resolve_config_path(config_path: str | Path | None) -> Path:
    """
    Resolve the config file path with this priority:
      1. Explicit config_path argument
      2. TASKCADENCE_CONFIG environment variable
      3. Default: config/config.yaml
    """
    if config_path is not None:
        return Path(config_path)
    env_path = os.environ.get("TASKCADENCE_CONFIG")
    if env_path:
        return Path(env_path)
    return Path("config/config.yaml")


def load_settings(config_path: str | Path | None = None) -> Settings:
    """Load settings by merging config.yaml with environment variables."""
    yaml_data = _load_yaml(_resolve_config_path(config_path))
    init_kwargs = {k: v for k, v in yaml_data.items() if k in _KNOWN_SECTIONS}
    return Settings(**init_kwargs)
