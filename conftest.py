"""
Test conftest — isolate TASKCADENCE_* environment variables so settings
tests are not affected by the developer's or CI environment, and disable
.env loading so a local .env never leaks into Settings().
"""
import os

import pytest


@pytest.fixture(autouse=True)
def _isolate_settings_env(monkeypatch):
    for var in [k for k in os.environ if k.upper().startswith("TASKCADENCE_")]:
        monkeypatch.delenv(var, raising=False)

    import taskcadence.config.settings as settings_module
    from pydantic_settings import SettingsConfigDict
    patched_config = SettingsConfigDict(
        env_prefix="TASKCADENCE_",
        env_file=None,
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
        case_sensitive=False,
    )
    monkeypatch.setattr(settings_module.Settings, "model_config", patched_config)
