"""
Test conftest — isolate configuration environment variables and structlog
state so tests are not affected by a developer's shell, .env file, or
logging configured by an earlier test.
"""
import pytest
import structlog

_CONFIG_ENV_PREFIXES = ("DAEMON__", "GATEWAY__", "NETWORK__", "LOGGING__")


@pytest.fixture(autouse=True)
def _isolate_environment(monkeypatch):
    """Remove meterd env vars for every test and disable .env file loading
    so Settings() behaves as if only the test's own input is present."""
    import os

    monkeypatch.delenv("METERD_CONFIG", raising=False)
    for var in list(os.environ):
        if var.upper().startswith(_CONFIG_ENV_PREFIXES):
            monkeypatch.delenv(var, raising=False)

    import meterd.config.settings as settings_module
    from pydantic_settings import SettingsConfigDict
    patched_config = SettingsConfigDict(
        env_file=None,
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
        case_sensitive=False,
    )
    monkeypatch.setattr(settings_module.Settings, "model_config", patched_config)
    monkeypatch.setattr(settings_module, "_singleton", None)


@pytest.fixture(autouse=True)
def _reset_structlog():
    """setup_logging() turns on logger caching; undo it so capture_logs()
    keeps working in later tests."""
    yield
    structlog.reset_defaults()
    structlog.contextvars.clear_contextvars()
