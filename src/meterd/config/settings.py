"""
config/settings.py — meterd Runtime Settings

Merges config.yaml (defaults/structure) with environment variables and an
optional .env file. Pydantic-powered — all fields are validated and typed.

  - DaemonConfig rejects a negative entry cap at parse time
  - GatewayConfig rejects out-of-range ports
  - LoggingConfig normalises and validates the level
  - validate_all() performs cross-field startup validation and raises
    ConfigError with a human-readable message listing every problem found
  - load_settings() respects the METERD_CONFIG env var as a fallback
    when no explicit config_path argument is given
"""

from __future__ import annotations

import os
import threading as _threading
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# ─────────────────────────────────────────────────────────────────────────────
# Errors
# ─────────────────────────────────────────────────────────────────────────────

class ConfigError(Exception):
    """Raised by validate_all() when one or more config problems are found."""


_VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


# ─────────────────────────────────────────────────────────────────────────────
# Sections
# ─────────────────────────────────────────────────────────────────────────────

class DaemonConfig(BaseModel):
    # Seconds of inactivity before the daemon exits; <= 0 disables the timer.
    inactivity_timeout_s: float = 30.0
    max_entries: int = 1024

    @field_validator("max_entries")
    @classmethod
    def _positive_entries(cls, v: int) -> int:
        if v < 1:
            raise ValueError("daemon.max_entries must be >= 1")
        return v


class GatewayConfig(BaseModel):
    host: str = "127.0.0.1"
    port: int = 9191
    max_connections: int = 64

    @field_validator("port")
    @classmethod
    def _valid_port(cls, v: int) -> int:
        if not 0 <= v <= 65535:
            raise ValueError(f"gateway.port {v} is outside 0-65535")
        return v

    @field_validator("max_connections")
    @classmethod
    def _positive_connections(cls, v: int) -> int:
        if v < 1:
            raise ValueError("gateway.max_connections must be >= 1")
        return v


class NetworkConfig(BaseModel):
    """
    Initial network condition, until a monitor pushes condition.set.
    A tariff_path that is missing or unreadable means "no tariff".
    """
    connected: bool = True
    metered: bool = False
    tariff_path: Optional[str] = None
    allow_downloads: bool = True
    allow_downloads_when_metered: bool = True


class LoggingConfig(BaseModel):
    level: str = "INFO"
    log_dir: Optional[str] = None
    max_file_size_mb: int = 10
    backup_count: int = 5
    console_output: bool = True
    json_format: Optional[bool] = None

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


# ─────────────────────────────────────────────────────────────────────────────
# Root Settings
# ─────────────────────────────────────────────────────────────────────────────

class Settings(BaseSettings):
    """
    meterd runtime settings.

    Priority (highest to lowest):
      1. Explicit keyword arguments (config.yaml sections)
      2. Environment variables (e.g. GATEWAY__PORT=9300)
      3. .env file
      4. Field defaults
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
        case_sensitive=False,
    )

    daemon: DaemonConfig = Field(default_factory=DaemonConfig)
    gateway: GatewayConfig = Field(default_factory=GatewayConfig)
    network: NetworkConfig = Field(default_factory=NetworkConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @field_validator("daemon", mode="before")
    @classmethod
    def _coerce_daemon(cls, v: Any) -> Any:
        return DaemonConfig(**v) if isinstance(v, dict) else v

    @field_validator("gateway", mode="before")
    @classmethod
    def _coerce_gateway(cls, v: Any) -> Any:
        return GatewayConfig(**v) if isinstance(v, dict) else v

    @field_validator("network", mode="before")
    @classmethod
    def _coerce_network(cls, v: Any) -> Any:
        return NetworkConfig(**v) if isinstance(v, dict) else v

    @field_validator("logging", mode="before")
    @classmethod
    def _coerce_logging(cls, v: Any) -> Any:
        return LoggingConfig(**v) if isinstance(v, dict) else v

    # -- Convenience properties ----------------------------------------------

    @property
    def log_level(self) -> str:
        return self.logging.level.upper()

    @property
    def log_dir(self) -> Optional[Path]:
        return Path(self.logging.log_dir) if self.logging.log_dir else None

    @property
    def tariff_path(self) -> Optional[Path]:
        return Path(self.network.tariff_path) if self.network.tariff_path else None

    def validate_all(self) -> None:
        """
        Full startup validation. Raises ConfigError listing every problem found.

        Called once from main.bootstrap() before any subsystem initialises.
        Pydantic validators catch per-field errors at parse time; this catches
        problems that only show up against the filesystem or across sections.
        """
        errors: list[str] = []

        # ── Gateway host is non-empty ────────────────────────────────────────
        if not self.gateway.host.strip():
            errors.append("gateway.host must not be empty. Use '127.0.0.1'.")

        # ── Log directory must not be a file ─────────────────────────────────
        ld = self.log_dir
        if ld is not None and ld.exists() and not ld.is_dir():
            errors.append(f"logging.log_dir '{ld}' exists and is not a directory.")

        if errors:
            numbered = "\n".join(f"  {i+1}. {e}" for i, e in enumerate(errors))
            raise ConfigError(
                f"\n\nmeterd startup failed — {len(errors)} configuration "
                f"problem(s) found:\n\n{numbered}\n\n"
                f"Fix the issues above in config/config.yaml or your environment "
                f"and restart.\n"
            )


# ─────────────────────────────────────────────────────────────────────────────
# Loader + singleton
# ─────────────────────────────────────────────────────────────────────────────

_singleton: Optional[Settings] = None
_singleton_lock = _threading.Lock()

_KNOWN_SECTIONS = {"daemon", "gateway", "network", "logging"}


def _load_yaml(path: Path) -> dict:
    if not path.exists():
        return {}
    with path.open("r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def _resolve_config_path(config_path: str | Path | None) -> Path:
    """
    Resolve the config file path with this priority:
      1. Explicit config_path argument (from --config CLI flag)
      2. METERD_CONFIG environment variable
      3. Default: config/config.yaml
    """
    if config_path is not None:
        return Path(config_path)
    env_path = os.environ.get("METERD_CONFIG")
    if env_path:
        return Path(env_path)
    return Path("config/config.yaml")


def load_settings(config_path: str | Path | None = None) -> Settings:
    """
    Load settings by merging config.yaml with environment variables.

    Config path resolution order:
      1. config_path argument  (--config CLI flag)
      2. METERD_CONFIG env var
      3. config/config.yaml   (default)
    """
    global _singleton
    resolved_path = _resolve_config_path(config_path)
    yaml_data = _load_yaml(resolved_path)
    if not isinstance(yaml_data, dict):
        raise ValueError(f"{resolved_path} must contain a YAML mapping")

    init_kwargs = {k: v for k, v in yaml_data.items() if k in _KNOWN_SECTIONS}

    instance = Settings(**init_kwargs)
    with _singleton_lock:
        _singleton = instance
    return instance


def get_settings() -> Settings:
    """
    Return the global Settings singleton, loading it from the default
    config path on first use.
    """
    global _singleton
    if _singleton is not None:
        return _singleton
    with _singleton_lock:
        if _singleton is not None:
            return _singleton
    return load_settings()
