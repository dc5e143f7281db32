"""
tests/unit/test_config.py — Settings and config loading

Covers:
  - Defaults load cleanly with no YAML file
  - Per-field validators: max_entries, port, max_connections, log level
  - validate_all() raises ConfigError with a numbered list of every problem
  - Environment variables with the nested "__" delimiter override defaults
  - METERD_CONFIG env var is respected by load_settings()
  - Explicit config_path argument takes priority over env var
  - A YAML file that is not a mapping is rejected
"""

from __future__ import annotations

import os
import textwrap
from pathlib import Path
from unittest.mock import patch

import pytest
from pydantic import ValidationError


# ── Helpers ───────────────────────────────────────────────────────────────────

def _make_settings(**overrides):
    """Build a Settings object from keyword overrides (no YAML file needed)."""
    from meterd.config.settings import Settings
    return Settings(**overrides)


def _make_gateway_cfg(**kwargs):
    from meterd.config.settings import GatewayConfig
    return GatewayConfig(**kwargs)


def _make_logging_cfg(**kwargs):
    from meterd.config.settings import LoggingConfig
    return LoggingConfig(**kwargs)


# ── Sections ──────────────────────────────────────────────────────────────────

class TestDefaults:
    def test_defaults(self):
        s = _make_settings()
        assert s.daemon.inactivity_timeout_s == 30.0
        assert s.daemon.max_entries == 1024
        assert s.gateway.port == 9191
        assert s.network.connected is True
        assert s.tariff_path is None
        assert s.log_dir is None
        assert s.log_level == "INFO"

    def test_sections_accept_dicts(self):
        s = _make_settings(daemon={"inactivity_timeout_s": 0}, network={"metered": True})
        assert s.daemon.inactivity_timeout_s == 0
        assert s.network.metered is True


class TestDaemonConfig:
    def test_zero_entries_rejected(self):
        with pytest.raises(ValidationError):
            _make_settings(daemon={"max_entries": 0})


class TestGatewayConfig:
    def test_port_zero_allowed(self):
        assert _make_gateway_cfg(port=0).port == 0

    @pytest.mark.parametrize("port", [-1, 65536])
    def test_out_of_range_port_rejected(self, port):
        with pytest.raises(ValidationError):
            _make_gateway_cfg(port=port)

    def test_zero_connections_rejected(self):
        with pytest.raises(ValidationError):
            _make_gateway_cfg(max_connections=0)


class TestLoggingConfig:
    def test_valid_levels(self):
        for level in ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]:
            assert _make_logging_cfg(level=level).level == level

    def test_case_insensitive(self):
        assert _make_logging_cfg(level="debug").level == "DEBUG"

    def test_invalid_level_rejected(self):
        with pytest.raises(ValidationError) as exc_info:
            _make_logging_cfg(level="VERBOSE")
        assert "VERBOSE" in str(exc_info.value)


class TestEnvironment:
    def test_nested_env_override(self, monkeypatch):
        monkeypatch.setenv("GATEWAY__PORT", "9300")
        monkeypatch.setenv("NETWORK__METERED", "true")
        s = _make_settings()
        assert s.gateway.port == 9300
        assert s.network.metered is True


# ── validate_all() ────────────────────────────────────────────────────────────

class TestValidateAll:
    def test_passes_with_defaults(self):
        _make_settings().validate_all()  # should not raise

    def test_missing_tariff_file_is_accepted(self, tmp_path):
        _make_settings(network={"tariff_path": str(tmp_path / "none.tariff")}).validate_all()

    def test_tariff_while_disconnected_is_accepted(self, tmp_path):
        s = _make_settings(network={"connected": False, "tariff_path": str(tmp_path / "t.tariff")})
        s.validate_all()

    def test_log_dir_is_a_file(self, tmp_path):
        from meterd.config.settings import ConfigError
        not_a_dir = tmp_path / "file"
        not_a_dir.write_text("x")
        s = _make_settings(logging={"log_dir": str(not_a_dir)})
        with pytest.raises(ConfigError):
            s.validate_all()

    def test_multiple_errors_all_reported(self, tmp_path):
        from meterd.config.settings import ConfigError
        not_a_dir = tmp_path / "file"
        not_a_dir.write_text("x")
        s = _make_settings(gateway={"host": "   "}, logging={"log_dir": str(not_a_dir)})
        with pytest.raises(ConfigError) as exc_info:
            s.validate_all()
        msg = str(exc_info.value)
        assert "2 configuration problem(s)" in msg
        assert "1." in msg and "2." in msg


# ── Config path resolution ────────────────────────────────────────────────────

class TestConfigPathResolution:
    def test_explicit_path_takes_priority(self, tmp_path):
        """Explicit config_path arg overrides env var."""
        from meterd.config.settings import _resolve_config_path
        cfg_file = tmp_path / "custom.yaml"
        cfg_file.write_text("")
        env_file = tmp_path / "env.yaml"

        with patch.dict(os.environ, {"METERD_CONFIG": str(env_file)}):
            resolved = _resolve_config_path(str(cfg_file))
        assert resolved == Path(str(cfg_file))

    def test_env_var_used_when_no_explicit_path(self, tmp_path):
        from meterd.config.settings import _resolve_config_path
        env_file = tmp_path / "env_config.yaml"

        with patch.dict(os.environ, {"METERD_CONFIG": str(env_file)}):
            resolved = _resolve_config_path(None)
        assert resolved == Path(str(env_file))

    def test_default_path_when_no_arg_no_env(self):
        from meterd.config.settings import _resolve_config_path
        assert _resolve_config_path(None) == Path("config/config.yaml")

    def test_load_settings_from_file(self, tmp_path):
        """load_settings reads a custom YAML file and sets the singleton."""
        import meterd.config.settings as cs

        cfg_file = tmp_path / "test_config.yaml"
        cfg_file.write_text(textwrap.dedent("""
            daemon:
              inactivity_timeout_s: 5
            gateway:
              port: 9400
            network:
              metered: true
            unknown_section:
              ignored: true
        """))
        s = cs.load_settings(cfg_file)
        assert s.daemon.inactivity_timeout_s == 5
        assert s.gateway.port == 9400
        assert s.network.metered is True
        assert cs.get_settings() is s

    def test_load_settings_via_env_var(self, tmp_path, monkeypatch):
        from meterd.config.settings import load_settings
        cfg_file = tmp_path / "env.yaml"
        cfg_file.write_text("gateway:\n  port: 9555\n")
        monkeypatch.setenv("METERD_CONFIG", str(cfg_file))
        assert load_settings().gateway.port == 9555

    def test_missing_file_gives_defaults(self, tmp_path):
        from meterd.config.settings import load_settings
        assert load_settings(tmp_path / "absent.yaml").gateway.port == 9191

    def test_non_mapping_rejected(self, tmp_path):
        from meterd.config.settings import load_settings
        cfg_file = tmp_path / "list.yaml"
        cfg_file.write_text("- just\n- a list\n")
        with pytest.raises(ValueError):
            load_settings(cfg_file)
