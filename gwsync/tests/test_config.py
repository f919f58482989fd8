"""
Unit tests for engine configuration (EngineSettings).

Tests verify:
- An empty environment yields the documented defaults.
- Values load from environment variables and from a .env file.
- Ports, durations, delays, attempts and log level are validated.
- VERIFY_TIMEOUT_S must exceed SETTLE_DELAY_S.

CHANGELOG:
- 2026-10-19: Initial creation (STORY-110)

TODO:
- None
"""

from pathlib import Path

import pytest
from gwsync.src.config import EngineSettings
from pydantic import ValidationError


class TestEngineSettingsDefaults:
    """Defaults apply when nothing is configured."""

    def test_defaults(self) -> None:
        settings = EngineSettings()

        assert settings.gateway_username == "admin"
        assert settings.gateway_password == "admin"
        assert settings.discovery_port == 1901
        assert settings.discovery_window_s == 3.0
        assert settings.discovery_broadcast_addresses == ["255.255.255.255"]
        assert settings.discovery_fallback_ips == []
        assert settings.http_timeout_s == 3.0
        assert settings.push_max_attempts == 3
        assert settings.push_backoff_s == 1.0
        assert settings.settle_delay_s == 30.0
        assert settings.verify_timeout_s == 180.0
        assert settings.verify_poll_interval_s == 2.0
        assert settings.modbus_tcp_port == 502
        assert settings.log_level == "INFO"


class TestEngineSettingsLoadsFromEnv:
    """Environment variables and .env files override defaults."""

    def test_loads_env_vars(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("GATEWAY_PASSWORD", "s3cret")
        monkeypatch.setenv("DISCOVERY_WINDOW_S", "1.5")
        monkeypatch.setenv("DISCOVERY_BROADCAST_ADDRESSES", '["192.168.1.255", "10.0.0.255"]')
        monkeypatch.setenv("DISCOVERY_FALLBACK_IPS", '["192.168.0.7"]')
        monkeypatch.setenv("PUSH_MAX_ATTEMPTS", "5")
        monkeypatch.setenv("LOG_LEVEL", "debug")

        settings = EngineSettings()

        assert settings.gateway_password == "s3cret"
        assert settings.discovery_window_s == 1.5
        assert settings.discovery_broadcast_addresses == ["192.168.1.255", "10.0.0.255"]
        assert settings.discovery_fallback_ips == ["192.168.0.7"]
        assert settings.push_max_attempts == 5
        assert settings.log_level == "DEBUG"

    def test_loads_dotenv_file(self, tmp_path: Path) -> None:
        (tmp_path / ".env").write_text("GATEWAY_USERNAME=operator\nSETTLE_DELAY_S=10\n")

        settings = EngineSettings()

        assert settings.gateway_username == "operator"
        assert settings.settle_delay_s == 10.0


class TestEngineSettingsValidation:
    """Invalid values are rejected with a ValidationError."""

    @pytest.mark.parametrize(
        ("var", "value"),
        [
            ("DISCOVERY_PORT", "0"),
            ("DISCOVERY_PORT", "65536"),
            ("MODBUS_TCP_PORT", "-1"),
            ("DISCOVERY_WINDOW_S", "0"),
            ("HTTP_TIMEOUT_S", "-1"),
            ("VERIFY_POLL_INTERVAL_S", "0"),
            ("SETTLE_DELAY_S", "-0.5"),
            ("PUSH_BACKOFF_S", "-1"),
            ("PUSH_MAX_ATTEMPTS", "0"),
            ("PUSH_MAX_ATTEMPTS", "11"),
            ("DISCOVERY_BROADCAST_ADDRESSES", "[]"),
            ("LOG_LEVEL", "VERBOSE"),
        ],
    )
    def test_invalid_value(self, monkeypatch: pytest.MonkeyPatch, var: str, value: str) -> None:
        monkeypatch.setenv(var, value)
        with pytest.raises(ValidationError) as exc_info:
            EngineSettings()
        assert var.lower() in str(exc_info.value).lower()

    def test_zero_settle_delay_allowed(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("SETTLE_DELAY_S", "0")
        assert EngineSettings().settle_delay_s == 0.0

    def test_verify_timeout_must_exceed_settle_delay(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("SETTLE_DELAY_S", "60")
        monkeypatch.setenv("VERIFY_TIMEOUT_S", "60")
        with pytest.raises(ValidationError, match="VERIFY_TIMEOUT_S"):
            EngineSettings()

    def test_constructor_kwargs(self) -> None:
        settings = EngineSettings(settle_delay_s=5, verify_timeout_s=20)
        assert settings.verify_timeout_s == 20.0
