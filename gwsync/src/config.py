"""
Engine configuration loaded from environment variables.

Uses Pydantic BaseSettings for env var and ``.env`` loading. Every value has
a default matching the gateways' factory behaviour, so an empty environment
yields a working engine.

CHANGELOG:
- 2026-10-19: Initial creation (STORY-110)

TODO:
- None
"""

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings

_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class EngineSettings(BaseSettings):
    """Gateway sync engine configuration.

    Attributes:
        gateway_username: HTTP Basic auth user of the gateway web interface.
        gateway_password: HTTP Basic auth password.
        discovery_port: UDP port the gateways listen on for probes.
        discovery_window_s: Seconds to collect discovery replies.
        discovery_broadcast_addresses: Broadcast targets for the probe.
        discovery_fallback_ips: Addresses identified over HTTP when no
            gateway answers the broadcast (e.g. factory default
            ``192.168.0.7``). Empty by default.
        http_timeout_s: Per-request timeout for gateway HTTP calls.
        push_max_attempts: Attempts per push step before giving up.
        push_backoff_s: Initial delay between push attempts; doubles on
            each retry.
        settle_delay_s: Wait after an accepted push before polling.
        verify_timeout_s: Total verification budget, measured from the
            accepted push. Must exceed *settle_delay_s*.
        verify_poll_interval_s: Delay between readback polls.
        modbus_tcp_port: Gateway Modbus TCP port used by the meter probe.
        log_level: Root log level.
    """

    gateway_username: str = "admin"
    gateway_password: str = "admin"
    discovery_port: int = 1901
    discovery_window_s: float = 3.0
    discovery_broadcast_addresses: list[str] = ["255.255.255.255"]
    discovery_fallback_ips: list[str] = []
    http_timeout_s: float = 3.0
    push_max_attempts: int = 3
    push_backoff_s: float = 1.0
    settle_delay_s: float = 30.0
    verify_timeout_s: float = 180.0
    verify_poll_interval_s: float = 2.0
    modbus_tcp_port: int = 502
    log_level: str = "INFO"

    @field_validator("discovery_port", "modbus_tcp_port")
    @classmethod
    def port_must_be_valid(cls, v: int) -> int:
        """Validate UDP/TCP ports are in range."""
        if v < 1 or v > 65535:
            raise ValueError("Port must be between 1 and 65535")
        return v

    @field_validator("discovery_window_s", "http_timeout_s", "verify_poll_interval_s")
    @classmethod
    def duration_must_be_positive(cls, v: float) -> float:
        """Every network hop needs a bounded, non-zero wait."""
        if v <= 0:
            raise ValueError("Durations must be > 0")
        return v

    @field_validator("settle_delay_s", "push_backoff_s")
    @classmethod
    def delay_must_be_non_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError("Delays must be >= 0")
        return v

    @field_validator("push_max_attempts")
    @classmethod
    def push_attempts_must_be_valid(cls, v: int) -> int:
        """Validate push attempts is between 1 and 10."""
        if v < 1 or v > 10:
            raise ValueError("PUSH_MAX_ATTEMPTS must be >= 1 and <= 10")
        return v

    @field_validator("discovery_broadcast_addresses")
    @classmethod
    def broadcast_addresses_must_be_set(cls, v: list[str]) -> list[str]:
        if not v:
            raise ValueError("DISCOVERY_BROADCAST_ADDRESSES must not be empty")
        return v

    @field_validator("log_level")
    @classmethod
    def log_level_must_be_known(cls, v: str) -> str:
        level = v.upper()
        if level not in _LOG_LEVELS:
            raise ValueError(f"LOG_LEVEL must be one of {', '.join(_LOG_LEVELS)}")
        return level

    @model_validator(mode="after")
    def _verify_timeout_exceeds_settle_delay(self) -> "EngineSettings":
        """Polling must get a window after the settle delay."""
        if self.verify_timeout_s <= self.settle_delay_s:
            raise ValueError("VERIFY_TIMEOUT_S must be greater than SETTLE_DELAY_S")
        return self

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}
