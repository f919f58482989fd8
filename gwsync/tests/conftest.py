"""
Shared test fixtures for the gateway sync engine tests.

Provides environment isolation for EngineSettings, sample gateway records,
MQTT settings and configurations, and a fake clock for the sync client.

CHANGELOG:
- 2026-10-19: Initial creation (STORY-101)

TODO:
- None
"""

from __future__ import annotations

from datetime import UTC, datetime

import pytest
from gwsync.src.models import (
    Configuration,
    GatewayModel,
    GatewayRecord,
    MeterInstance,
    MqttMode,
    MqttSettings,
)

# All EngineSettings environment variable names, used for cleanup.
_ALL_ENGINE_ENV_VARS = (
    "GATEWAY_USERNAME",
    "GATEWAY_PASSWORD",
    "DISCOVERY_PORT",
    "DISCOVERY_WINDOW_S",
    "DISCOVERY_BROADCAST_ADDRESSES",
    "DISCOVERY_FALLBACK_IPS",
    "HTTP_TIMEOUT_S",
    "PUSH_MAX_ATTEMPTS",
    "PUSH_BACKOFF_S",
    "SETTLE_DELAY_S",
    "VERIFY_TIMEOUT_S",
    "VERIFY_POLL_INTERVAL_S",
    "MODBUS_TCP_PORT",
    "LOG_LEVEL",
)


@pytest.fixture(autouse=True)
def _clean_engine_env(monkeypatch: pytest.MonkeyPatch, tmp_path: str) -> None:
    """Remove all engine env vars and isolate from .env files before each test."""
    for var in _ALL_ENGINE_ENV_VARS:
        monkeypatch.delenv(var, raising=False)
    monkeypatch.chdir(tmp_path)


# ---------------------------------------------------------------------------
# Domain objects
# ---------------------------------------------------------------------------


@pytest.fixture()
def n720_gateway() -> GatewayRecord:
    return GatewayRecord(
        ip="192.168.1.50",
        mac="D4-AD-20-11-22-33",
        model=GatewayModel.N720,
        firmware="V1.0.12",
        last_seen=datetime(2026, 10, 19, 9, 0, tzinfo=UTC),
    )


@pytest.fixture()
def n510_gateway() -> GatewayRecord:
    return GatewayRecord(
        ip="192.168.1.60",
        mac="D4-AD-20-44-55-66",
        model=GatewayModel.N510,
        firmware="V2.0.19",
        last_seen=datetime(2026, 10, 19, 9, 0, tzinfo=UTC),
    )


@pytest.fixture()
def gateway_mqtt() -> MqttSettings:
    return MqttSettings(
        host="tb.example.com",
        port=1883,
        access_token="abc123",
        device_name="Site-GW",
        mode=MqttMode.GATEWAY,
    )


@pytest.fixture()
def single_mqtt() -> MqttSettings:
    return MqttSettings(
        host="tb.example.com",
        port=1883,
        access_token="abc123",
        device_name="Meter-Room",
        mode=MqttMode.SINGLE_DEVICE,
    )


@pytest.fixture()
def floor1() -> MeterInstance:
    return MeterInstance(name="Floor1", meter_type="EM4371", slave_address=3)


@pytest.fixture()
def n720_config(
    n720_gateway: GatewayRecord, gateway_mqtt: MqttSettings, floor1: MeterInstance
) -> Configuration:
    return Configuration(gateway=n720_gateway, mqtt=gateway_mqtt, meters=(floor1,))


@pytest.fixture()
def n510_config(
    n510_gateway: GatewayRecord, gateway_mqtt: MqttSettings, floor1: MeterInstance
) -> Configuration:
    return Configuration(gateway=n510_gateway, mqtt=gateway_mqtt, meters=(floor1,))


# ---------------------------------------------------------------------------
# Time
# ---------------------------------------------------------------------------


class FakeClock:
    """Monotonic clock advanced only by its own ``sleep``."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, delay: float) -> None:
        self.sleeps.append(delay)
        self.now += delay


@pytest.fixture()
def fake_clock() -> FakeClock:
    return FakeClock()
