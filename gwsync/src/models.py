"""
Pydantic models for gateways, meters and gateway configurations.

Every model here is frozen. A :class:`Configuration` is a value object: each
edit produces a new instance (see :mod:`gwsync.src.configuration`), so a sync
session can capture one without racing the edit path.

Domain rules (slave address range, mode capacity, non-empty credentials) are
deliberately *not* pydantic validators; they are enforced by the validator so
that failures surface as the engine's own :mod:`~gwsync.src.errors` types.

CHANGELOG:
- 2026-10-19: Initial creation (STORY-103)

TODO:
- None
"""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, ConfigDict


class GatewayModel(StrEnum):
    """Supported USR gateway hardware."""

    N720 = "N720"
    N510 = "N510"


class MeterType(StrEnum):
    """Meter type ids registered in the catalog."""

    EM4371 = "EM4371"
    XMC34F = "XMC34F"
    SFERE720 = "Sfere720"
    ENERGY_NG9 = "EnergyNG9"
    TAC4300 = "TAC4300"


class Reachability(StrEnum):
    """How much we know about a gateway's reachability."""

    REACHABLE = "reachable"
    """Answered a discovery probe or an HTTP identification request."""

    UNCONFIRMED = "unconfirmed"
    """Entered manually; confirmed on the first sync attempt."""


class MqttMode(StrEnum):
    """ThingsBoard device type the gateway reports as."""

    GATEWAY = "gateway"
    SINGLE_DEVICE = "single_device"


class SyncState(StrEnum):
    """States of a :class:`~gwsync.src.sync_client.SyncSession`."""

    IDLE = "idle"
    PUSHING = "pushing"
    AWAITING_REBOOT = "awaiting_reboot"
    VERIFYING = "verifying"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


_FROZEN = ConfigDict(frozen=True)


class GatewayRecord(BaseModel):
    """A gateway found by discovery or entered by hand.

    Attributes:
        ip: IPv4 address the gateway answered from.
        mac: MAC address (``AA-BB-CC-DD-EE-FF``), the stable device
            identifier. Empty for manually entered gateways.
        model: Gateway hardware model.
        reachability: Whether reachability has been confirmed.
        last_seen: Time of the most recent reply, ``None`` if never seen.
        firmware: Firmware version string when reported.
    """

    model_config = _FROZEN

    ip: str
    mac: str = ""
    model: GatewayModel
    reachability: Reachability = Reachability.REACHABLE
    last_seen: datetime | None = None
    firmware: str = ""

    @property
    def identifier(self) -> str:
        """Key used for per-gateway locking: the MAC, or the IP if unknown."""
        return self.mac or self.ip


class MeterInstance(BaseModel):
    """One Modbus meter on the gateway's RS485 line.

    Attributes:
        name: Display name; doubles as the downstream device key.
        meter_type: Catalog type id (e.g. ``"EM4371"``).
        slave_address: Modbus RTU slave address.
    """

    model_config = _FROZEN

    name: str
    meter_type: str
    slave_address: int


class MqttSettings(BaseModel):
    """Broker connection and reporting settings.

    Attributes:
        host: Broker host name or IP.
        port: Broker TCP port.
        access_token: ThingsBoard device access token (MQTT username).
        device_name: MQTT client id; in GatewayMode it must equal the
            ThingsBoard Gateway device name.
        mode: GatewayMode or SingleDeviceMode.
        report_period_s: Seconds between telemetry reports.
        keepalive_s: MQTT keepalive in seconds.
    """

    model_config = _FROZEN

    host: str
    port: int = 1883
    access_token: str
    device_name: str = ""
    mode: MqttMode = MqttMode.GATEWAY
    report_period_s: int = 60
    keepalive_s: int = 60


class Configuration(BaseModel):
    """Target state of one gateway: MQTT settings plus an ordered meter list."""

    model_config = _FROZEN

    gateway: GatewayRecord
    mqtt: MqttSettings
    meters: tuple[MeterInstance, ...] = ()

    def meter_at(self, slave_address: int) -> MeterInstance | None:
        """Return the meter on *slave_address*, or ``None``."""
        for meter in self.meters:
            if meter.slave_address == slave_address:
                return meter
        return None
