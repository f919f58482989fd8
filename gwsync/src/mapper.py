"""
Topic and device-identity mapping for ThingsBoard telemetry.

Topics and device keys are derived only from Configuration fields, never from
list positions, payload hashes or timestamps. Re-synchronizing an unchanged
meter list therefore never yields a new downstream device.

Identity rules:
- GatewayMode: every meter multiplexes onto ``v1/gateway/telemetry`` and is
  keyed by its display name.
- SingleDeviceMode: the single meter reports on ``v1/devices/me/telemetry``
  under the device's own identity; there is no per-meter key.

The display name is the one canonical identity. The firmware slave name
(:func:`firmware_slave_name`) is a lossy, derived view that some gateway
firmware fields require; nothing downstream is keyed on it.

CHANGELOG:
- 2026-10-19: Initial creation (STORY-106)

TODO:
- None
"""

from __future__ import annotations

import logging
import re
from typing import NamedTuple

from gwsync.src.models import Configuration, MeterInstance, MqttMode, MqttSettings

logger = logging.getLogger(__name__)

GATEWAY_TOPIC = "v1/gateway/telemetry"
DEVICE_TOPIC = "v1/devices/me/telemetry"

_FIRMWARE_NAME_MAX_LEN = 14
_WHITESPACE = re.compile(r"\s+")
_NOT_WORD = re.compile(r"[^A-Za-z0-9_]")


class IdentityDrift(NamedTuple):
    """A meter whose device key changed between two configurations."""

    slave_address: int
    old_key: str
    new_key: str

    def describe(self) -> str:
        """Human readable warning text."""
        return (
            f"Meter on slave {self.slave_address} renamed from "
            f"'{self.old_key}' to '{self.new_key}': the platform will create "
            f"a new device '{self.new_key}' and stop updating '{self.old_key}'"
        )


def topic_for(mode: MqttMode) -> str:
    """Return the MQTT telemetry topic for a device *mode*."""
    if mode is MqttMode.SINGLE_DEVICE:
        return DEVICE_TOPIC
    return GATEWAY_TOPIC


def device_key(meter: MeterInstance, mqtt: MqttSettings) -> str | None:
    """Return the downstream device key for *meter*.

    Returns:
        The meter's display name in GatewayMode, ``None`` in SingleDeviceMode
        where the device identity is the device name itself.
    """
    if mqtt.mode is MqttMode.SINGLE_DEVICE:
        return None
    return meter.name


def point_name(label: str, slave_address: int) -> str:
    """Gateway-side data point name, e.g. ``v_l1_3`` for slave 3."""
    return f"{label}_{slave_address}"


def firmware_slave_name(meter: MeterInstance, max_len: int = _FIRMWARE_NAME_MAX_LEN) -> str:
    """Sanitised slave name for firmware fields.

    Whitespace becomes ``_`` and every character outside ``[A-Za-z0-9_]`` is
    dropped, then the result is cut to *max_len*. Falls back to
    ``meter_<slave>`` when nothing survives sanitisation.
    """
    name = _NOT_WORD.sub("", _WHITESPACE.sub("_", meter.name.strip()))
    if not name:
        name = f"meter_{meter.slave_address}"
    return name[:max_len]


def identity_drift(previous: Configuration, current: Configuration) -> list[IdentityDrift]:
    """Detect meters whose device key changed between two configurations.

    Meters are matched by slave address. A changed key means the platform
    will register a second device; the rename is reported, never resolved.
    """
    if current.mqtt.mode is MqttMode.SINGLE_DEVICE:
        return []

    drifts: list[IdentityDrift] = []
    for meter in current.meters:
        before = previous.meter_at(meter.slave_address)
        if before is None:
            continue
        old_key = device_key(before, previous.mqtt)
        new_key = device_key(meter, current.mqtt)
        if old_key is not None and new_key is not None and old_key != new_key:
            drift = IdentityDrift(meter.slave_address, old_key, new_key)
            logger.warning("Device identity drift: %s", drift.describe())
            drifts.append(drift)
    return drifts
