"""
Config payload generator: Configuration + Catalog -> gateway payload document.

``generate`` is a pure function. It resolves every meter's template, emits
one polling block per register definition, builds the report template that
routes values to the platform, and embeds the MQTT settings once at the
document root. The canonical body is compact JSON in a fixed key order with
no timestamps or random ids, so equal Configurations produce byte-identical
bodies and equal fingerprints.

Document layout::

    {
      "format": "gwsync/1",
      "catalog_version": "...",
      "model": "N720",
      "mqtt": {...},
      "schedule": {"poll_interval_ms": 100, "report_period_s": 60},
      "meters": [{"name", "meter_type", "slave", "firmware_name", "points"}],
      "blocks": [{"device_key", "slave", "function", "address", ...}],
      "report": {"topic": "...", "template": {...}}
    }

Firmware-native artefacts (edge.json, CSV, edge_report) are rendered from
this document by :mod:`gwsync.src.firmware`.

CHANGELOG:
- 2026-10-19: Initial creation (STORY-107)

TODO:
- None
"""

from __future__ import annotations

import hashlib
import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from gwsync.src import mapper
from gwsync.src.catalog import CATALOG_VERSION, MeterTemplate, lookup
from gwsync.src.errors import TemplateResolutionError, UnknownMeterType
from gwsync.src.models import Configuration, GatewayModel, MeterInstance, MqttMode

logger = logging.getLogger(__name__)

PAYLOAD_FORMAT = "gwsync/1"
POLL_INTERVAL_MS = 100
MQTT_QOS = 1
TIMESTAMP_PLACEHOLDER = "sys_timestamp_ms"
"""Placeholder the N720 firmware substitutes with the sample time."""


@dataclass(frozen=True, slots=True)
class GatewayPayload:
    """Compiled configuration for one gateway.

    Attributes:
        model: Gateway model the payload targets.
        document: Structured payload document (see module docstring).
        body: Canonical JSON encoding of *document*.
        fingerprint: SHA-256 hex digest of *body*.
        block_count: Number of Modbus polling blocks.
    """

    model: GatewayModel
    document: dict[str, Any]
    body: bytes
    fingerprint: str
    block_count: int

    @property
    def blocks(self) -> list[dict[str, Any]]:
        return self.document["blocks"]

    @property
    def topic(self) -> str:
        return self.document["report"]["topic"]

    @property
    def report_template(self) -> dict[str, Any]:
        return self.document["report"]["template"]


# ---------------------------------------------------------------------------
# Canonical encoding
# ---------------------------------------------------------------------------


def canonical_json(document: Any) -> bytes:
    """Encode *document* as compact UTF-8 JSON."""
    return json.dumps(document, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def fingerprint_of(document: Any) -> str:
    """SHA-256 hex digest of the canonical encoding of *document*."""
    return hashlib.sha256(canonical_json(document)).hexdigest()


# ---------------------------------------------------------------------------
# Document sections
# ---------------------------------------------------------------------------


def _resolve(
    meter: MeterInstance, catalog: Mapping[str, MeterTemplate] | None
) -> MeterTemplate:
    try:
        return lookup(meter.meter_type, catalog)
    except UnknownMeterType as exc:
        raise TemplateResolutionError(
            f"Meter '{meter.name}' (slave {meter.slave_address}) references "
            f"meter type '{meter.meter_type}' missing from catalog"
        ) from exc


def _meter_blocks(
    config: Configuration, meter: MeterInstance, template: MeterTemplate
) -> list[dict[str, Any]]:
    key = mapper.device_key(meter, config.mqtt)
    return [
        {
            "device_key": key,
            "slave": meter.slave_address,
            "function": reg.function_code,
            "address": reg.address,
            "data_type": reg.data_type,
            "scale": reg.scale,
            "label": reg.label,
            "point": mapper.point_name(reg.label, meter.slave_address),
            "timeout_ms": reg.timeout_ms,
        }
        for reg in template.registers
    ]


def _template_entry(
    model: GatewayModel, meter: MeterInstance, template: MeterTemplate
) -> dict[str, Any]:
    values = {
        reg.label: mapper.point_name(reg.label, meter.slave_address)
        for reg in template.registers
    }
    if model is GatewayModel.N720:
        return {"ts": TIMESTAMP_PLACEHOLDER, "values": values}
    return values


def build_report_template(
    config: Configuration, catalog: Mapping[str, MeterTemplate] | None = None
) -> dict[str, Any]:
    """Build the platform report template for *config*.

    GatewayMode maps each device key to the entries of every meter sharing
    that key, in configuration order. SingleDeviceMode flattens the single
    meter's entry onto the template root.

    Raises:
        TemplateResolutionError: If a meter type is missing from *catalog*.
    """
    model = config.gateway.model
    if config.mqtt.mode is MqttMode.SINGLE_DEVICE:
        flat: dict[str, Any] = {}
        for meter in config.meters:
            flat.update(_template_entry(model, meter, _resolve(meter, catalog)))
        return flat

    multiplexed: dict[str, Any] = {}
    for meter in config.meters:
        key = mapper.device_key(meter, config.mqtt)
        multiplexed.setdefault(key, []).append(
            _template_entry(model, meter, _resolve(meter, catalog))
        )
    return multiplexed


def _mqtt_section(config: Configuration) -> dict[str, Any]:
    mqtt = config.mqtt
    return {
        "host": mqtt.host,
        "port": mqtt.port,
        "client_id": mqtt.device_name or config.gateway.identifier,
        "username": mqtt.access_token,
        "password": "",
        "qos": MQTT_QOS,
        "keepalive_s": mqtt.keepalive_s,
        "mode": mqtt.mode.value,
        "topic": mapper.topic_for(mqtt.mode),
    }


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def generate(
    config: Configuration, catalog: Mapping[str, MeterTemplate] | None = None
) -> GatewayPayload:
    """Compile *config* into the gateway payload.

    Args:
        config: Validated configuration.
        catalog: Template catalog; defaults to the built-in catalog.

    Returns:
        The compiled :class:`GatewayPayload`.

    Raises:
        TemplateResolutionError: If a meter references a type absent from
            *catalog*.
    """
    meters: list[dict[str, Any]] = []
    blocks: list[dict[str, Any]] = []
    for meter in config.meters:
        template = _resolve(meter, catalog)
        meters.append(
            {
                "name": meter.name,
                "meter_type": str(template.meter_type),
                "slave": meter.slave_address,
                "firmware_name": mapper.firmware_slave_name(meter),
                "points": template.point_count,
            }
        )
        blocks.extend(_meter_blocks(config, meter, template))

    document: dict[str, Any] = {
        "format": PAYLOAD_FORMAT,
        "catalog_version": CATALOG_VERSION,
        "model": config.gateway.model.value,
        "mqtt": _mqtt_section(config),
        "schedule": {
            "poll_interval_ms": POLL_INTERVAL_MS,
            "report_period_s": config.mqtt.report_period_s,
        },
        "meters": meters,
        "blocks": blocks,
        "report": {
            "topic": mapper.topic_for(config.mqtt.mode),
            "template": build_report_template(config, catalog),
        },
    }
    body = canonical_json(document)
    payload = GatewayPayload(
        model=config.gateway.model,
        document=document,
        body=body,
        fingerprint=hashlib.sha256(body).hexdigest(),
        block_count=len(blocks),
    )
    logger.debug(
        "Generated payload for %s: %d meters, %d blocks, fingerprint=%s",
        config.gateway.identifier,
        len(meters),
        payload.block_count,
        payload.fingerprint[:12],
    )
    return payload
