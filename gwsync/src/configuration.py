"""
Configuration building, editing and validation.

Every editing operation takes a :class:`~gwsync.src.models.Configuration`
and returns a *new* one, or raises a
:class:`~gwsync.src.errors.ConfigurationError` subclass. The input is never
modified, so a failed edit leaves no observable partial change and a
Configuration captured by an in-flight sync session cannot be affected.

Rules:
- Slave addresses are unique and within [1, 247].
- SingleDeviceMode permits at most one meter.
- Broker host and access token are non-empty; port is a valid TCP port.
- Meter names are non-empty.
- The meter type is registered and supported on the gateway model.

Warnings (never block a sync):
- Duplicate meter names, or names that collapse to the same firmware name.
- N510 capacity limits (126 data points, 2048-byte report template).
- Device identity drift against a previous configuration.
- Missing MQTT device name (the gateway identifier is used as client id).

Operations:
- build_configuration(gateway, mqtt, meters): validated new Configuration.
- add_meter / remove_meter / update_meter / set_mqtt_settings.
- validate(config, previous): full :class:`ValidationReport`.

CHANGELOG:
- 2026-10-19: Initial creation (STORY-105)

TODO:
- None
"""

from __future__ import annotations

import logging
from collections import Counter, defaultdict
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass

from gwsync.src import mapper
from gwsync.src.catalog import MeterTemplate, lookup
from gwsync.src.errors import (
    ConfigurationError,
    IncompatibleMeterType,
    InvalidMeterName,
    InvalidMqttSettings,
    InvalidSlaveAddress,
    MeterNotFound,
    ModeCapacityExceeded,
)
from gwsync.src.generator import build_report_template, canonical_json
from gwsync.src.models import (
    Configuration,
    GatewayModel,
    GatewayRecord,
    MeterInstance,
    MqttMode,
    MqttSettings,
)

logger = logging.getLogger(__name__)

SLAVE_ADDRESS_MIN = 1
SLAVE_ADDRESS_MAX = 247
TCP_PORT_MIN = 1
TCP_PORT_MAX = 65535
SINGLE_DEVICE_MAX_METERS = 1

N510_MAX_POINTS = 126
N510_MAX_TEMPLATE_BYTES = 2048


@dataclass(frozen=True, slots=True)
class ValidationReport:
    """Outcome of :func:`validate`.

    Attributes:
        errors: Rule violations; any error blocks payload generation.
        warnings: Human readable notices that do not block a sync.
    """

    errors: tuple[ConfigurationError, ...] = ()
    warnings: tuple[str, ...] = ()

    @property
    def ok(self) -> bool:
        return not self.errors

    def raise_for_errors(self) -> None:
        """Raise the first error, if any."""
        if self.errors:
            raise self.errors[0]


# ---------------------------------------------------------------------------
# Single-rule checks (raise on violation)
# ---------------------------------------------------------------------------


def _check_slave_range(slave_address: int) -> None:
    if (
        isinstance(slave_address, bool)
        or not isinstance(slave_address, int)
        or not SLAVE_ADDRESS_MIN <= slave_address <= SLAVE_ADDRESS_MAX
    ):
        raise InvalidSlaveAddress(
            f"Slave address {slave_address!r} outside "
            f"[{SLAVE_ADDRESS_MIN}, {SLAVE_ADDRESS_MAX}]"
        )


def _check_slave_free(meters: Iterable[MeterInstance], slave_address: int) -> None:
    if any(m.slave_address == slave_address for m in meters):
        raise InvalidSlaveAddress(f"Slave address {slave_address} is already in use")


def _check_name(name: str) -> None:
    if not name or not name.strip():
        raise InvalidMeterName("Meter name must not be empty")


def _check_meter_type(
    meter_type: str,
    model: GatewayModel,
    catalog: Mapping[str, MeterTemplate] | None,
) -> MeterTemplate:
    template = lookup(meter_type, catalog)
    if model not in template.supported_models:
        raise IncompatibleMeterType(
            f"Meter type '{meter_type}' is not supported on {model.value} gateways"
        )
    return template


def _check_mqtt(mqtt: MqttSettings) -> None:
    if not mqtt.host.strip():
        raise InvalidMqttSettings("Broker host must not be empty")
    if not TCP_PORT_MIN <= mqtt.port <= TCP_PORT_MAX:
        raise InvalidMqttSettings(
            f"Broker port {mqtt.port} outside [{TCP_PORT_MIN}, {TCP_PORT_MAX}]"
        )
    if not mqtt.access_token.strip():
        raise InvalidMqttSettings("Access token must not be empty")
    if mqtt.report_period_s < 1:
        raise InvalidMqttSettings(f"Report period must be >= 1 s, got {mqtt.report_period_s}")
    if mqtt.keepalive_s < 1:
        raise InvalidMqttSettings(f"Keepalive must be >= 1 s, got {mqtt.keepalive_s}")


def _check_capacity(mode: MqttMode, meter_count: int) -> None:
    if mode is MqttMode.SINGLE_DEVICE and meter_count > SINGLE_DEVICE_MAX_METERS:
        raise ModeCapacityExceeded(
            f"SingleDeviceMode permits at most {SINGLE_DEVICE_MAX_METERS} meter, "
            f"got {meter_count}"
        )


def _index_of(config: Configuration, slave_address: int) -> int:
    for i, meter in enumerate(config.meters):
        if meter.slave_address == slave_address:
            return i
    raise MeterNotFound(f"No meter on slave address {slave_address}")


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def _collect(check: Callable[..., object], *args: object) -> ConfigurationError | None:
    try:
        check(*args)
    except ConfigurationError as exc:
        return exc
    return None


def _capacity_warnings(
    config: Configuration, catalog: Mapping[str, MeterTemplate] | None
) -> list[str]:
    points = sum(lookup(m.meter_type, catalog).point_count for m in config.meters)
    template_bytes = len(canonical_json(build_report_template(config, catalog)))
    warnings = []
    if points > N510_MAX_POINTS:
        warnings.append(
            f"Total data points ({points}) exceed the N510 limit of {N510_MAX_POINTS}"
        )
    if template_bytes > N510_MAX_TEMPLATE_BYTES:
        warnings.append(
            f"Report template size ({template_bytes} bytes) exceeds the N510 limit "
            f"of {N510_MAX_TEMPLATE_BYTES} bytes"
        )
    return warnings


def validate(
    config: Configuration,
    previous: Configuration | None = None,
    catalog: Mapping[str, MeterTemplate] | None = None,
) -> ValidationReport:
    """Check every rule against *config* and collect warnings.

    Args:
        config: Configuration to check.
        previous: Last configuration synced to the same gateway; enables
            identity drift warnings.
        catalog: Template catalog; defaults to the built-in catalog.

    Returns:
        A :class:`ValidationReport`. Never raises for rule violations.
    """
    errors: list[ConfigurationError] = []
    warnings: list[str] = []
    model = config.gateway.model

    def add(error: ConfigurationError | None) -> None:
        if error is not None:
            errors.append(error)

    add(_collect(_check_mqtt, config.mqtt))
    add(_collect(_check_capacity, config.mqtt.mode, len(config.meters)))

    seen: set[int] = set()
    for meter in config.meters:
        add(_collect(_check_name, meter.name))
        add(_collect(_check_slave_range, meter.slave_address))
        add(_collect(_check_meter_type, meter.meter_type, model, catalog))
        if meter.slave_address in seen:
            add(InvalidSlaveAddress(f"Slave address {meter.slave_address} is used twice"))
        seen.add(meter.slave_address)

    names = Counter(m.name for m in config.meters)
    for name, count in names.items():
        if count > 1:
            warnings.append(
                f"Meter name '{name}' is used by {count} meters; their telemetry "
                "will collide on the platform"
            )
    firmware_names: dict[str, set[str]] = defaultdict(set)
    for meter in config.meters:
        firmware_names[mapper.firmware_slave_name(meter)].add(meter.name)
    for name, display_names in firmware_names.items():
        if len(display_names) > 1:
            warnings.append(
                f"Meters {sorted(display_names)} share the firmware slave name "
                f"'{name}'; they will be indistinguishable in the gateway UI"
            )

    if not config.mqtt.device_name:
        warnings.append(
            f"MQTT device name is empty; client id falls back to "
            f"'{config.gateway.identifier}'"
        )

    if not errors:
        if model is GatewayModel.N510:
            warnings.extend(_capacity_warnings(config, catalog))
        if previous is not None:
            warnings.extend(d.describe() for d in mapper.identity_drift(previous, config))

    report = ValidationReport(errors=tuple(errors), warnings=tuple(warnings))
    if report.errors:
        logger.info(
            "Configuration for %s rejected: %s",
            config.gateway.identifier,
            "; ".join(str(e) for e in report.errors),
        )
    for warning in report.warnings:
        logger.warning("Configuration for %s: %s", config.gateway.identifier, warning)
    return report


# ---------------------------------------------------------------------------
# Building and editing
# ---------------------------------------------------------------------------


def build_configuration(
    gateway: GatewayRecord,
    mqtt: MqttSettings,
    meters: Iterable[MeterInstance] = (),
    catalog: Mapping[str, MeterTemplate] | None = None,
) -> Configuration:
    """Build a validated Configuration.

    Raises:
        ConfigurationError: The first rule violation found.
    """
    config = Configuration(gateway=gateway, mqtt=mqtt, meters=tuple(meters))
    validate(config, catalog=catalog).raise_for_errors()
    return config


def add_meter(
    config: Configuration,
    meter: MeterInstance,
    catalog: Mapping[str, MeterTemplate] | None = None,
) -> Configuration:
    """Return *config* with *meter* appended.

    Raises:
        ModeCapacityExceeded: SingleDeviceMode already has its meter.
        InvalidSlaveAddress: Address out of range or already used.
        InvalidMeterName: Empty name.
        UnknownMeterType: Type not registered.
        IncompatibleMeterType: Type not supported on the gateway model.
    """
    _check_capacity(config.mqtt.mode, len(config.meters) + 1)
    _check_slave_range(meter.slave_address)
    _check_slave_free(config.meters, meter.slave_address)
    _check_name(meter.name)
    _check_meter_type(meter.meter_type, config.gateway.model, catalog)
    return config.model_copy(update={"meters": (*config.meters, meter)})


def remove_meter(config: Configuration, slave_address: int) -> Configuration:
    """Return *config* without the meter on *slave_address*.

    Raises:
        MeterNotFound: No meter uses that address.
    """
    index = _index_of(config, slave_address)
    meters = config.meters[:index] + config.meters[index + 1 :]
    return config.model_copy(update={"meters": meters})


def update_meter(
    config: Configuration,
    slave_address: int,
    *,
    name: str | None = None,
    meter_type: str | None = None,
    new_slave_address: int | None = None,
    catalog: Mapping[str, MeterTemplate] | None = None,
) -> Configuration:
    """Return *config* with the meter on *slave_address* edited in place.

    The meter keeps its list position. Renaming changes the meter's device
    key in GatewayMode; :func:`validate` with ``previous`` reports it.

    Raises:
        MeterNotFound: No meter uses *slave_address*.
        ConfigurationError: The edited meter violates a rule.
    """
    index = _index_of(config, slave_address)
    current = config.meters[index]
    updates: dict[str, object] = {}

    if name is not None:
        _check_name(name)
        updates["name"] = name
    if meter_type is not None:
        _check_meter_type(meter_type, config.gateway.model, catalog)
        updates["meter_type"] = meter_type
    if new_slave_address is not None and new_slave_address != slave_address:
        _check_slave_range(new_slave_address)
        _check_slave_free(config.meters, new_slave_address)
        updates["slave_address"] = new_slave_address

    if not updates:
        return config
    edited = current.model_copy(update=updates)
    meters = (*config.meters[:index], edited, *config.meters[index + 1 :])
    return config.model_copy(update={"meters": meters})


def set_mqtt_settings(config: Configuration, mqtt: MqttSettings) -> Configuration:
    """Return *config* with *mqtt* replacing its MQTT settings.

    Raises:
        InvalidMqttSettings: Host, port or token not acceptable.
        ModeCapacityExceeded: Switching to SingleDeviceMode with several
            meters configured.
    """
    _check_mqtt(mqtt)
    _check_capacity(mqtt.mode, len(config.meters))
    return config.model_copy(update={"mqtt": mqtt})
