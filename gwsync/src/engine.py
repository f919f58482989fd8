"""
Caller API of the gateway sync engine.

:class:`GatewayEngine` is the one object a front end (web UI, desktop shell,
script) talks to. It wires settings, discovery, validation, payload
generation and the sync client together; it owns no business rules itself.

Typical flow::

    configure_logging()
    engine = GatewayEngine()
    gateways = await engine.discover()
    config = engine.build_configuration(gateways[0], mqtt, [meter])
    session = await engine.sync(config)
    if session.requires_rediscovery:
        await engine.discover()

Also provides the structured JSON logging setup and the startup config
summary, which never prints secrets in clear.

CHANGELOG:
- 2026-10-19: Initial creation (STORY-113)

TODO:
- None
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import sys
from collections.abc import Iterable, Mapping
from datetime import UTC, datetime

import httpx

from gwsync.src import configuration, discovery, generator, probe
from gwsync.src.catalog import MeterTemplate, lookup, templates_for
from gwsync.src.config import EngineSettings
from gwsync.src.configuration import ValidationReport
from gwsync.src.generator import GatewayPayload
from gwsync.src.models import (
    Configuration,
    GatewayModel,
    GatewayRecord,
    MeterInstance,
    MqttSettings,
)
from gwsync.src.probe import MeterReading
from gwsync.src.sync_client import GatewaySyncClient, SyncSession

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Structured JSON logging setup
# ---------------------------------------------------------------------------

# Record attributes set through ``extra=`` by the discovery and sync paths.
LOG_CONTEXT_FIELDS = ("gateway", "sync_state")


class GatewayLogFormatter(logging.Formatter):
    """One JSON object per line, tagged with gateway context when present."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        for name in LOG_CONTEXT_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                log_entry[name] = value
        if record.exc_info and record.exc_info[1] is not None:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry)


def configure_logging(level: str = "INFO") -> None:
    """Configure structured JSON logging on stderr.

    Replaces any handler already installed on the root logger.
    """
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(GatewayLogFormatter())
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level.upper())


def _masked_token(value: str | None) -> str:
    """Return a short non-reversible token fingerprint for diagnostics."""
    if not value:
        return "empty"
    digest = hashlib.sha256(value.encode("utf-8")).hexdigest()[:10]
    return f"len={len(value)} sha256={digest}"


def log_config_summary(settings: EngineSettings) -> None:
    """Log the effective settings, with the gateway password masked."""
    logger.info(
        "Gateway sync engine starting with config: "
        "discovery_port=%s, discovery_window_s=%s, broadcast=%s, fallback_ips=%s, "
        "http_timeout_s=%s, push_max_attempts=%s, push_backoff_s=%s, "
        "settle_delay_s=%s, verify_timeout_s=%s, verify_poll_interval_s=%s, "
        "modbus_tcp_port=%s, gateway_username=%s, gateway_password_masked=%s",
        settings.discovery_port,
        settings.discovery_window_s,
        settings.discovery_broadcast_addresses,
        settings.discovery_fallback_ips,
        settings.http_timeout_s,
        settings.push_max_attempts,
        settings.push_backoff_s,
        settings.settle_delay_s,
        settings.verify_timeout_s,
        settings.verify_poll_interval_s,
        settings.modbus_tcp_port,
        settings.gateway_username,
        _masked_token(settings.gateway_password),
    )


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class GatewayEngine:
    """Discovery, configuration and sync operations for USR gateways.

    Args:
        settings: Engine settings; loaded from the environment when omitted.
        catalog: Meter template catalog; the built-in one when omitted.
        sync_client: Preconfigured sync client; built from *settings* when
            omitted.
        http_transport: httpx transport for gateway HTTP calls (tests).
    """

    def __init__(
        self,
        settings: EngineSettings | None = None,
        *,
        catalog: Mapping[str, MeterTemplate] | None = None,
        sync_client: GatewaySyncClient | None = None,
        http_transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = settings if settings is not None else EngineSettings()
        self._catalog = catalog
        self._http_transport = http_transport
        self._sync_client = sync_client or GatewaySyncClient(
            username=self._settings.gateway_username,
            password=self._settings.gateway_password,
            http_timeout_s=self._settings.http_timeout_s,
            push_max_attempts=self._settings.push_max_attempts,
            push_backoff_s=self._settings.push_backoff_s,
            settle_delay_s=self._settings.settle_delay_s,
            verify_timeout_s=self._settings.verify_timeout_s,
            verify_poll_interval_s=self._settings.verify_poll_interval_s,
            transport=http_transport,
        )
        self._last_synced: dict[str, Configuration] = {}

    @property
    def settings(self) -> EngineSettings:
        return self._settings

    # ------------------------------------------------------------------
    # Discovery
    # ------------------------------------------------------------------

    async def discover(self) -> list[GatewayRecord]:
        """Run one discovery scan.

        Gateways seen by the scan are cleared of any unknown-state flag
        left by a failed verification.
        """
        gateways = await discovery.discover(
            port=self._settings.discovery_port,
            window_s=self._settings.discovery_window_s,
            broadcast_addresses=self._settings.discovery_broadcast_addresses,
            identify=self.probe_gateway,
            fallback_ips=self._settings.discovery_fallback_ips,
        )
        self._sync_client.mark_rediscovered(gateways)
        return gateways

    def scan(self) -> discovery.DiscoveryScan:
        """Restartable async iterable; each ``async for`` runs :meth:`discover`."""
        return discovery.DiscoveryScan(self.discover)

    def manual_gateway(self, ip: str, model: GatewayModel | str) -> GatewayRecord:
        return discovery.manual_gateway(ip, model)

    async def probe_gateway(self, ip: str) -> GatewayRecord | None:
        """Identify the gateway at *ip* over HTTP."""
        return await discovery.probe_gateway(
            ip,
            username=self._settings.gateway_username,
            password=self._settings.gateway_password,
            timeout_s=self._settings.http_timeout_s,
            transport=self._http_transport,
        )

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def meter_types(self, model: GatewayModel) -> list[MeterTemplate]:
        """Meter templates that can be configured on *model*."""
        return templates_for(model, self._catalog)

    def build_configuration(
        self,
        gateway: GatewayRecord,
        mqtt: MqttSettings,
        meters: Iterable[MeterInstance] = (),
    ) -> Configuration:
        return configuration.build_configuration(gateway, mqtt, meters, self._catalog)

    def validate(
        self, config: Configuration, previous: Configuration | None = None
    ) -> ValidationReport:
        """Validate *config*.

        When *previous* is omitted, the configuration last synced
        successfully to the same gateway is used for drift detection.
        """
        if previous is None:
            previous = self._last_synced.get(config.gateway.identifier)
        return configuration.validate(config, previous, self._catalog)

    def generate(self, config: Configuration) -> GatewayPayload:
        return generator.generate(config, self._catalog)

    # ------------------------------------------------------------------
    # Sync
    # ------------------------------------------------------------------

    async def sync(
        self, config: Configuration, cancel: asyncio.Event | None = None
    ) -> SyncSession:
        """Validate, compile and apply *config* to its gateway.

        Raises:
            ConfigurationError: *config* fails validation; nothing was sent.
            UnknownDeviceState: The gateway must be re-discovered first.
        """
        self.validate(config).raise_for_errors()
        payload = self.generate(config)
        session = await self._sync_client.sync(config.gateway, payload, cancel)
        if session.succeeded:
            self._last_synced[config.gateway.identifier] = config
        return session

    # ------------------------------------------------------------------
    # Commissioning
    # ------------------------------------------------------------------

    async def probe_meter(
        self, gateway: GatewayRecord, meter: MeterInstance
    ) -> MeterReading | None:
        """Read *meter*'s registers once through the gateway's Modbus TCP port."""
        return await probe.probe_meter(
            host=gateway.ip,
            meter=meter,
            template=lookup(meter.meter_type, self._catalog),
            port=self._settings.modbus_tcp_port,
        )
