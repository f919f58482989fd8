"""
Meter commissioning probe over the gateway's Modbus TCP bridge.

Reads every register of a meter's template once, through the gateway's
Modbus TCP port with the meter's slave address as unit id, and decodes the
raw words with the catalog's data types. Used to check wiring, slave
address and meter type before a configuration is pushed.

The probe never raises for device errors: a failed connection yields
``None``, a failed register is listed in :attr:`MeterReading.failed`.

CHANGELOG:
- 2026-10-19: Initial creation (STORY-112)

TODO:
- None
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from pymodbus.client import AsyncModbusTcpClient

from gwsync.src.catalog import MeterTemplate, RegisterDef
from gwsync.src.models import MeterInstance

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

MODBUS_TIMEOUT_S: float = 3.0
"""Timeout per Modbus TCP request; the RS485 round trip adds latency."""

INTER_REGISTER_DELAY_MS: int = 20
"""Pause between reads so the gateway's serial queue keeps up."""


@dataclass(frozen=True, slots=True)
class MeterReading:
    """Decoded values of one probe run.

    Attributes:
        meter: The probed meter.
        values: Decoded value per register label.
        failed: Labels whose read returned a Modbus error.
    """

    meter: MeterInstance
    values: dict[str, int | float]
    failed: tuple[str, ...] = ()

    @property
    def responding(self) -> bool:
        """``True`` when at least one register answered."""
        return bool(self.values)


async def _read(
    client: AsyncModbusTcpClient, reg: RegisterDef, slave: int
) -> list[int] | None:
    if reg.function_code == 4:
        response = await client.read_input_registers(
            reg.address, count=reg.word_count, device_id=slave
        )
    else:
        response = await client.read_holding_registers(
            reg.address, count=reg.word_count, device_id=slave
        )
    if response.isError():
        logger.warning(
            "Modbus error reading '%s' (slave=%d, fc=%d, address=%d)",
            reg.label,
            slave,
            reg.function_code,
            reg.address,
        )
        return None
    return list(response.registers)


async def probe_meter(
    *,
    host: str,
    meter: MeterInstance,
    template: MeterTemplate,
    port: int = 502,
    inter_register_delay_ms: int = INTER_REGISTER_DELAY_MS,
) -> MeterReading | None:
    """Read and decode all template registers of *meter*.

    Args:
        host: Gateway IP address.
        meter: Meter to probe; its slave address is used as unit id.
        template: Register map of the meter type.
        port: Gateway Modbus TCP port.
        inter_register_delay_ms: Delay between register reads.

    Returns:
        A :class:`MeterReading`, or ``None`` if the gateway could not be
        reached.
    """
    client = AsyncModbusTcpClient(host, port=port, timeout=MODBUS_TIMEOUT_S)
    try:
        try:
            ok = await client.connect()
        except Exception:
            logger.warning("Failed to connect to Modbus bridge %s:%d", host, port, exc_info=True)
            return None
        if not ok:
            logger.warning("Failed to connect to Modbus bridge %s:%d (connect returned False)", host, port)
            return None

        delay_s = inter_register_delay_ms / 1000.0
        values: dict[str, int | float] = {}
        failed: list[str] = []
        for idx, reg in enumerate(template.registers):
            if idx > 0 and delay_s > 0:
                await asyncio.sleep(delay_s)
            words = await _read(client, reg, meter.slave_address)
            if words is None:
                failed.append(reg.label)
                continue
            values[reg.label] = reg.decode(words)
    except Exception:
        logger.warning(
            "Unexpected error probing meter '%s' on %s:%d",
            meter.name,
            host,
            port,
            exc_info=True,
        )
        return None
    finally:
        client.close()

    logger.info(
        "Probed meter '%s' (slave %d): %d/%d registers answered",
        meter.name,
        meter.slave_address,
        len(values),
        template.point_count,
    )
    return MeterReading(meter=meter, values=values, failed=tuple(failed))
