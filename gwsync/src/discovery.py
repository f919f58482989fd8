"""
Gateway discovery over the USR UDP search protocol.

A scan broadcasts the 4-byte probe ``FF 01 01 02`` to UDP port 1901 and
collects unicast replies for a bounded window. Replies are parsed as they
arrive; the scan returns once the window closes.

Reply layout (all offsets 0-based):
- bytes 0-1: header ``FF 24`` or ``FF 01``
- bytes 5-8: configured IPv4 address (may be stale, e.g. factory default)
- bytes 9-14: MAC address
- bytes 15-: ASCII tail carrying firmware (``V2.0.19``) and model (``USR-N510``)

The UDP source address always wins over the embedded IP. Replies are
deduplicated by MAC, the most recent one winning, except that a reply from an
invalid address (``0.0.0.0``/``255.255.255.255``, seen while a gateway renews
its DHCP lease) never replaces a valid one. A gateway seen only at an
invalid address is left out of the result, since nothing can be pushed to it.

Gateways whose model cannot be read from the reply are identified over HTTP
(:func:`probe_gateway`), concurrently for all of them.

Each scan is a fresh snapshot; nothing is cached between scans.

CHANGELOG:
- 2026-10-19: Initial creation (STORY-109)

TODO:
- None
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime

import httpx

from gwsync.src.errors import ConfigurationError, DiscoveryTimeout
from gwsync.src.models import GatewayModel, GatewayRecord, Reachability

logger = logging.getLogger(__name__)

PROBE = bytes.fromhex("FF010102")
DISCOVERY_PORT = 1901
DEFAULT_WINDOW_S = 3.0
DEFAULT_HTTP_TIMEOUT_S = 3.0

MIN_REPLY_LEN = 20
_REPLY_HEADERS = (b"\xff\x24", b"\xff\x01")
INVALID_IPS = frozenset({"0.0.0.0", "255.255.255.255"})

_NON_PRINTABLE = re.compile(rb"[^\x20-\x7e]")
_FIRMWARE_RE = re.compile(r"V?\d+\.\d+\.\d+")
_MODEL_RE = re.compile(r"(USR-)?N\d{3}", re.IGNORECASE)


@dataclass(frozen=True, slots=True)
class DiscoveryReply:
    """One parsed discovery reply.

    Attributes:
        ip: Source address of the reply.
        packet_ip: Address embedded in the reply body.
        mac: MAC address, ``AA-BB-CC-DD-EE-FF``.
        model: Recognised model, or ``None`` if the tail did not name one.
        firmware: Firmware version, empty when absent.
        received_at: Arrival time.
    """

    ip: str
    packet_ip: str
    mac: str
    model: GatewayModel | None
    firmware: str
    received_at: datetime

    @property
    def has_valid_ip(self) -> bool:
        return self.ip not in INVALID_IPS


def _utcnow() -> datetime:
    return datetime.now(tz=UTC)


def _model_from_text(text: str) -> GatewayModel | None:
    upper = text.upper()
    for model in GatewayModel:
        if model.value in upper:
            return model
    return None


# ---------------------------------------------------------------------------
# Reply parsing and deduplication
# ---------------------------------------------------------------------------


def parse_reply(
    data: bytes, remote_ip: str, received_at: datetime | None = None
) -> DiscoveryReply | None:
    """Parse a raw discovery reply.

    Args:
        data: Datagram payload.
        remote_ip: Source address of the datagram.
        received_at: Arrival time; defaults to now.

    Returns:
        The parsed reply, or ``None`` for anything that is not a gateway
        reply (our own probe echoed back, short or foreign datagrams).
    """
    if data == PROBE:
        return None
    if len(data) < MIN_REPLY_LEN or data[:2] not in _REPLY_HEADERS:
        logger.debug(
            "Dropping malformed discovery reply from %s (%d bytes): %s",
            remote_ip,
            len(data),
            data[:32].hex(),
        )
        return None

    packet_ip = ".".join(str(b) for b in data[5:9])
    mac = "-".join(f"{b:02X}" for b in data[9:15])
    tail = _NON_PRINTABLE.sub(b" ", data[15:]).decode("ascii")

    firmware_match = _FIRMWARE_RE.search(tail)
    model_match = _MODEL_RE.search(tail)

    if packet_ip != remote_ip:
        logger.debug(
            "Gateway %s answered from %s, embedded IP %s ignored", mac, remote_ip, packet_ip
        )
    if remote_ip in INVALID_IPS:
        logger.info(
            "Gateway %s replied with invalid IP %s (rebooting or renewing DHCP)", mac, remote_ip
        )

    return DiscoveryReply(
        ip=remote_ip,
        packet_ip=packet_ip,
        mac=mac,
        model=_model_from_text(model_match.group(0)) if model_match else None,
        firmware=firmware_match.group(0) if firmware_match else "",
        received_at=received_at or _utcnow(),
    )


def deduplicate(replies: Iterable[DiscoveryReply]) -> list[DiscoveryReply]:
    """Keep the most recent reply per MAC.

    A reply with an invalid address never replaces one with a valid address.
    Output order is first-seen order.
    """
    latest: dict[str, DiscoveryReply] = {}
    for reply in replies:
        existing = latest.get(reply.mac)
        if existing is None:
            latest[reply.mac] = reply
            continue
        if existing.has_valid_ip and not reply.has_valid_ip:
            continue
        if reply.received_at >= existing.received_at or not existing.has_valid_ip:
            latest[reply.mac] = reply
    return list(latest.values())


# ---------------------------------------------------------------------------
# HTTP identification
# ---------------------------------------------------------------------------


def _format_mac(raw: str) -> str:
    raw = raw.strip().upper()
    if raw and "-" not in raw and ":" not in raw:
        return "-".join(raw[i : i + 2] for i in range(0, len(raw), 2))
    return raw.replace(":", "-")


async def probe_gateway(
    ip: str,
    *,
    username: str = "admin",
    password: str = "admin",
    timeout_s: float = DEFAULT_HTTP_TIMEOUT_S,
    transport: httpx.AsyncBaseTransport | None = None,
) -> GatewayRecord | None:
    """Identify the gateway at *ip* through its web interface.

    Tries the N510 ``define.json`` first, then the N720 status endpoint.

    Returns:
        A reachable :class:`GatewayRecord`, or ``None`` if neither endpoint
        answered like a USR gateway.
    """
    async with httpx.AsyncClient(
        base_url=f"http://{ip}",
        auth=(username, password),
        timeout=timeout_s,
        transport=transport,
    ) as client:
        try:
            response = await client.get("/define.json")
            if response.status_code == 200:
                define = response.json()
                if isinstance(define, dict):
                    return GatewayRecord(
                        ip=ip,
                        mac=_format_mac(str(define.get("usermac", ""))),
                        model=GatewayModel.N510,
                        firmware=str(define.get("ver", "")),
                        last_seen=_utcnow(),
                    )
        except (httpx.HTTPError, ValueError) as exc:
            logger.debug("N510 identification of %s failed: %s", ip, exc)

        try:
            response = await client.get("/download_flex.cgi", params={"name": "status"})
            if response.status_code == 200:
                status = response.json()
                if isinstance(status, dict) and status.get("soft_ver"):
                    return GatewayRecord(
                        ip=ip,
                        mac=_format_mac(str(status.get("mac", ""))),
                        model=GatewayModel.N720,
                        firmware=str(status["soft_ver"]),
                        last_seen=_utcnow(),
                    )
        except (httpx.HTTPError, ValueError) as exc:
            logger.debug("N720 identification of %s failed: %s", ip, exc)

    logger.info("No USR gateway identified at %s", ip)
    return None


# ---------------------------------------------------------------------------
# UDP scan
# ---------------------------------------------------------------------------


class _ReplyCollector(asyncio.DatagramProtocol):
    """Collects parsed replies for the lifetime of one scan."""

    def __init__(self, clock: Callable[[], datetime]) -> None:
        self._clock = clock
        self.replies: list[DiscoveryReply] = []

    def datagram_received(self, data: bytes, addr: tuple[str, int]) -> None:
        reply = parse_reply(data, addr[0], self._clock())
        if reply is not None:
            self.replies.append(reply)

    def error_received(self, exc: Exception) -> None:
        logger.warning("Discovery socket error: %s", exc)


Identifier = Callable[[str], Awaitable[GatewayRecord | None]]


async def _to_record(reply: DiscoveryReply, identify: Identifier | None) -> GatewayRecord | None:
    model = reply.model
    firmware = reply.firmware
    if not reply.has_valid_ip:
        logger.warning(
            "Dropping gateway %s: only seen at invalid address %s; scan again",
            reply.mac,
            reply.ip,
            extra={"gateway": reply.mac},
        )
        return None
    if model is None and identify is not None:
        identified = await identify(reply.ip)
        if identified is not None:
            model = identified.model
            firmware = firmware or identified.firmware
    if model is None:
        logger.warning("Dropping gateway %s at %s: model not recognised", reply.mac, reply.ip)
        return None
    return GatewayRecord(
        ip=reply.ip,
        mac=reply.mac,
        model=model,
        reachability=Reachability.REACHABLE,
        last_seen=reply.received_at,
        firmware=firmware,
    )


async def discover(
    *,
    port: int = DISCOVERY_PORT,
    window_s: float = DEFAULT_WINDOW_S,
    broadcast_addresses: Sequence[str] = ("255.255.255.255",),
    identify: Identifier | None = None,
    fallback_ips: Sequence[str] = (),
    clock: Callable[[], datetime] = _utcnow,
) -> list[GatewayRecord]:
    """Broadcast a discovery probe and return the gateways that answered.

    Args:
        port: UDP port the gateways listen on.
        window_s: Seconds to collect replies.
        broadcast_addresses: Probe destinations.
        identify: Coroutine identifying a gateway by IP over HTTP; used for
            replies without a recognisable model and for *fallback_ips*.
        fallback_ips: Addresses probed over HTTP when nothing answers the
            broadcast (e.g. the factory default ``192.168.0.7``).
        clock: Source of reply timestamps.

    Returns:
        Deduplicated gateway records, possibly empty. Silence is not an
        error.
    """
    loop = asyncio.get_running_loop()
    transport, protocol = await loop.create_datagram_endpoint(
        lambda: _ReplyCollector(clock),
        local_addr=("0.0.0.0", 0),
        allow_broadcast=True,
    )
    try:
        for address in broadcast_addresses:
            try:
                transport.sendto(PROBE, (address, port))
            except OSError as exc:
                logger.warning("Discovery probe to %s:%d failed: %s", address, port, exc)
        await asyncio.sleep(window_s)
    finally:
        transport.close()

    replies = deduplicate(protocol.replies)
    if not replies:
        logger.info(
            "%s: no gateway answered within %.1fs on port %d",
            DiscoveryTimeout.__name__,
            window_s,
            port,
        )
        if fallback_ips and identify is not None:
            found = await asyncio.gather(*(identify(ip) for ip in fallback_ips))
            return [record for record in found if record is not None]
        return []

    records = await asyncio.gather(*(_to_record(reply, identify) for reply in replies))
    gateways = [record for record in records if record is not None]
    logger.info(
        "Discovery found %d gateway(s): %s",
        len(gateways),
        ", ".join(f"{g.model.value}@{g.ip}" for g in gateways),
    )
    return gateways


class DiscoveryScan:
    """Restartable, lazy sequence of discovered gateways.

    Nothing is sent until iteration starts, and every ``async for`` runs a
    fresh scan::

        scan = DiscoveryScan(lambda: discover(window_s=2.0))
        async for gateway in scan:
            ...
    """

    def __init__(self, scan: Callable[[], Awaitable[list[GatewayRecord]]]) -> None:
        self._scan = scan

    def __aiter__(self) -> AsyncIterator[GatewayRecord]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[GatewayRecord]:
        for record in await self._scan():
            yield record


def manual_gateway(ip: str, model: GatewayModel | str) -> GatewayRecord:
    """Record for a gateway entered by hand, bypassing discovery.

    Reachability stays ``unconfirmed`` until the first sync reaches it.

    Raises:
        ConfigurationError: Empty address or unknown model.
    """
    host = ip.strip()
    if not host:
        raise ConfigurationError("Gateway address must not be empty")
    try:
        gateway_model = GatewayModel(model)
    except ValueError:
        raise ConfigurationError(f"Unknown gateway model '{model}'") from None
    return GatewayRecord(ip=host, model=gateway_model, reachability=Reachability.UNCONFIRMED)
