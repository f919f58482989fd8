"""
Tests for gateway discovery.

Verifies reply parsing, deduplication, the UDP scan against a fake gateway on
the loopback interface, HTTP identification through an httpx mock transport,
restartable scans and manually entered gateways.

CHANGELOG:
- 2026-10-19: Initial creation (STORY-109)

TODO:
- None
"""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime, timedelta
from unittest.mock import patch

import httpx
import pytest
from gwsync.src.discovery import (
    PROBE,
    DiscoveryReply,
    DiscoveryScan,
    deduplicate,
    discover,
    manual_gateway,
    parse_reply,
    probe_gateway,
)
from gwsync.src.errors import ConfigurationError
from gwsync.src.models import GatewayModel, GatewayRecord, Reachability

T0 = datetime(2026, 10, 19, 9, 0, tzinfo=UTC)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_reply(
    ip: tuple[int, int, int, int] = (192, 168, 0, 7),
    mac: bytes = bytes.fromhex("D4AD20445566"),
    tail: bytes = b"V2.0.19\x00USR-N510\x00",
    header: bytes = b"\xff\x24",
) -> bytes:
    """Build a raw discovery reply datagram."""
    return header + b"\x00\x00\x00" + bytes(ip) + mac + tail


def _reply(
    mac: str, ip: str, at: datetime, model: GatewayModel | None = GatewayModel.N510
) -> DiscoveryReply:
    return DiscoveryReply(
        ip=ip, packet_ip=ip, mac=mac, model=model, firmware="", received_at=at
    )


class _FakeGateway(asyncio.DatagramProtocol):
    """Answers every discovery probe with the configured datagrams."""

    def __init__(self, replies: list[bytes]) -> None:
        self.replies = replies
        self.probes: list[bytes] = []
        self.transport: asyncio.DatagramTransport | None = None

    def connection_made(self, transport: asyncio.BaseTransport) -> None:
        self.transport = transport  # type: ignore[assignment]

    def datagram_received(self, data: bytes, addr: tuple[str, int]) -> None:
        self.probes.append(data)
        if data == PROBE:
            for reply in self.replies:
                self.transport.sendto(reply, addr)


async def _start_fake_gateway(
    replies: list[bytes],
) -> tuple[asyncio.DatagramTransport, _FakeGateway, int]:
    loop = asyncio.get_running_loop()
    transport, protocol = await loop.create_datagram_endpoint(
        lambda: _FakeGateway(replies), local_addr=("127.0.0.1", 0)
    )
    port = transport.get_extra_info("sockname")[1]
    return transport, protocol, port


# ---------------------------------------------------------------------------
# Reply parsing
# ---------------------------------------------------------------------------


class TestParseReply:
    """parse_reply() decodes the binary reply layout."""

    def test_parses_fields(self) -> None:
        reply = parse_reply(_make_reply(), "192.168.1.60", T0)

        assert reply is not None
        assert reply.mac == "D4-AD-20-44-55-66"
        assert reply.model is GatewayModel.N510
        assert reply.firmware == "V2.0.19"
        assert reply.received_at == T0

    def test_remote_ip_wins_over_embedded(self) -> None:
        reply = parse_reply(_make_reply(ip=(192, 168, 0, 7)), "192.168.1.60", T0)
        assert reply.ip == "192.168.1.60"
        assert reply.packet_ip == "192.168.0.7"

    def test_n720_model(self) -> None:
        reply = parse_reply(_make_reply(tail=b"USR-N720 V1.0.12   "), "10.0.0.2", T0)
        assert reply.model is GatewayModel.N720

    def test_alternate_header(self) -> None:
        assert parse_reply(_make_reply(header=b"\xff\x01"), "10.0.0.2", T0) is not None

    def test_unknown_model_is_none(self) -> None:
        reply = parse_reply(_make_reply(tail=b"V3.1.4 something else"), "10.0.0.2", T0)
        assert reply is not None
        assert reply.model is None

    def test_probe_echo_ignored(self) -> None:
        assert parse_reply(PROBE, "10.0.0.2", T0) is None

    def test_short_datagram_ignored(self) -> None:
        assert parse_reply(b"\xff\x24\x00\x01", "10.0.0.2", T0) is None

    def test_foreign_header_ignored(self) -> None:
        assert parse_reply(_make_reply(header=b"\x00\x00"), "10.0.0.2", T0) is None

    def test_invalid_remote_ip(self) -> None:
        reply = parse_reply(_make_reply(), "0.0.0.0", T0)
        assert reply is not None
        assert not reply.has_valid_ip


class TestDeduplicate:
    """deduplicate() keeps one reply per MAC."""

    def test_latest_wins(self) -> None:
        older = _reply("AA", "10.0.0.1", T0)
        newer = _reply("AA", "10.0.0.9", T0 + timedelta(seconds=1))
        assert deduplicate([older, newer]) == [newer]

    def test_out_of_order_arrival(self) -> None:
        older = _reply("AA", "10.0.0.1", T0)
        newer = _reply("AA", "10.0.0.9", T0 + timedelta(seconds=1))
        assert deduplicate([newer, older]) == [newer]

    def test_invalid_ip_never_replaces_valid(self) -> None:
        valid = _reply("AA", "10.0.0.1", T0)
        invalid = _reply("AA", "0.0.0.0", T0 + timedelta(seconds=1))
        assert deduplicate([valid, invalid]) == [valid]

    def test_valid_replaces_invalid(self) -> None:
        invalid = _reply("AA", "255.255.255.255", T0 + timedelta(seconds=5))
        valid = _reply("AA", "10.0.0.1", T0)
        assert deduplicate([invalid, valid]) == [valid]

    def test_first_seen_order(self) -> None:
        a = _reply("AA", "10.0.0.1", T0)
        b = _reply("BB", "10.0.0.2", T0)
        a2 = _reply("AA", "10.0.0.3", T0 + timedelta(seconds=1))
        assert [r.mac for r in deduplicate([a, b, a2])] == ["AA", "BB"]


# ---------------------------------------------------------------------------
# UDP scan
# ---------------------------------------------------------------------------


class TestDiscover:
    """discover() against a fake gateway on 127.0.0.1."""

    @pytest.mark.asyncio
    async def test_finds_gateway(self) -> None:
        transport, fake, port = await _start_fake_gateway([_make_reply()])
        try:
            gateways = await discover(
                port=port, window_s=0.2, broadcast_addresses=["127.0.0.1"]
            )
        finally:
            transport.close()

        assert fake.probes == [PROBE]
        assert len(gateways) == 1
        (gw,) = gateways
        assert gw.ip == "127.0.0.1"
        assert gw.mac == "D4-AD-20-44-55-66"
        assert gw.model is GatewayModel.N510
        assert gw.reachability is Reachability.REACHABLE
        assert gw.firmware == "V2.0.19"

    @pytest.mark.asyncio
    async def test_duplicate_replies_collapse(self) -> None:
        transport, _, port = await _start_fake_gateway([_make_reply(), _make_reply()])
        try:
            gateways = await discover(
                port=port, window_s=0.2, broadcast_addresses=["127.0.0.1"]
            )
        finally:
            transport.close()
        assert len(gateways) == 1

    @pytest.mark.asyncio
    async def test_silence_returns_empty_list(self) -> None:
        transport, fake, port = await _start_fake_gateway([])
        try:
            gateways = await discover(
                port=port, window_s=0.1, broadcast_addresses=["127.0.0.1"]
            )
        finally:
            transport.close()
        assert fake.probes == [PROBE]
        assert gateways == []

    @pytest.mark.asyncio
    async def test_silence_uses_fallback_ips(self) -> None:
        identified: list[str] = []

        async def identify(ip: str) -> GatewayRecord | None:
            identified.append(ip)
            if ip == "192.168.0.7":
                return GatewayRecord(ip=ip, model=GatewayModel.N720)
            return None

        transport, _, port = await _start_fake_gateway([])
        try:
            gateways = await discover(
                port=port,
                window_s=0.1,
                broadcast_addresses=["127.0.0.1"],
                identify=identify,
                fallback_ips=["192.168.0.7", "192.168.0.8"],
            )
        finally:
            transport.close()

        assert sorted(identified) == ["192.168.0.7", "192.168.0.8"]
        assert [g.ip for g in gateways] == ["192.168.0.7"]

    @pytest.mark.asyncio
    async def test_unknown_model_identified_over_http(self) -> None:
        identify_calls: list[str] = []

        async def identify(ip: str) -> GatewayRecord | None:
            identify_calls.append(ip)
            return GatewayRecord(ip=ip, model=GatewayModel.N720, firmware="V1.0.12")

        reply = _make_reply(tail=b"mystery box firmware")
        transport, _, port = await _start_fake_gateway([reply])
        try:
            gateways = await discover(
                port=port,
                window_s=0.2,
                broadcast_addresses=["127.0.0.1"],
                identify=identify,
            )
        finally:
            transport.close()

        assert identify_calls == ["127.0.0.1"]
        assert gateways[0].model is GatewayModel.N720
        assert gateways[0].firmware == "V1.0.12"

    @pytest.mark.asyncio
    async def test_unrecognised_gateway_dropped(self) -> None:
        reply = _make_reply(tail=b"mystery box firmware")
        transport, _, port = await _start_fake_gateway([reply])
        try:
            gateways = await discover(
                port=port, window_s=0.2, broadcast_addresses=["127.0.0.1"]
            )
        finally:
            transport.close()
        assert gateways == []

    @pytest.mark.asyncio
    async def test_gateway_only_at_invalid_address_dropped(
        self, caplog: pytest.LogCaptureFixture
    ) -> None:
        def from_unassigned_address(
            data: bytes, remote_ip: str, received_at: datetime
        ) -> DiscoveryReply | None:
            return parse_reply(data, "0.0.0.0", received_at)

        transport, _, port = await _start_fake_gateway([_make_reply()])
        try:
            with (
                patch(
                    "gwsync.src.discovery.parse_reply", side_effect=from_unassigned_address
                ),
                caplog.at_level(logging.WARNING, logger="gwsync.src.discovery"),
            ):
                gateways = await discover(
                    port=port, window_s=0.2, broadcast_addresses=["127.0.0.1"]
                )
        finally:
            transport.close()

        assert gateways == []
        assert "D4-AD-20-44-55-66" in caplog.text
        assert "invalid address 0.0.0.0" in caplog.text
        assert gateways == []


class TestDiscoveryScan:
    """DiscoveryScan restarts the scan on every iteration."""

    @pytest.mark.asyncio
    async def test_lazy_and_restartable(self) -> None:
        calls = 0

        async def scan() -> list[GatewayRecord]:
            nonlocal calls
            calls += 1
            return [GatewayRecord(ip=f"10.0.0.{calls}", model=GatewayModel.N510)]

        gateways = DiscoveryScan(scan)
        assert calls == 0

        first = [g.ip async for g in gateways]
        second = [g.ip async for g in gateways]

        assert first == ["10.0.0.1"]
        assert second == ["10.0.0.2"]
        assert calls == 2


# ---------------------------------------------------------------------------
# HTTP identification
# ---------------------------------------------------------------------------


class TestProbeGateway:
    """probe_gateway() through httpx.MockTransport."""

    @pytest.mark.asyncio
    async def test_identifies_n510(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.headers["authorization"].startswith("Basic ")
            if request.url.path == "/define.json":
                return httpx.Response(200, json={"usermac": "d4ad20445566", "ver": "V2.0.19"})
            return httpx.Response(404)

        record = await probe_gateway("10.0.0.5", transport=httpx.MockTransport(handler))

        assert record is not None
        assert record.model is GatewayModel.N510
        assert record.mac == "D4-AD-20-44-55-66"
        assert record.firmware == "V2.0.19"
        assert record.reachability is Reachability.REACHABLE

    @pytest.mark.asyncio
    async def test_identifies_n720(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/download_flex.cgi":
                assert request.url.params["name"] == "status"
                return httpx.Response(
                    200, json={"soft_ver": "V1.0.12", "mac": "D4:AD:20:11:22:33"}
                )
            return httpx.Response(404)

        record = await probe_gateway("10.0.0.6", transport=httpx.MockTransport(handler))

        assert record is not None
        assert record.model is GatewayModel.N720
        assert record.mac == "D4-AD-20-11-22-33"

    @pytest.mark.asyncio
    async def test_unreachable_returns_none(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        record = await probe_gateway("10.0.0.7", transport=httpx.MockTransport(handler))
        assert record is None

    @pytest.mark.asyncio
    async def test_non_json_returns_none(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, text="<html>login</html>")

        record = await probe_gateway("10.0.0.8", transport=httpx.MockTransport(handler))
        assert record is None


# ---------------------------------------------------------------------------
# Manual entry
# ---------------------------------------------------------------------------


class TestManualGateway:
    """manual_gateway() bypasses discovery."""

    def test_unconfirmed_record(self) -> None:
        record = manual_gateway(" 192.168.1.70 ", "N720")
        assert record.ip == "192.168.1.70"
        assert record.model is GatewayModel.N720
        assert record.reachability is Reachability.UNCONFIRMED
        assert record.identifier == "192.168.1.70"

    def test_empty_address(self) -> None:
        with pytest.raises(ConfigurationError):
            manual_gateway("  ", GatewayModel.N510)

    def test_unknown_model(self) -> None:
        with pytest.raises(ConfigurationError, match="N999"):
            manual_gateway("10.0.0.1", "N999")
