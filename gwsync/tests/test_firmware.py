"""
Unit tests for the firmware-native payload renderings.

Tests verify:
- N720 edge CSV layout, register references and CRLF line endings.
- N720 edge_report groups and the CRC32 header round trip.
- edge_report readback repair for headerless and truncated bodies.
- N510 edge.json point keys, register addresses and report table.
- MQTT query parameters for both models.
- artefact_fingerprint() ignores key order.

CHANGELOG:
- 2026-10-19: Initial creation (STORY-108)

TODO:
- None
"""

from __future__ import annotations

import json
import zlib

import pytest
from gwsync.src.firmware import (
    N720_CSV_HEADER,
    artefact_fingerprint,
    decode_edge_report,
    encode_edge_report,
    n510_edge_projection,
    n510_mqtt_params,
    n720_mqtt_params,
    render_n510_edge,
    render_n720_edge_csv,
    render_n720_edge_report,
)
from gwsync.src.generator import GatewayPayload, generate
from gwsync.src.models import Configuration, MeterInstance, MqttSettings


@pytest.fixture()
def n720_payload(n720_config: Configuration) -> GatewayPayload:
    return generate(n720_config)


@pytest.fixture()
def n510_payload(n510_config: Configuration) -> GatewayPayload:
    return generate(n510_config)


# ---------------------------------------------------------------------------
# N720 edge CSV
# ---------------------------------------------------------------------------


class TestN720EdgeCsv:
    """render_n720_edge_csv()."""

    def test_layout(self, n720_payload: GatewayPayload) -> None:
        csv = render_n720_edge_csv(n720_payload)
        lines = csv.split("\r\n")

        assert lines[0] == N720_CSV_HEADER
        assert lines[1] == "SC,Floor1,,1,3,100,0,0,,Uart1,;"
        assert lines[2].startswith("C,Floor1,Floor1_state,,18,")
        assert lines[3] == "C,Floor1,v_l1_3,,6,2,0,0,0,0,0,,300017',0,0,1,200,0,2,,;"
        # header + SC + state + 17 points
        assert len(lines) == 20

    def test_no_bare_newlines(self, n720_payload: GatewayPayload) -> None:
        csv = render_n720_edge_csv(n720_payload)
        assert "\n" not in csv.replace("\r\n", "")
        assert not csv.endswith("\r\n")

    def test_integer_register_has_no_decimals(
        self, n720_config: Configuration
    ) -> None:
        meter = MeterInstance(name="Panel", meter_type="XMC34F", slave_address=7)
        payload = generate(n720_config.model_copy(update={"meters": (meter,)}))
        kta = next(
            line for line in render_n720_edge_csv(payload).split("\r\n") if ",kta_7," in line
        )
        assert kta == "C,Panel,kta_7,,4,0,0,0,0,0,0,,404609',0,0,1,100,0,0,,;"

    def test_firmware_name_used(self, n720_config: Configuration) -> None:
        meter = MeterInstance(name="Main Panel #2", meter_type="EM4371", slave_address=5)
        payload = generate(n720_config.model_copy(update={"meters": (meter,)}))
        assert "SC,Main_Panel_2,," in render_n720_edge_csv(payload)


# ---------------------------------------------------------------------------
# N720 edge_report
# ---------------------------------------------------------------------------


class TestN720EdgeReport:
    """render_n720_edge_report(), encode_edge_report(), decode_edge_report()."""

    def test_one_group_per_meter(self, n720_config: Configuration) -> None:
        second = MeterInstance(name="Floor2", meter_type="EM4371", slave_address=4)
        payload = generate(n720_config.model_copy(update={"meters": (*n720_config.meters, second)}))
        groups = render_n720_edge_report(payload)["group"]

        assert [g["name"] for g in groups] == ["Floor1_report", "Floor2_report"]
        assert list(groups[0]["tmpl_cont"]) == ["Floor1"]
        assert list(groups[1]["tmpl_cont"]) == ["Floor2"]

    def test_duplicate_names_report_own_points(self, n720_config: Configuration) -> None:
        twin = MeterInstance(name="Floor1", meter_type="XMC34F", slave_address=4)
        payload = generate(n720_config.model_copy(update={"meters": (*n720_config.meters, twin)}))
        groups = render_n720_edge_report(payload)["group"]

        slaves = [
            {point.rsplit("_", 1)[1] for point in entry["values"].values()}
            for group in groups
            for entry in group["tmpl_cont"]["Floor1"]
        ]
        assert slaves == [{"3"}, {"4"}]

    def test_group_fields(self, n720_payload: GatewayPayload) -> None:
        (group,) = render_n720_edge_report(n720_payload)["group"]
        assert group["enable"] == 1
        assert group["link"] == "MQTT1"
        assert group["topic"] == "v1/gateway/telemetry"
        assert group["qos"] == 1
        assert group["cond"]["period"] == 60
        assert group["tmpl_cont"]["Floor1"][0]["values"]["e_tot"] == "e_tot_3"

    def test_single_device_uses_full_template(
        self, n720_config: Configuration, single_mqtt: MqttSettings
    ) -> None:
        payload = generate(n720_config.model_copy(update={"mqtt": single_mqtt}))
        (group,) = render_n720_edge_report(payload)["group"]
        assert group["topic"] == "v1/devices/me/telemetry"
        assert group["tmpl_cont"] == payload.report_template

    def test_group_name_truncated(self, n720_config: Configuration) -> None:
        meter = MeterInstance(name="AVeryLongMeterName", meter_type="EM4371", slave_address=5)
        payload = generate(n720_config.model_copy(update={"meters": (meter,)}))
        (group,) = render_n720_edge_report(payload)["group"]
        assert group["name"] == "AVeryLongMete_report"

    def test_crc_header(self, n720_payload: GatewayPayload) -> None:
        report = render_n720_edge_report(n720_payload)
        raw = encode_edge_report(report)
        body = raw[4:]
        assert int.from_bytes(raw[:4], "little") == zlib.crc32(body)
        assert json.loads(body) == report

    def test_decode_strips_header(self, n720_payload: GatewayPayload) -> None:
        report = render_n720_edge_report(n720_payload)
        assert decode_edge_report(encode_edge_report(report)) == report

    def test_decode_header_containing_brace(self) -> None:
        raw = b"{\x00\x01\x02" + b'{"group":[]}'
        assert decode_edge_report(raw) == {"group": []}

    def test_decode_plain_json(self) -> None:
        assert decode_edge_report(b'{"group":[]}') == {"group": []}

    def test_decode_truncated_prefix(self) -> None:
        assert decode_edge_report(b'oup":[{"enable":1}]}') == {"group": [{"enable": 1}]}

    def test_decode_rejects_non_object(self) -> None:
        with pytest.raises(ValueError, match="not a JSON object"):
            decode_edge_report(b"[1,2]")

    def test_decode_rejects_garbage(self) -> None:
        with pytest.raises(ValueError):
            decode_edge_report(b"\x00\x01garbage")


# ---------------------------------------------------------------------------
# N510 edge.json
# ---------------------------------------------------------------------------


class TestN510Edge:
    """render_n510_edge() and n510_edge_projection()."""

    def test_point_keys_and_addresses(self, n510_payload: GatewayPayload) -> None:
        edge = render_n510_edge(n510_payload)
        (slave,) = edge["ctable"]
        first = slave["datas"][0]

        assert slave["name"] == "Floor1"
        assert slave["port"] == ["uart", 1, 3]
        assert len(slave["datas"]) == 17
        assert first["key"] == 1001
        assert first["name"] == "v_l1_3"
        assert first["addr"] == "30017"
        assert first["type"] == 6

    def test_second_meter_keys(self, n510_config: Configuration) -> None:
        second = MeterInstance(name="Panel", meter_type="XMC34F", slave_address=7)
        payload = generate(n510_config.model_copy(update={"meters": (*n510_config.meters, second)}))
        ctable = render_n510_edge(payload)["ctable"]
        assert ctable[1]["key"] == 2
        assert ctable[1]["datas"][0]["key"] == 2001

    def test_report_table(self, n510_payload: GatewayPayload) -> None:
        rtable = render_n510_edge(n510_payload)["rtable"]
        (fmt,) = rtable["format"]
        assert fmt["topic"] == "v1/gateway/telemetry"
        assert fmt["template"] == n510_payload.report_template
        assert rtable["rules"] == [{"type": 1, "period": 60}]
        assert len(rtable["datas"]) == 17
        assert rtable["datas"][0]["sid"] == 12

    def test_stamp_tracks_body(self, n510_payload: GatewayPayload) -> None:
        assert render_n510_edge(n510_payload)["stamp"] == zlib.crc32(n510_payload.body)

    def test_projection_drops_firmware_fields(self, n510_payload: GatewayPayload) -> None:
        edge = render_n510_edge(n510_payload)
        stored = {**edge, "ver": 3, "rtable": {**edge["rtable"], "extra": 1}}
        assert n510_edge_projection(stored) == edge

    def test_projection_of_empty_document(self) -> None:
        assert n510_edge_projection({}) == {
            "stamp": None,
            "ctable": None,
            "rtable": {"format": None, "rules": None, "datas": None},
        }

    @pytest.mark.parametrize("edge", [[], "rebooting", {"rtable": []}, {"rtable": "x"}])
    def test_projection_rejects_non_objects(self, edge: object) -> None:
        with pytest.raises(ValueError, match="not a JSON object"):
            n510_edge_projection(edge)  # type: ignore[arg-type]


# ---------------------------------------------------------------------------
# MQTT parameters and fingerprints
# ---------------------------------------------------------------------------


class TestMqttParams:
    """n510_mqtt_params() and n720_mqtt_params()."""

    def test_n510(self, n510_payload: GatewayPayload) -> None:
        params = n510_mqtt_params(n510_payload)
        assert params["addr"] == "tb.example.com"
        assert params["rpt"] == "1883"
        assert params["cid"] == "Site-GW"
        assert params["usr"] == "abc123"
        assert params["mqtten"] == "1"

    def test_n720_channels(self, n720_payload: GatewayPayload) -> None:
        params = n720_mqtt_params(n720_payload)
        assert params["file"] == "comm_tunnel"
        assert params["n_MQTT[0].enable"] == "1"
        assert params["s_MQTT[0].server_ip"] == "tb.example.com"
        assert params["n_MQTT[0].server_port"] == "1883"
        assert params["s_MQTT[0].conn_user_name"] == "abc123"
        assert params["n_MQTT[1].enable"] == "0"
        assert params["s_MQTT[1].server_ip"] == "192.168.0.201"

    def test_all_values_are_strings(self, n720_payload: GatewayPayload) -> None:
        assert all(isinstance(v, str) for v in n720_mqtt_params(n720_payload).values())


class TestArtefactFingerprint:
    """artefact_fingerprint()."""

    def test_key_order_insensitive(self) -> None:
        assert artefact_fingerprint({"a": 1, "b": [1, 2]}) == artefact_fingerprint(
            {"b": [1, 2], "a": 1}
        )

    def test_list_order_sensitive(self) -> None:
        assert artefact_fingerprint([1, 2]) != artefact_fingerprint([2, 1])
