"""
Firmware-native renderings of a :class:`~gwsync.src.generator.GatewayPayload`.

The generator's document is firmware-neutral. This module turns it into the
artefacts each gateway model accepts over its management interface:

N510:
- ``edge.json`` (``ctable`` slave/point table + ``rtable`` report table),
  uploaded to ``/edge_model``.
- ``mqttbase.cgi`` query parameters.

N720:
- Edge acquisition CSV (``V,V1.0,N7X0,;`` header, one ``SC`` line and a
  ``State`` point per slave, one ``C`` line per register, CRLF endings),
  uploaded to ``/upload/edge``.
- ``edge_report`` JSON (one report group per meter), uploaded to
  ``/upload/nv1`` behind a 4-byte little-endian CRC32 header.
- ``update_nv.cgi?file=comm_tunnel`` MQTT query parameters.

Every renderer is deterministic; nothing here reads a clock.

CHANGELOG:
- 2026-10-19: Initial creation (STORY-108)

TODO:
- None
"""

from __future__ import annotations

import hashlib
import json
import zlib
from typing import Any

from gwsync.src.catalog import RegisterDef
from gwsync.src.generator import POLL_INTERVAL_MS, GatewayPayload, canonical_json
from gwsync.src.models import MqttMode

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

N510_POINT_KEY_BASE = 1000
"""Point keys of the n-th meter (0-based) start at ``(n + 1) * 1000``."""

N510_REPORT_SERVER_ID = 12
N720_CSV_HEADER = "V,V1.0,N7X0,;"
N720_MODBUS_RTU = 1
N720_SERIAL_PORT = "Uart1"
N720_STATE_TYPE_CODE = 18
N720_REPORT_LINK = "MQTT1"
N720_REPORT_NAME_LEN = 13

_TRUNCATED_REPORT_PREFIX = b'oup":['


def _register(block: dict[str, Any]) -> RegisterDef:
    return RegisterDef(
        address=block["address"],
        label=block["label"],
        data_type=block["data_type"],
        function_code=block["function"],
        scale=block["scale"],
        timeout_ms=block["timeout_ms"],
    )


def _blocks_for(payload: GatewayPayload, slave: int) -> list[dict[str, Any]]:
    return [block for block in payload.blocks if block["slave"] == slave]


def artefact_fingerprint(artefact: Any) -> str:
    """Order-insensitive fingerprint of a firmware artefact.

    Keys are sorted so that a gateway re-serialising a stored document with
    a different key order still yields the same digest.
    """
    encoded = json.dumps(artefact, separators=(",", ":"), sort_keys=True, ensure_ascii=False)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


# ---------------------------------------------------------------------------
# N510
# ---------------------------------------------------------------------------


def render_n510_edge(payload: GatewayPayload) -> dict[str, Any]:
    """Render the N510 ``edge.json`` document.

    ``stamp`` is the CRC32 of the canonical payload body, so it changes
    exactly when the configuration does.
    """
    doc = payload.document
    ctable: list[dict[str, Any]] = []
    report_datas: list[dict[str, Any]] = []

    for index, meter in enumerate(doc["meters"]):
        base_key = (index + 1) * N510_POINT_KEY_BASE
        datas = []
        for offset, block in enumerate(_blocks_for(payload, meter["slave"])):
            reg = _register(block)
            datas.append(
                {
                    "key": base_key + offset + 1,
                    "name": block["point"],
                    "type": reg.type_code,
                    "range": None,
                    "defv": 1,
                    "addr": reg.reference(digits=4),
                    "rw": 1,
                    "ct": POLL_INTERVAL_MS,
                    "to": reg.timeout_ms,
                }
            )
        ctable.append(
            {
                "key": index + 1,
                "name": meter["name"],
                "prot": "mbrtu",
                "port": ["uart", 1, meter["slave"]],
                "group": 0,
                "ct": POLL_INTERVAL_MS,
                "datas": datas,
            }
        )
        report_datas.extend(
            {
                "key": point["key"],
                "name": point["name"],
                "rid": [1, 2],
                "sid": N510_REPORT_SERVER_ID,
                "tid": 1,
                "fid": 1,
            }
            for point in datas
        )

    return {
        "stamp": zlib.crc32(payload.body),
        "ctable": ctable,
        "rtable": {
            "format": [
                {"topic": doc["report"]["topic"], "type": 1, "template": doc["report"]["template"]}
            ],
            "rules": [{"type": 1, "period": doc["schedule"]["report_period_s"]}],
            "datas": report_datas,
        },
    }


def n510_edge_projection(edge: dict[str, Any]) -> dict[str, Any]:
    """Project an ``edge.json`` read back from a gateway onto the rendered keys.

    The firmware adds bookkeeping fields of its own; only the keys this
    module writes take part in verification.

    Raises:
        ValueError: If *edge* or its ``rtable`` is not a JSON object.
    """
    if not isinstance(edge, dict):
        msg = f"edge.json is not a JSON object: {type(edge).__name__}"
        raise ValueError(msg)
    rtable = edge.get("rtable")
    if rtable is None:
        rtable = {}
    elif not isinstance(rtable, dict):
        msg = f"edge.json rtable is not a JSON object: {type(rtable).__name__}"
        raise ValueError(msg)
    return {
        "stamp": edge.get("stamp"),
        "ctable": edge.get("ctable"),
        "rtable": {
            "format": rtable.get("format"),
            "rules": rtable.get("rules"),
            "datas": rtable.get("datas"),
        },
    }


def n510_mqtt_params(payload: GatewayPayload) -> dict[str, str]:
    """Query parameters for the N510 ``mqttbase.cgi`` endpoint."""
    mqtt = payload.document["mqtt"]
    return {
        "mqtten": "1",
        "mqttver": "4",
        "cid": mqtt["client_id"],
        "addr": mqtt["host"],
        "lpt": "0",
        "rpt": str(mqtt["port"]),
        "ka": str(mqtt["keepalive_s"]),
        "ndtrct": "0",
        "rctime": "5",
        "cs": "0",
        "mqv": "1",
        "usr": mqtt["username"],
        "pwd": mqtt["password"],
        "wf": "0",
        "wtop": "/will",
        "wmsg": "offline",
        "wqos": "0",
        "wrtd": "0",
        "sslm": "0",
        "sslv": "0",
        "hosten": "0",
        "hostname": "",
    }


# ---------------------------------------------------------------------------
# N720
# ---------------------------------------------------------------------------


def render_n720_edge_csv(payload: GatewayPayload) -> str:
    """Render the N720 edge acquisition CSV (CRLF line endings)."""
    lines = [N720_CSV_HEADER]
    for meter in payload.document["meters"]:
        name = meter["firmware_name"]
        lines.append(
            f"SC,{name},,{N720_MODBUS_RTU},{meter['slave']},{POLL_INTERVAL_MS},"
            f"0,0,,{N720_SERIAL_PORT},;"
        )
        lines.append(
            f"C,{name},{name}_state,,{N720_STATE_TYPE_CODE},0,0,0,0,0,0,,State,0,0,0,0,0,0,,;"
        )
        for block in _blocks_for(payload, meter["slave"]):
            reg = _register(block)
            lines.append(
                f"C,{name},{block['point']},,{reg.type_code},{reg.decimals},0,0,0,0,0,,"
                f"{reg.reference(digits=5)}',0,0,1,{reg.timeout_ms},0,{reg.decimals},,;"
            )
    return "\r\n".join(lines)


def render_n720_edge_report(payload: GatewayPayload) -> dict[str, Any]:
    """Render the N720 ``edge_report`` document, one report group per meter."""
    doc = payload.document
    template = doc["report"]["template"]
    topic = doc["report"]["topic"].lstrip("/")
    gateway_mode = doc["mqtt"]["mode"] == MqttMode.GATEWAY.value

    groups = []
    # meters sharing a display name share a template list, in meter order
    seen: dict[str, int] = {}
    for meter in doc["meters"]:
        if gateway_mode:
            index = seen.get(meter["name"], 0)
            seen[meter["name"]] = index + 1
            tmpl_cont = {meter["name"]: [template[meter["name"]][index]]}
        else:
            tmpl_cont = template
        groups.append(
            {
                "enable": 1,
                "name": f"{meter['firmware_name'][:N720_REPORT_NAME_LEN]}_report",
                "link": N720_REPORT_LINK,
                "topic": topic,
                "qos": doc["mqtt"]["qos"],
                "retention": 0,
                "cond": {
                    "period": doc["schedule"]["report_period_s"],
                    "timed": {"type": 0, "hh": 0, "mm": 0},
                },
                "data_report_type": 0,
                "change_report_type": 0,
                "err_enable": 0,
                "err_info": "error",
                "tmpl_file": "",
                "fkey_md5": "0" * 32,
                "ucld_node": [],
                "tmpl_cont": tmpl_cont,
            }
        )
    return {"group": groups}


def encode_edge_report(report: dict[str, Any]) -> bytes:
    """Prefix the compact JSON of *report* with its little-endian CRC32.

    The firmware validates this header on restart and discards a report
    whose checksum does not match.
    """
    body = canonical_json(report)
    return zlib.crc32(body).to_bytes(4, "little") + body


def decode_edge_report(raw: bytes) -> dict[str, Any]:
    """Parse an ``edge_report`` read back through ``download_nv.cgi``.

    Strips the binary CRC header and repairs the truncated ``oup":[``
    prefix some firmware builds return.

    Raises:
        ValueError: If the remaining bytes are not a JSON object.
    """
    start = raw.find(b"{")
    if raw.startswith(_TRUNCATED_REPORT_PREFIX):
        raw = b'{"gr' + raw
    # the CRC header itself may contain a '{' byte
    elif raw[4:6] == b'{"' and not raw.startswith(b'{"'):
        raw = raw[4:]
    elif start > 0:
        raw = raw[start:]
    report = json.loads(raw.decode("utf-8"))
    if not isinstance(report, dict):
        msg = f"edge_report is not a JSON object: {type(report).__name__}"
        raise ValueError(msg)
    return report


def n720_mqtt_params(payload: GatewayPayload) -> dict[str, str]:
    """Query parameters for ``update_nv.cgi`` writing the comm_tunnel file.

    Channel MQTT[0] carries the configured broker; MQTT[1] is disabled and
    reset to firmware defaults.
    """
    mqtt = payload.document["mqtt"]
    params = {"file": "comm_tunnel"}
    params.update(
        _n720_channel(
            0,
            enable=True,
            host=mqtt["host"],
            port=mqtt["port"],
            keepalive=mqtt["keepalive_s"],
            client_id=mqtt["client_id"],
            username=mqtt["username"],
            password=mqtt["password"],
        )
    )
    params.update(
        _n720_channel(
            1,
            enable=False,
            host="192.168.0.201",
            port=1883,
            keepalive=60,
            client_id="",
            username="",
            password="",
        )
    )
    return params


def _n720_channel(
    index: int,
    *,
    enable: bool,
    host: str,
    port: int,
    keepalive: int,
    client_id: str,
    username: str,
    password: str,
) -> dict[str, str]:
    n = f"n_MQTT[{index}]"
    s = f"s_MQTT[{index}]"
    return {
        f"{n}.enable": "1" if enable else "0",
        f"{n}.mqtt_ver": "4",
        f"{s}.server_ip": host,
        # sic: firmware spelling
        f"{n}.loacl_port": "0",
        f"{n}.server_port": str(port),
        f"{n}.keepalive": str(keepalive),
        f"{n}.reconn_space": "5",
        f"{n}.clean_session": "0",
        f"{s}.client_id": client_id,
        f"{n}.conn_verify": "1" if enable else "0",
        f"{s}.conn_user_name": username,
        f"{s}.conn_user_password": password,
        f"{n}.will_flag": "0",
        f"{s}.will.topic": "/will",
        f"{s}.will.msg": "offline",
        f"{n}.will.qos": "0",
        f"{n}.will.retention": "0",
        f"{n}.ssl_mode": "0",
        f"{n}.ssl_verify": "0",
    }
