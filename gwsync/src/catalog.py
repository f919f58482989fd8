"""
Meter template catalog -- single source of truth for supported meter types.

Each :class:`MeterTemplate` fully determines the Modbus register layout and
the telemetry labels a meter type advertises to the platform, so the payload
generator never branches on meter type. Adding a meter type means adding an
entry to :data:`CATALOG`; nothing else changes.

Register addresses are stored 0-based together with their Modbus function
code. Gateway firmwares expect different textual forms:

- N720: function-code prefix + 5-digit 1-based register number
  (FC4 address 16 -> ``300017``).
- N510: function-code prefix + 4-digit 1-based register number
  (FC3 address 16 -> ``40017``).

Data type strings follow the gateways' own vocabulary (``"uint16"``,
``"int16"``, ``"uint32(ABCD)"``, ``"float32(ABCD)"``); ABCD means big-endian
byte and word order.

CHANGELOG:
- 2026-10-19: Initial creation (STORY-104)

TODO:
- None
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field

from pymodbus.client import AsyncModbusTcpClient

from gwsync.src.errors import UnknownMeterType
from gwsync.src.models import GatewayModel, MeterType

CATALOG_VERSION = "2026.10"
"""Bumped whenever a template's register layout changes."""

# ---------------------------------------------------------------------------
# Data type tables
# ---------------------------------------------------------------------------

_WORD_COUNTS: dict[str, int] = {
    "uint16": 1,
    "int16": 1,
    "uint32(ABCD)": 2,
    "float32(ABCD)": 2,
}

_N720_TYPE_CODES: dict[str, int] = {
    "uint16": 4,
    "int16": 5,
    "float32(ABCD)": 6,
    "uint32(ABCD)": 10,
}
"""Numeric data type codes used in N720 CSV and N510 edge.json."""

_PYMODBUS_TYPES = {
    "uint16": AsyncModbusTcpClient.DATATYPE.UINT16,
    "int16": AsyncModbusTcpClient.DATATYPE.INT16,
    "uint32(ABCD)": AsyncModbusTcpClient.DATATYPE.UINT32,
    "float32(ABCD)": AsyncModbusTcpClient.DATATYPE.FLOAT32,
}

_FUNCTION_CODE_PREFIXES: dict[int, int] = {
    1: 0,  # coils
    2: 1,  # discrete inputs
    3: 4,  # holding registers
    4: 3,  # input registers
}


# ---------------------------------------------------------------------------
# Data definitions
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class RegisterDef:
    """Definition of a single meter register.

    Attributes:
        address: 0-based Modbus register address.
        label: Telemetry key reported to the platform (e.g. ``"v_l1"``).
        data_type: One of ``"uint16"``, ``"int16"``, ``"uint32(ABCD)"``,
            ``"float32(ABCD)"``.
        function_code: Modbus read function (3 = holding, 4 = input).
        scale: Multiplier applied to the decoded raw value.
        timeout_ms: Response timeout the gateway uses for this point.
        word_count: Number of 16-bit words, derived from *data_type*.
    """

    address: int
    label: str
    data_type: str = "float32(ABCD)"
    function_code: int = 3
    scale: float = 1.0
    timeout_ms: int = 200
    word_count: int = field(default=0, repr=False)

    def __post_init__(self) -> None:  # noqa: D105
        wc = _WORD_COUNTS.get(self.data_type)
        if wc is None:
            msg = f"Register '{self.label}': unsupported data type '{self.data_type}'"
            raise ValueError(msg)
        if self.function_code not in _FUNCTION_CODE_PREFIXES:
            msg = f"Register '{self.label}': unsupported function code {self.function_code}"
            raise ValueError(msg)
        object.__setattr__(self, "word_count", wc)

    @property
    def type_code(self) -> int:
        """Numeric data type code understood by the gateway firmware."""
        return _N720_TYPE_CODES[self.data_type]

    @property
    def decimals(self) -> int:
        """Decimal places the gateway keeps: 2 for floats, 0 for integers."""
        return 2 if self.data_type.startswith("float") else 0

    def reference(self, digits: int = 5) -> str:
        """Return the prefixed 1-based register reference (``300017``)."""
        prefix = _FUNCTION_CODE_PREFIXES[self.function_code]
        return f"{prefix}{self.address + 1:0{digits}d}"

    def decode(self, words: list[int]) -> int | float:
        """Decode raw 16-bit words into the scaled engineering value.

        Raises:
            ValueError: If *words* does not hold exactly ``word_count`` words.
        """
        if len(words) != self.word_count:
            msg = (
                f"Register '{self.label}' expects {self.word_count} words, "
                f"got {len(words)}"
            )
            raise ValueError(msg)
        raw = AsyncModbusTcpClient.convert_from_registers(
            list(words), _PYMODBUS_TYPES[self.data_type]
        )
        if self.scale == 1:
            return raw
        return raw * self.scale


@dataclass(frozen=True, slots=True)
class MeterTemplate:
    """Immutable register map of one meter type.

    Attributes:
        meter_type: Catalog id.
        display_name: Human readable name.
        registers: Ordered register definitions; order is the polling order.
        supported_models: Gateway models with a tested register map.
    """

    meter_type: MeterType
    display_name: str
    registers: tuple[RegisterDef, ...]
    supported_models: frozenset[GatewayModel]

    @property
    def point_count(self) -> int:
        """Number of data points advertised to the platform."""
        return len(self.registers)

    @property
    def labels(self) -> tuple[str, ...]:
        """Telemetry labels in polling order."""
        return tuple(reg.label for reg in self.registers)


def _floats(
    start: int,
    labels: list[str],
    *,
    function_code: int = 3,
    timeout_ms: int = 200,
) -> list[RegisterDef]:
    """Consecutive float32 registers, two words apart, starting at *start*."""
    return [
        RegisterDef(
            address=start + 2 * i,
            label=label,
            function_code=function_code,
            timeout_ms=timeout_ms,
        )
        for i, label in enumerate(labels)
    ]


# ---------------------------------------------------------------------------
# EM4371 energy meter (input registers, float32)
# ---------------------------------------------------------------------------

_EM4371_REGISTERS: tuple[RegisterDef, ...] = (
    *_floats(16, ["v_l1", "v_l2", "v_l3", "i_l1", "i_l2", "i_l3"], function_code=4),
    *_floats(32, ["p_l1", "p_l2", "p_l3"], function_code=4),
    *_floats(40, ["q_l1", "q_l2", "q_l3"], function_code=4),
    *_floats(56, ["pf_l1", "pf_l2", "pf_l3"], function_code=4),
    RegisterDef(address=78, label="freq", function_code=4),
    RegisterDef(address=364, label="e_tot", function_code=4),
)

# ---------------------------------------------------------------------------
# XMC34F three-phase meter (holding registers)
# ---------------------------------------------------------------------------


def _xmc_u16(address: int, label: str) -> RegisterDef:
    return RegisterDef(address=address, label=label, data_type="uint16", timeout_ms=100)


def _xmc_f32(address: int, label: str) -> RegisterDef:
    return RegisterDef(address=address, label=label, timeout_ms=100)


_XMC34F_REGISTERS: tuple[RegisterDef, ...] = (
    _xmc_u16(4608, "kta"),
    _xmc_u16(4609, "ktv"),
    _xmc_f32(4096, "v_l1"),
    _xmc_f32(4098, "v_l2"),
    _xmc_f32(4100, "v_l3"),
    _xmc_f32(4102, "i_l1"),
    _xmc_f32(4104, "i_l2"),
    _xmc_f32(4106, "i_l3"),
    _xmc_u16(4134, "freq"),
    _xmc_f32(4140, "p_l1"),
    _xmc_f32(4142, "p_l2"),
    _xmc_f32(4144, "p_l3"),
    _xmc_f32(4149, "q_l1"),
    _xmc_f32(4151, "q_l2"),
    _xmc_f32(4153, "q_l3"),
    _xmc_f32(4116, "p_tot"),
    _xmc_f32(4118, "q_tot"),
    _xmc_f32(4120, "s_tot"),
    _xmc_u16(4132, "pf_tot"),
    _xmc_f32(4128, "e_tot"),
    _xmc_f32(4126, "e_q_tot"),
    _xmc_u16(4122, "p_sgn_tot"),
    _xmc_u16(4123, "q_sgn_tot"),
    _xmc_u16(4146, "p_sgn_l1"),
    _xmc_u16(4147, "p_sgn_l2"),
    _xmc_u16(4148, "p_sgn_l3"),
    _xmc_u16(4155, "q_sgn_l1"),
    _xmc_u16(4156, "q_sgn_l2"),
    _xmc_u16(4157, "q_sgn_l3"),
    _xmc_u16(4133, "pf_sgn_tot"),
)

# ---------------------------------------------------------------------------
# Sfere720 quality meter (holding registers, float32)
# ---------------------------------------------------------------------------

_SFERE720_REGISTERS: tuple[RegisterDef, ...] = (
    *_floats(6, ["v_l1", "v_l2", "v_l3"]),
    *_floats(18, ["i_l1", "i_l2", "i_l3"]),
    *_floats(
        26,
        [
            "p_l1", "p_l2", "p_l3", "p_tot",
            "q_l1", "q_l2", "q_l3", "q_tot",
            "s_l1", "s_l2", "s_l3", "s_tot",
            "pf_l1", "pf_l2", "pf_l3", "pf_tot",
            "freq", "e_tot", "e_neg_tot", "e_q_tot", "e_q_neg_tot",
        ],
    ),
    *_floats(86, ["e_l1", "e_l2", "e_l3"]),
    RegisterDef(address=7106, label="i_tot"),
    *_floats(7200, ["i_max_l1", "i_max_l2", "i_max_l3"]),
    *_floats(
        7700,
        ["thd_v_l1", "thd_v_l2", "thd_v_l3", "thd_i_l1", "thd_i_l2", "thd_i_l3"],
    ),
)

# ---------------------------------------------------------------------------
# Energy-NG9 nine-channel analyzer (holding registers)
# ---------------------------------------------------------------------------

_CHANNELS = range(1, 10)

_ENERGY_NG9_REGISTERS: tuple[RegisterDef, ...] = (
    *_floats(7006, ["v_l1", "v_l2", "v_l3"]),
    *_floats(7012, [f"i_l{ch}" for ch in _CHANNELS]),
    *_floats(7030, [f"s_l{ch}" for ch in _CHANNELS]),
    *_floats(7048, [f"p_l{ch}" for ch in _CHANNELS]),
    *_floats(7066, ["q_l1", "q_l2", "q_l3"]),
    *_floats(7084, ["pf_l1", "pf_l2", "pf_l3"]),
    RegisterDef(address=7106, label="i_tot"),
    RegisterDef(address=7112, label="s_tot"),
    RegisterDef(address=7118, label="p_tot"),
    RegisterDef(address=7136, label="freq"),
    RegisterDef(address=7500, label="e_l1", data_type="uint32(ABCD)"),
    RegisterDef(address=7512, label="e_l2", data_type="uint32(ABCD)"),
    RegisterDef(address=7524, label="e_l3", data_type="uint32(ABCD)"),
    RegisterDef(address=7608, label="e_tot", data_type="uint32(ABCD)"),
    RegisterDef(address=7610, label="e_neg_tot", data_type="uint32(ABCD)"),
)

# ---------------------------------------------------------------------------
# TAC4300 (input registers, energy/THD block in holding registers)
# ---------------------------------------------------------------------------

_TAC4300_REGISTERS: tuple[RegisterDef, ...] = (
    *_floats(
        0,
        [
            "v_l1", "v_l2", "v_l3", "i_l1", "i_l2", "i_l3",
            "p_l1", "p_l2", "p_l3", "q_l1", "q_l2", "q_l3",
            "s_l1", "s_l2", "s_l3",
        ],
        function_code=4,
    ),
    RegisterDef(address=30, label="pf_l1", data_type="int16", function_code=4),
    RegisterDef(address=31, label="pf_l2", data_type="int16", function_code=4),
    RegisterDef(address=32, label="pf_l3", data_type="int16", function_code=4),
    RegisterDef(address=42, label="freq", data_type="uint16", function_code=4),
    RegisterDef(address=44, label="p_tot", function_code=4),
    RegisterDef(address=48, label="s_tot", function_code=4),
    RegisterDef(address=52, label="i_tot", function_code=4),
    *_floats(130, ["i_max_l1", "i_max_l2", "i_max_l3"], function_code=4),
    *_floats(1056, ["e_l1", "e_l2", "e_l3"], function_code=4),
    RegisterDef(address=7608, label="e_tot", data_type="uint32(ABCD)"),
    RegisterDef(address=7610, label="e_neg_tot", data_type="uint32(ABCD)"),
    *_floats(
        7700,
        ["thd_v_l1", "thd_v_l2", "thd_v_l3", "thd_i_l1", "thd_i_l2", "thd_i_l3"],
    ),
)

# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

_BOTH = frozenset({GatewayModel.N720, GatewayModel.N510})
_N720_ONLY = frozenset({GatewayModel.N720})

CATALOG: Mapping[str, MeterTemplate] = {
    MeterType.EM4371: MeterTemplate(
        MeterType.EM4371, "EM4371 (Energy Meter)", _EM4371_REGISTERS, _BOTH
    ),
    MeterType.XMC34F: MeterTemplate(
        MeterType.XMC34F, "XMC34F (3-Phase)", _XMC34F_REGISTERS, _BOTH
    ),
    MeterType.SFERE720: MeterTemplate(
        MeterType.SFERE720, "Sfere720 (Quality Meter)", _SFERE720_REGISTERS, _N720_ONLY
    ),
    MeterType.ENERGY_NG9: MeterTemplate(
        MeterType.ENERGY_NG9,
        "Energy-NG9 (9-Channel)",
        _ENERGY_NG9_REGISTERS,
        _N720_ONLY,
    ),
    MeterType.TAC4300: MeterTemplate(
        MeterType.TAC4300, "TAC4300", _TAC4300_REGISTERS, _N720_ONLY
    ),
}
"""All registered templates keyed by type id."""


def lookup(
    meter_type: str, catalog: Mapping[str, MeterTemplate] | None = None
) -> MeterTemplate:
    """Return the template registered for *meter_type*.

    Args:
        meter_type: Type id such as ``"EM4371"``.
        catalog: Catalog to search; defaults to :data:`CATALOG`.

    Raises:
        UnknownMeterType: If the id is not registered.
    """
    source = CATALOG if catalog is None else catalog
    try:
        return source[meter_type]
    except KeyError:
        raise UnknownMeterType(f"Unknown meter type '{meter_type}'") from None


def templates_for(
    model: GatewayModel, catalog: Mapping[str, MeterTemplate] | None = None
) -> list[MeterTemplate]:
    """Templates that can be configured on a gateway *model*."""
    source = CATALOG if catalog is None else catalog
    return [tpl for tpl in source.values() if model in tpl.supported_models]
