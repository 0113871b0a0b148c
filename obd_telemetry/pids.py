"""Mode 01 PID catalog and decoders.

Each PID decodes through one of a closed set of :class:`DecodeShape`
functions instead of a formula string, so catalog data is never evaluated
as code.  The catalog is process-wide and read-only.

Reference: SAE J1979 / ISO 15031-5.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence, Tuple

# ---------------------------------------------------------------------------
# Decode shapes
# ---------------------------------------------------------------------------


class DecodeShape(str, Enum):
    """Closed set of byte-to-value formulas used by Mode 01 PIDs."""

    SINGLE_BYTE = "single_byte"  # A
    BYTE_MINUS_40 = "byte_minus_40"  # A - 40
    PERCENT = "percent"  # A * 100 / 255
    SCALED_BYTE = "scaled_byte"  # A * scale
    TWO_BYTE = "two_byte"  # (256A + B) * scale
    SIGNED_PERCENT = "signed_percent"  # (A - 128) * 100 / 128
    HALF_MINUS_64 = "half_minus_64"  # A / 2 - 64

    @classmethod
    def from_name(cls, name: str) -> "DecodeShape":
        """Look up a shape by value or member name; reject anything else."""
        key = name.strip()
        for shape in cls:
            if key in (shape.value, shape.name):
                return shape
        raise ValueError(f"Unknown decode shape {name!r}")


_Decoder = Callable[[Sequence[int], float], float]
_Encoder = Callable[[float, float], List[int]]


def _clamp_byte(value: float) -> int:
    return max(0, min(255, int(round(value))))


_DECODERS: Dict[DecodeShape, _Decoder] = {
    DecodeShape.SINGLE_BYTE: lambda d, s: float(d[0]),
    DecodeShape.BYTE_MINUS_40: lambda d, s: float(d[0] - 40),
    DecodeShape.PERCENT: lambda d, s: d[0] * 100 / 255,
    DecodeShape.SCALED_BYTE: lambda d, s: d[0] * s,
    DecodeShape.TWO_BYTE: lambda d, s: (d[0] * 256 + d[1]) * s,
    DecodeShape.SIGNED_PERCENT: lambda d, s: (d[0] - 128) * 100 / 128,
    DecodeShape.HALF_MINUS_64: lambda d, s: d[0] / 2 - 64,
}


def _encode_two_byte(value: float, scale: float) -> List[int]:
    raw = max(0, min(0xFFFF, int(round(value / scale))))
    return [raw >> 8, raw & 0xFF]


_ENCODERS: Dict[DecodeShape, _Encoder] = {
    DecodeShape.SINGLE_BYTE: lambda v, s: [_clamp_byte(v)],
    DecodeShape.BYTE_MINUS_40: lambda v, s: [_clamp_byte(v + 40)],
    DecodeShape.PERCENT: lambda v, s: [_clamp_byte(v * 255 / 100)],
    DecodeShape.SCALED_BYTE: lambda v, s: [_clamp_byte(v / s)],
    DecodeShape.TWO_BYTE: _encode_two_byte,
    DecodeShape.SIGNED_PERCENT: lambda v, s: [_clamp_byte(v * 128 / 100 + 128)],
    DecodeShape.HALF_MINUS_64: lambda v, s: [_clamp_byte((v + 64) * 2)],
}

# Bytes each shape reads from the payload.
_SHAPE_WIDTH: Dict[DecodeShape, int] = {
    DecodeShape.TWO_BYTE: 2,
}


# ---------------------------------------------------------------------------
# Definitions
# ---------------------------------------------------------------------------


class PIDPriority(str, Enum):
    ESSENTIAL = "essential"
    IMPORTANT = "important"
    OPTIONAL = "optional"


class PIDCategory(str, Enum):
    ENGINE = "engine"
    FUEL = "fuel"
    AIR = "air"
    TEMPERATURE = "temperature"
    SPEED = "speed"
    OXYGEN = "oxygen"
    ELECTRICAL = "electrical"


@dataclass(frozen=True)
class PIDDefinition:
    """Static description of one Mode 01 PID.

    Attributes
    ----------
    pid : str
        Four-hex-digit command, e.g. ``"010C"``.
    num_bytes : int
        Payload bytes the adapter returns for this PID.
    shape, scale :
        Decode formula selector and its scale factor.
    field : str
        :class:`~obd_telemetry.schemas.OBDData` attribute the value fills.
    """

    pid: str
    name: str
    description: str
    unit: str
    min_value: float
    max_value: float
    num_bytes: int
    shape: DecodeShape
    priority: PIDPriority
    category: PIDCategory
    field: str
    scale: float = 1.0

    @property
    def pid_code(self) -> str:
        """The two-hex-digit PID without the mode prefix."""
        return self.pid[2:]

    @property
    def response_header(self) -> str:
        """Positive-response prefix the adapter must echo (``41`` + PID)."""
        return "41" + self.pid_code

    def in_range(self, value: float) -> bool:
        return self.min_value <= value <= self.max_value


def _define(
    pid: str,
    name: str,
    description: str,
    unit: str,
    value_range: Tuple[float, float],
    num_bytes: int,
    shape: DecodeShape,
    priority: PIDPriority,
    category: PIDCategory,
    field: str,
    scale: float = 1.0,
) -> PIDDefinition:
    return PIDDefinition(
        pid=pid,
        name=name,
        description=description,
        unit=unit,
        min_value=value_range[0],
        max_value=value_range[1],
        num_bytes=num_bytes,
        shape=shape,
        priority=priority,
        category=category,
        field=field,
        scale=scale,
    )


_E, _I, _O = PIDPriority.ESSENTIAL, PIDPriority.IMPORTANT, PIDPriority.OPTIONAL

_DEFINITIONS: Tuple[PIDDefinition, ...] = (
    _define("0104", "ENGINE_LOAD", "Calculated Engine Load", "%",
            (0, 100), 1, DecodeShape.PERCENT, _I, PIDCategory.ENGINE,
            "engine_load"),
    _define("0105", "ENGINE_COOLANT_TEMP", "Engine Coolant Temperature", "°C",
            (-40, 215), 1, DecodeShape.BYTE_MINUS_40, _E,
            PIDCategory.TEMPERATURE, "engine_temp"),
    _define("0106", "SHORT_FUEL_TRIM_1", "Short Term Fuel Trim Bank 1", "%",
            (-100, 99.22), 1, DecodeShape.SIGNED_PERCENT, _O,
            PIDCategory.FUEL, "short_fuel_trim"),
    _define("0107", "LONG_FUEL_TRIM_1", "Long Term Fuel Trim Bank 1", "%",
            (-100, 99.22), 1, DecodeShape.SIGNED_PERCENT, _O,
            PIDCategory.FUEL, "long_fuel_trim"),
    _define("010A", "FUEL_PRESSURE", "Fuel Pressure", "kPa",
            (0, 765), 1, DecodeShape.SCALED_BYTE, _O, PIDCategory.FUEL,
            "fuel_pressure", scale=3.0),
    _define("010B", "INTAKE_MAP", "Intake Manifold Absolute Pressure", "kPa",
            (0, 255), 1, DecodeShape.SINGLE_BYTE, _I, PIDCategory.AIR, "map"),
    _define("010C", "ENGINE_RPM", "Engine RPM", "rpm",
            (0, 16383.75), 2, DecodeShape.TWO_BYTE, _E, PIDCategory.ENGINE,
            "rpm", scale=0.25),
    _define("010D", "VEHICLE_SPEED", "Vehicle Speed", "km/h",
            (0, 255), 1, DecodeShape.SINGLE_BYTE, _E, PIDCategory.SPEED,
            "speed"),
    _define("010E", "TIMING_ADVANCE", "Timing Advance", "°",
            (-64, 63.5), 1, DecodeShape.HALF_MINUS_64, _O,
            PIDCategory.ENGINE, "timing_advance"),
    _define("010F", "INTAKE_AIR_TEMP", "Intake Air Temperature", "°C",
            (-40, 215), 1, DecodeShape.BYTE_MINUS_40, _I,
            PIDCategory.TEMPERATURE, "intake_air_temp"),
    _define("0110", "MAF_SENSOR", "MAF Air Flow Rate", "g/s",
            (0, 655.35), 2, DecodeShape.TWO_BYTE, _E, PIDCategory.AIR, "maf",
            scale=0.01),
    _define("0111", "THROTTLE_POSITION", "Throttle Position", "%",
            (0, 100), 1, DecodeShape.PERCENT, _E, PIDCategory.ENGINE,
            "throttle_position"),
    _define("0114", "O2_SENSOR_B1S1", "Oxygen Sensor Bank 1 Sensor 1", "V",
            (0, 1.275), 2, DecodeShape.SCALED_BYTE, _O, PIDCategory.OXYGEN,
            "oxygen_sensor", scale=0.005),
    _define("011F", "RUN_TIME", "Run Time Since Engine Start", "s",
            (0, 65535), 2, DecodeShape.TWO_BYTE, _O, PIDCategory.ENGINE,
            "run_time"),
    _define("012F", "FUEL_LEVEL", "Fuel Tank Level Input", "%",
            (0, 100), 1, DecodeShape.PERCENT, _I, PIDCategory.FUEL,
            "fuel_level"),
    _define("0133", "BAROMETRIC_PRESSURE", "Absolute Barometric Pressure",
            "kPa", (0, 255), 1, DecodeShape.SINGLE_BYTE, _O, PIDCategory.AIR,
            "barometric_pressure"),
    _define("0142", "CONTROL_MODULE_VOLTAGE", "Control Module Voltage", "V",
            (0, 65.535), 2, DecodeShape.TWO_BYTE, _O,
            PIDCategory.ELECTRICAL, "control_module_voltage", scale=0.001),
    _define("0146", "AMBIENT_AIR_TEMP", "Ambient Air Temperature", "°C",
            (-40, 215), 1, DecodeShape.BYTE_MINUS_40, _O,
            PIDCategory.TEMPERATURE, "ambient_air_temp"),
    _define("015C", "ENGINE_OIL_TEMP", "Engine Oil Temperature", "°C",
            (-40, 210), 1, DecodeShape.BYTE_MINUS_40, _O,
            PIDCategory.TEMPERATURE, "oil_temp"),
)

PID_CATALOG: Dict[str, PIDDefinition] = {d.pid: d for d in _DEFINITIONS}

# Name -> command, e.g. OBD_PIDS["ENGINE_RPM"] == "010C".
OBD_PIDS: Dict[str, str] = {d.name: d.pid for d in _DEFINITIONS}

PID_GROUPS: Dict[PIDPriority, Tuple[str, ...]] = {
    priority: tuple(d.pid for d in _DEFINITIONS if d.priority is priority)
    for priority in PIDPriority
}

ESSENTIAL_PIDS: Tuple[str, ...] = PID_GROUPS[PIDPriority.ESSENTIAL]

# Substitute to read when a PID is unsupported by the vehicle.
FALLBACK_PIDS: Dict[str, str] = {
    "0110": "010B",  # MAF -> MAP
    "010B": "0110",  # MAP -> MAF
    "010F": "0146",  # intake air temp -> ambient air temp
    "0105": "015C",  # coolant temp -> oil temp
}

# Assumed supported when bitmask discovery fails entirely.
COMMON_PIDS: Tuple[str, ...] = (
    "010C", "010D", "0105", "010F", "0110", "010B", "0111", "012F",
)

# Bitmask queries: command -> first PID number covered.
SUPPORT_QUERIES: Tuple[Tuple[str, int], ...] = (
    ("0100", 0x01),
    ("0120", 0x21),
    ("0140", 0x41),
)


# ---------------------------------------------------------------------------
# Public helpers
# ---------------------------------------------------------------------------


def normalize_pid(pid: str) -> str:
    """Return the canonical four-digit Mode 01 command for *pid*.

    Accepts ``"0C"``, ``"0c"`` and ``"010C"``.  Raises ``ValueError`` for
    anything that is not 2 or 4 hex characters.
    """
    key = pid.strip().upper()
    if len(key) not in (2, 4) or any(c not in "0123456789ABCDEF" for c in key):
        raise ValueError(f"PID must be 2 or 4 hex characters, got {pid!r}")
    if len(key) == 2:
        key = "01" + key
    return key


def get_pid_definition(pid: str) -> Optional[PIDDefinition]:
    try:
        return PID_CATALOG.get(normalize_pid(pid))
    except ValueError:
        return None


def field_for_pid(pid: str) -> Optional[str]:
    definition = get_pid_definition(pid)
    return definition.field if definition else None


def shape_width(shape: DecodeShape) -> int:
    return _SHAPE_WIDTH.get(shape, 1)


def decode_payload(definition: PIDDefinition, data: Sequence[int]) -> float:
    """Decode payload bytes with the PID's shape, rounded to 2 decimals.

    Raises ``ValueError`` when *data* is shorter than the shape needs.
    """
    needed = shape_width(definition.shape)
    if len(data) < needed:
        raise ValueError(
            f"{definition.name} needs {needed} data byte(s), got {len(data)}"
        )
    value = _DECODERS[definition.shape](data, definition.scale)
    return round(value, 2)


def encode_value(definition: PIDDefinition, value: float) -> bytes:
    """Inverse of :func:`decode_payload`, padded to ``num_bytes``."""
    raw = _ENCODERS[definition.shape](value, definition.scale)
    raw.extend([0xFF] * (definition.num_bytes - len(raw)))
    return bytes(raw[: definition.num_bytes])


def parse_hex_bytes(payload: str) -> List[int]:
    """Split a hex string into byte values; an odd trailing nibble is dropped."""
    return [int(payload[i:i + 2], 16) for i in range(0, len(payload) - 1, 2)]
