"""Pydantic v2 models for telemetry records.

``OBDResponse`` and ``DrivingEvent`` are immutable once created.
``RealTimeData`` is the unit published to subscribers and kept in history.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import List, Literal, Optional

from pydantic import BaseModel, Field, field_validator

from obd_telemetry.pids import ESSENTIAL_PIDS, PID_CATALOG, normalize_pid

ConnectionStatus = Literal["connected", "connecting", "disconnected", "error"]
Severity = Literal["low", "medium", "high"]
DrivingEventType = Literal[
    "harsh_acceleration",
    "harsh_braking",
    "high_rpm",
    "idle_time",
    "high_temp",
    "speeding",
    "engine_load_high",
]
EstimationMethod = Literal["calculation", "lookup", "interpolation"]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Adapter-level records
# ---------------------------------------------------------------------------


class PIDSupportRecord(BaseModel):
    """Whether the vehicle answers a PID, as last observed."""

    pid: str
    is_supported: bool
    tested_at: datetime = Field(default_factory=_utcnow)
    fallback_pid: Optional[str] = None
    estimation_method: Optional[EstimationMethod] = None


class OBDResponse(BaseModel):
    """One decoded Mode 01 reply."""

    model_config = {"frozen": True}

    pid: str = Field(..., description="Requested PID command, e.g. '010C'")
    raw_value: str = Field(default="", description="Payload hex after the header")
    value: Optional[float] = Field(default=None, description="Decoded value")
    unit: str = ""
    description: str = ""
    timestamp: datetime = Field(default_factory=_utcnow)
    is_valid: bool = False
    error: Optional[str] = None
    fallback_pid: Optional[str] = Field(
        default=None,
        description="PID actually read when the requested one is unsupported",
    )


# ---------------------------------------------------------------------------
# Telemetry sample
# ---------------------------------------------------------------------------


class OBDData(BaseModel):
    """One telemetry tick's decoded sensor fields."""

    timestamp: datetime = Field(default_factory=_utcnow)
    rpm: Optional[float] = None
    speed: Optional[float] = Field(default=None, description="km/h")
    engine_temp: Optional[float] = Field(default=None, description="Coolant, °C")
    maf: Optional[float] = Field(default=None, description="Mass air flow, g/s")
    map: Optional[float] = Field(default=None, description="Manifold pressure, kPa")
    throttle_position: Optional[float] = Field(default=None, description="%")
    fuel_level: Optional[float] = None
    engine_load: Optional[float] = None
    intake_air_temp: Optional[float] = None
    fuel_pressure: Optional[float] = None
    timing_advance: Optional[float] = None
    oxygen_sensor: Optional[float] = None
    short_fuel_trim: Optional[float] = None
    long_fuel_trim: Optional[float] = None
    barometric_pressure: Optional[float] = None
    ambient_air_temp: Optional[float] = None
    oil_temp: Optional[float] = None
    control_module_voltage: Optional[float] = None
    run_time: Optional[float] = None

    @property
    def has_air_flow(self) -> bool:
        return self.maf is not None or self.map is not None

    @property
    def is_complete(self) -> bool:
        """RPM, speed and at least one air-flow input are present."""
        return self.rpm is not None and self.speed is not None and self.has_air_flow

    def sensor_values(self) -> dict:
        """Non-empty sensor fields, without the timestamp."""
        return {
            k: v
            for k, v in self.model_dump(include=set(OBDData.model_fields)).items()
            if k != "timestamp" and v is not None
        }


class CalculatedData(BaseModel):
    instant_consumption: float = Field(default=0.0, description="L/100km")
    average_consumption: float = Field(default=0.0, description="L/100km")
    efficiency: float = Field(default=100.0, ge=0, le=100)
    co2_emission: float = Field(default=0.0, description="g/h")
    fuel_flow: float = Field(default=0.0, description="L/h")
    distance_to_empty: Optional[float] = Field(default=None, description="km")


class DataQuality(BaseModel):
    score: int = Field(default=100, ge=0, le=100)
    missing_pids: List[str] = Field(default_factory=list)
    estimated_values: List[str] = Field(default_factory=list)
    last_update: datetime = Field(default_factory=_utcnow)


class RealTimeData(OBDData):
    """A sample plus derived values, status and quality."""

    calculated: CalculatedData = Field(default_factory=CalculatedData)
    connection_status: ConnectionStatus = "connected"
    data_quality: DataQuality = Field(default_factory=DataQuality)


# ---------------------------------------------------------------------------
# Events, config, stats
# ---------------------------------------------------------------------------


class DrivingEvent(BaseModel):
    model_config = {"frozen": True}

    type: DrivingEventType
    severity: Severity
    value: float
    timestamp: datetime = Field(default_factory=_utcnow)
    context: str = ""


class TelemetryConfig(BaseModel):
    """Runtime-mutable engine configuration."""

    frequency: float = Field(default=1.5, gt=0, le=10, description="Hz")
    enabled_pids: List[str] = Field(
        default_factory=lambda: list(ESSENTIAL_PIDS)
    )
    fallback_enabled: bool = True
    quality_threshold: int = Field(default=70, ge=0, le=100)

    @field_validator("enabled_pids")
    @classmethod
    def validate_enabled_pids(cls, v: List[str]) -> List[str]:
        normalized: List[str] = []
        for pid in v:
            key = normalize_pid(pid)
            if key not in PID_CATALOG:
                raise ValueError(f"Unknown PID {pid!r} in enabled_pids")
            if key not in normalized:
                normalized.append(key)
        return normalized

    @property
    def interval_seconds(self) -> float:
        return 1.0 / self.frequency


class CollectionStats(BaseModel):
    total_collections: int = 0
    successful_collections: int = 0
    failed_collections: int = 0
    low_quality_collections: int = 0
    last_collection_time: Optional[datetime] = None
    average_collection_time: float = Field(default=0.0, description="ms, EMA")
    success_rate: float = Field(default=0.0, description="percent")
    is_running: bool = False
    current_frequency: float = 0.0
