"""Fuel, consumption, efficiency and emission math.

Everything here is a pure function of a sample and, where noted, recent
history.  Air-flow estimators share one fixed displacement /
volumetric-efficiency engine model.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence

import numpy as np

from obd_telemetry.pids import field_for_pid
from obd_telemetry.schemas import OBDData, OBDResponse, RealTimeData

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

AIR_FUEL_RATIOS: Dict[str, float] = {
    "gasoline": 14.7,
    "ethanol": 9.0,
    "diesel": 14.5,
}

FUEL_DENSITIES: Dict[str, float] = {  # g/L
    "gasoline": 750,
    "ethanol": 790,
    "diesel": 850,
}

CO2_PER_LITER: Dict[str, float] = {  # g/L burned
    "gasoline": 2310,
    "ethanol": 1510,
    "diesel": 2640,
}

DEFAULT_ENGINE_DISPLACEMENT_L = 2.0
DEFAULT_VOLUMETRIC_EFFICIENCY = 0.85
AIR_DENSITY_G_PER_L = 1.225

# (MAP kPa * RPM * L) -> g/s, four-stroke: one intake per two revolutions.
_MAP_MAF_DIVISOR = 120000.0

MIN_ESTIMATED_MAF = 0.5
MAX_ESTIMATED_MAF = 200.0

# Efficiency scoring
_EFFICIENT_RPM_MAX = 2500
_HEAVY_THROTTLE = 70
_HOT_ENGINE = 100
_IDLE_RPM = 800
_STABILITY_WINDOW = 5
_STABLE_SPEED_VARIATION = 5
_ERRATIC_SPEED_VARIATION = 20


# ---------------------------------------------------------------------------
# Fuel flow
# ---------------------------------------------------------------------------


def calculate_fuel_consumption_from_maf(
    maf: float, fuel_type: str = "gasoline"
) -> float:
    """Fuel flow in L/h from mass air flow in g/s."""
    fuel_grams_per_second = maf / AIR_FUEL_RATIOS[fuel_type]
    liters_per_hour = fuel_grams_per_second * 3600 / FUEL_DENSITIES[fuel_type]
    return round(liters_per_hour, 2)


def estimate_fuel_consumption_from_map(
    map_kpa: float,
    rpm: float,
    engine_size: float = DEFAULT_ENGINE_DISPLACEMENT_L,
    fuel_type: str = "gasoline",
) -> float:
    """Fuel flow in L/h from manifold pressure when no MAF is available."""
    volumetric_efficiency = min(DEFAULT_VOLUMETRIC_EFFICIENCY, map_kpa / 100)
    air_liters_per_minute = engine_size * rpm * volumetric_efficiency / 2
    air_grams_per_second = air_liters_per_minute * AIR_DENSITY_G_PER_L / 60
    return calculate_fuel_consumption_from_maf(air_grams_per_second, fuel_type)


def calculate_fuel_flow(
    sample: OBDData,
    *,
    engine_size: float = DEFAULT_ENGINE_DISPLACEMENT_L,
    fuel_type: str = "gasoline",
) -> float:
    """Fuel flow in L/h, preferring MAF, then MAP+RPM, then RPM+throttle."""
    if sample.maf is not None:
        return calculate_fuel_consumption_from_maf(sample.maf, fuel_type)
    if sample.map is not None and sample.rpm is not None:
        return estimate_fuel_consumption_from_map(
            sample.map, sample.rpm, engine_size, fuel_type
        )
    if sample.rpm is not None and sample.throttle_position is not None:
        maf = estimate_maf_from_rpm_throttle(sample.rpm, sample.throttle_position)
        return calculate_fuel_consumption_from_maf(maf, fuel_type)
    return 0.0


# ---------------------------------------------------------------------------
# Consumption
# ---------------------------------------------------------------------------


def calculate_consumption_per_100km(fuel_flow_lh: float, speed_kmh: float) -> float:
    """L/100km from fuel flow (L/h) and speed; 0 when stationary."""
    if speed_kmh <= 0:
        return 0.0
    return round(fuel_flow_lh * 100 / speed_kmh, 2)


def convert_to_km_per_liter(l_per_100km: float) -> float:
    if l_per_100km <= 0:
        return 0.0
    return round(100 / l_per_100km, 2)


def calculate_co2_emission(fuel_flow_lh: float, fuel_type: str = "gasoline") -> float:
    """CO2 rate in g/h for the given fuel flow.  Non-zero while idling."""
    return round(fuel_flow_lh * CO2_PER_LITER[fuel_type], 2)


def calculate_average_consumption(history: Sequence[RealTimeData]) -> float:
    if not history:
        return 0.0
    values = np.fromiter(
        (d.calculated.instant_consumption for d in history), dtype=float
    )
    return round(float(values.mean()), 2)


def estimate_distance_to_empty(
    fuel_level_pct: Optional[float],
    tank_capacity_liters: float,
    average_consumption: float,
) -> Optional[float]:
    """Remaining range in km, or ``None`` when it cannot be estimated."""
    if fuel_level_pct is None or average_consumption <= 0:
        return None
    liters_left = fuel_level_pct / 100 * tank_capacity_liters
    return round(liters_left / average_consumption * 100, 1)


# ---------------------------------------------------------------------------
# Efficiency
# ---------------------------------------------------------------------------


def calculate_efficiency(sample: OBDData, recent: Sequence[OBDData] = ()) -> float:
    """Driving efficiency score in ``[0, 100]``.

    Starts at 100 and is penalised for high RPM, heavy throttle, a hot engine
    and idling.  Speed variation (max - min) over the last five samples,
    including *sample*, gives a bonus when under 5 km/h and a penalty when
    over 20 km/h.
    """
    score = 100.0

    if sample.rpm is not None and sample.rpm > _EFFICIENT_RPM_MAX:
        score -= 15
    if sample.throttle_position is not None and sample.throttle_position > _HEAVY_THROTTLE:
        score -= 15
    if sample.engine_temp is not None and sample.engine_temp > _HOT_ENGINE:
        score -= 10
    if sample.speed == 0 and sample.rpm is not None and sample.rpm > _IDLE_RPM:
        score -= 10

    speeds = [d.speed for d in recent[-(_STABILITY_WINDOW - 1):] if d.speed is not None]
    if sample.speed is not None:
        speeds.append(sample.speed)
    if len(speeds) >= 2:
        variation = float(np.ptp(np.asarray(speeds, dtype=float)))
        if variation < _STABLE_SPEED_VARIATION:
            score += 5
        elif variation > _ERRATIC_SPEED_VARIATION:
            score -= 10

    return max(0.0, min(100.0, score))


# ---------------------------------------------------------------------------
# Air-flow estimators
# ---------------------------------------------------------------------------


def estimate_maf_from_map(
    map_kpa: float,
    rpm: float,
    displacement: float = DEFAULT_ENGINE_DISPLACEMENT_L,
    volumetric_efficiency: float = DEFAULT_VOLUMETRIC_EFFICIENCY,
) -> float:
    maf = map_kpa * rpm * displacement * volumetric_efficiency / _MAP_MAF_DIVISOR
    return round(maf, 2)


def estimate_map_from_maf(
    maf: float,
    rpm: float,
    displacement: float = DEFAULT_ENGINE_DISPLACEMENT_L,
    volumetric_efficiency: float = DEFAULT_VOLUMETRIC_EFFICIENCY,
) -> Optional[float]:
    if rpm <= 0:
        return None
    map_kpa = maf * _MAP_MAF_DIVISOR / (rpm * displacement * volumetric_efficiency)
    return round(map_kpa, 2)


def estimate_maf_from_rpm_throttle(rpm: float, throttle_position: float) -> float:
    """Coarse MAF guess, clamped to 0.5-200 g/s."""
    maf = (rpm / 1000) * (throttle_position / 100) * 15
    return round(max(MIN_ESTIMATED_MAF, min(maf, MAX_ESTIMATED_MAF)), 2)


# ---------------------------------------------------------------------------
# Sample helpers
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class VehicleDataValidation:
    is_valid: bool
    warnings: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)


def validate_vehicle_data(sample: OBDData) -> VehicleDataValidation:
    """Plausibility checks across fields of one sample."""
    warnings: List[str] = []
    errors: List[str] = []

    if sample.rpm is not None:
        if sample.rpm < 0 or sample.rpm > 8000:
            errors.append(f"Invalid RPM value: {sample.rpm}")
        elif sample.rpm > 6000:
            warnings.append(f"Very high RPM: {sample.rpm}")

    if sample.speed is not None:
        if sample.speed < 0 or sample.speed > 300:
            errors.append(f"Invalid speed value: {sample.speed}")
        elif sample.speed > 200:
            warnings.append(f"Very high speed: {sample.speed} km/h")

    if sample.engine_temp is not None:
        if sample.engine_temp < -40 or sample.engine_temp > 150:
            errors.append(f"Invalid engine temperature: {sample.engine_temp}°C")
        elif sample.engine_temp > 110:
            warnings.append(f"High engine temperature: {sample.engine_temp}°C")
        elif sample.engine_temp < 60 and sample.rpm is not None and sample.rpm > 1000:
            warnings.append(f"Engine may not be warmed up: {sample.engine_temp}°C")

    if sample.speed is not None and sample.rpm is not None:
        if sample.speed == 0 and sample.rpm > 1500:
            warnings.append(f"High RPM while stationary: {sample.rpm} rpm")
        if sample.speed > 10 and sample.rpm < 800:
            warnings.append(
                f"Low RPM while moving: {sample.rpm} rpm at {sample.speed} km/h"
            )

    return VehicleDataValidation(
        is_valid=not errors, warnings=warnings, errors=errors
    )


def parse_vehicle_data(responses: Iterable[OBDResponse]) -> OBDData:
    """Fold valid responses into a sample.

    A response served through a substitute PID fills the substitute's field.
    """
    values: Dict[str, float] = {}
    for response in responses:
        if not response.is_valid or response.value is None:
            continue
        name = field_for_pid(response.fallback_pid or response.pid)
        if name is not None:
            values.setdefault(name, response.value)
    return OBDData(**values)
