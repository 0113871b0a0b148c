"""Tests for obd_telemetry.calculations -- fuel, efficiency and estimators."""

from __future__ import annotations

from typing import List, Optional

import pytest

from obd_telemetry.calculations import (
    calculate_average_consumption,
    calculate_co2_emission,
    calculate_consumption_per_100km,
    calculate_efficiency,
    calculate_fuel_consumption_from_maf,
    calculate_fuel_flow,
    convert_to_km_per_liter,
    estimate_distance_to_empty,
    estimate_fuel_consumption_from_map,
    estimate_maf_from_map,
    estimate_maf_from_rpm_throttle,
    estimate_map_from_maf,
    parse_vehicle_data,
    validate_vehicle_data,
)
from obd_telemetry.schemas import CalculatedData, OBDData, OBDResponse, RealTimeData

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _sample(**kwargs) -> OBDData:
    values = {"rpm": 2000.0, "speed": 50.0, "engine_temp": 90.0, "throttle_position": 20.0}
    values.update(kwargs)
    return OBDData(**values)


def _history(speeds: List[Optional[float]]) -> List[OBDData]:
    return [OBDData(speed=s) for s in speeds]


def _with_consumption(value: float) -> RealTimeData:
    return RealTimeData(calculated=CalculatedData(instant_consumption=value))


# ---------------------------------------------------------------------------
# Fuel flow and consumption
# ---------------------------------------------------------------------------


class TestFuel:
    def test_maf_to_litres_per_hour(self) -> None:
        assert calculate_fuel_consumption_from_maf(80.0) == 26.12

    def test_diesel_ratio(self) -> None:
        assert calculate_fuel_consumption_from_maf(80.0, "diesel") == 23.37

    def test_map_estimate(self) -> None:
        assert estimate_fuel_consumption_from_map(100.0, 2000.0, 2.0) == 11.33

    def test_fuel_flow_prefers_maf(self) -> None:
        assert calculate_fuel_flow(_sample(maf=80.0, map=100.0)) == 26.12

    def test_fuel_flow_from_map(self) -> None:
        assert calculate_fuel_flow(_sample(map=100.0)) == 11.33

    def test_fuel_flow_from_rpm_and_throttle(self) -> None:
        assert calculate_fuel_flow(_sample(throttle_position=50.0)) == 4.9

    def test_fuel_flow_without_inputs(self) -> None:
        assert calculate_fuel_flow(OBDData()) == 0.0

    def test_consumption_per_100km(self) -> None:
        assert calculate_consumption_per_100km(6.0, 60.0) == 10.0

    def test_consumption_when_stationary(self) -> None:
        assert calculate_consumption_per_100km(1.2, 0.0) == 0.0

    def test_km_per_litre(self) -> None:
        assert convert_to_km_per_liter(10.0) == 10.0
        assert convert_to_km_per_liter(0.0) == 0.0

    def test_co2_rate_from_fuel_flow(self) -> None:
        assert calculate_co2_emission(10.0) == 23100.0
        assert calculate_co2_emission(10.0, "diesel") == 26400.0
        assert calculate_co2_emission(0.0) == 0.0

    @pytest.mark.parametrize(
        "fuel_flow, speed", [(5.0, 50.0), (2.4, 90.0), (26.12, 80.0), (0.8, 15.0)]
    )
    def test_consumption_round_trip(self, fuel_flow: float, speed: float) -> None:
        km_per_litre = convert_to_km_per_liter(
            calculate_consumption_per_100km(fuel_flow, speed)
        )
        assert speed / km_per_litre == pytest.approx(fuel_flow, rel=1e-2)

    def test_average_consumption(self) -> None:
        history = [_with_consumption(10.0), _with_consumption(20.0)]
        assert calculate_average_consumption(history) == 15.0
        assert calculate_average_consumption([]) == 0.0

    def test_distance_to_empty(self) -> None:
        assert estimate_distance_to_empty(50.0, 50.0, 10.0) == 250.0
        assert estimate_distance_to_empty(None, 50.0, 10.0) is None
        assert estimate_distance_to_empty(50.0, 50.0, 0.0) is None


# ---------------------------------------------------------------------------
# Efficiency
# ---------------------------------------------------------------------------


class TestEfficiency:
    """calculate_efficiency starts at 100 and stays within [0, 100]."""

    def test_calm_driving(self) -> None:
        assert calculate_efficiency(_sample()) == 100.0

    def test_penalties_accumulate(self) -> None:
        sample = _sample(rpm=3500.0, throttle_position=80.0, engine_temp=105.0)
        assert calculate_efficiency(sample) == 60.0

    def test_idling(self) -> None:
        assert calculate_efficiency(_sample(speed=0.0, rpm=900.0)) == 90.0

    def test_erratic_speed(self) -> None:
        assert calculate_efficiency(_sample(speed=40.0), _history([10.0])) == 90.0

    def test_stable_speed_bonus(self) -> None:
        sample = _sample(rpm=3000.0)
        assert calculate_efficiency(sample, _history([50.0, 51.0, 52.0])) == 90.0

    def test_only_recent_window_counts(self) -> None:
        sample = _sample(rpm=3000.0)
        history = _history([0.0, 100.0, 50.0, 50.0, 50.0, 50.0])
        assert calculate_efficiency(sample, history) == 90.0

    def test_missing_speeds_are_skipped(self) -> None:
        assert calculate_efficiency(_sample(), _history([None, None])) == 100.0


# ---------------------------------------------------------------------------
# Air-flow estimators
# ---------------------------------------------------------------------------


class TestEstimators:
    def test_maf_from_map(self) -> None:
        assert estimate_maf_from_map(100.0, 3000.0) == 4.25

    def test_map_from_maf(self) -> None:
        assert estimate_map_from_maf(4.25, 3000.0) == 100.0

    def test_map_from_maf_needs_rpm(self) -> None:
        assert estimate_map_from_maf(4.25, 0.0) is None

    @pytest.mark.parametrize(
        "rpm, throttle, expected",
        [
            (0.0, 0.0, 0.5),
            (2000.0, 50.0, 15.0),
            (16000.0, 100.0, 200.0),
        ],
    )
    def test_maf_from_rpm_throttle(self, rpm: float, throttle: float, expected: float) -> None:
        assert estimate_maf_from_rpm_throttle(rpm, throttle) == expected


# ---------------------------------------------------------------------------
# Sample helpers
# ---------------------------------------------------------------------------


class TestValidateVehicleData:
    def test_plausible(self) -> None:
        result = validate_vehicle_data(_sample())
        assert result.is_valid
        assert result.warnings == []
        assert result.errors == []

    def test_impossible_rpm(self) -> None:
        result = validate_vehicle_data(_sample(rpm=9000.0))
        assert not result.is_valid
        assert "Invalid RPM" in result.errors[0]

    def test_warnings(self) -> None:
        assert validate_vehicle_data(_sample(rpm=6500.0)).warnings
        assert validate_vehicle_data(_sample(engine_temp=115.0)).warnings
        assert validate_vehicle_data(_sample(speed=0.0, rpm=1600.0)).warnings
        assert validate_vehicle_data(_sample(speed=50.0, rpm=700.0)).warnings
        assert validate_vehicle_data(_sample(engine_temp=50.0, rpm=1200.0)).warnings

    def test_impossible_temperature(self) -> None:
        assert not validate_vehicle_data(_sample(engine_temp=160.0)).is_valid


def test_parse_vehicle_data() -> None:
    responses = [
        OBDResponse(pid="010C", raw_value="1AF8", value=1726.0, is_valid=True),
        OBDResponse(pid="010D", raw_value="FF", value=None, is_valid=False),
        OBDResponse(
            pid="0110", raw_value="64", value=100.0, is_valid=True, fallback_pid="010B"
        ),
    ]
    sample = parse_vehicle_data(responses)
    assert sample.rpm == 1726.0
    assert sample.speed is None
    assert sample.map == 100.0
    assert sample.maf is None
