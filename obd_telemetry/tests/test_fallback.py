"""Tests for obd_telemetry.fallback -- estimation strategy chains."""

from __future__ import annotations

import pytest

from obd_telemetry.fallback import PHYSICAL_DEFAULTS, FallbackChain


@pytest.fixture()
def chain() -> FallbackChain:
    return FallbackChain()


def _names(chain: FallbackChain, field: str) -> list:
    return [s.name for s in chain.strategies_for(field)]


class TestStrategies:
    def test_air_flow_chains(self, chain: FallbackChain) -> None:
        assert _names(chain, "maf") == ["from_map", "last_known", "from_rpm_throttle"]
        assert _names(chain, "map") == ["from_maf", "last_known", "default"]

    def test_fields_with_physical_default(self, chain: FallbackChain) -> None:
        for field in ("rpm", "speed", "engine_temp", "throttle_position"):
            assert _names(chain, field) == ["last_known", "default"]

    def test_other_fields_only_reuse_last_value(self, chain: FallbackChain) -> None:
        assert _names(chain, "fuel_level") == ["last_known"]


class TestEstimate:
    def test_maf_from_map(self, chain: FallbackChain) -> None:
        assert chain.estimate("maf", {"map": 100.0, "rpm": 3000.0}, {}) == (
            4.25,
            "maf:from_map",
        )

    def test_maf_from_cache(self, chain: FallbackChain) -> None:
        assert chain.estimate("maf", {}, {"maf": 12.0}) == (12.0, "maf:last_known")

    def test_maf_from_rpm_and_throttle(self, chain: FallbackChain) -> None:
        known = {"rpm": 2000.0, "throttle_position": 50.0}
        assert chain.estimate("maf", known, {}) == (15.0, "maf:from_rpm_throttle")

    def test_maf_with_nothing_known_uses_idle(self, chain: FallbackChain) -> None:
        assert chain.estimate("maf", {}, {}) == (0.5, "maf:from_rpm_throttle")

    def test_map_from_maf(self, chain: FallbackChain) -> None:
        assert chain.estimate("map", {"maf": 4.25, "rpm": 3000.0}, {}) == (
            100.0,
            "map:from_maf",
        )

    def test_map_default(self, chain: FallbackChain) -> None:
        assert chain.estimate("map", {}, {}) == (100.0, "map:default")

    def test_rpm(self, chain: FallbackChain) -> None:
        assert chain.estimate("rpm", {}, {"rpm": 2100.0}) == (2100.0, "rpm:last_known")
        assert chain.estimate("rpm", {}, {}) == (
            PHYSICAL_DEFAULTS["rpm"],
            "rpm:default",
        )

    def test_no_strategy_applies(self, chain: FallbackChain) -> None:
        assert chain.estimate("fuel_level", {}, {}) is None

    def test_engine_model_is_configurable(self) -> None:
        chain = FallbackChain(displacement=4.0)
        value, _ = chain.estimate("maf", {"map": 100.0, "rpm": 3000.0}, {})
        assert value == 8.5


class TestFillMissing:
    def test_inputs_resolved_before_air_flow(self, chain: FallbackChain) -> None:
        known = {"rpm": 3000.0, "map": 100.0}
        tags = chain.fill_missing(known, ["maf", "throttle_position"], {})
        assert tags == ["throttle_position:default", "maf:from_map"]
        assert known["maf"] == 4.25
        assert known["throttle_position"] == 0.0

    def test_known_fields_untouched(self, chain: FallbackChain) -> None:
        known = {"rpm": 1500.0}
        assert chain.fill_missing(known, ["rpm"], {"rpm": 900.0}) == []
        assert known["rpm"] == 1500.0

    def test_unresolvable_field_left_out(self, chain: FallbackChain) -> None:
        known: dict = {}
        assert chain.fill_missing(known, ["fuel_level"], {}) == []
        assert "fuel_level" not in known


class TestEnsureRequired:
    def test_everything_missing(self, chain: FallbackChain) -> None:
        known: dict = {}
        tags = chain.ensure_required(known, {})
        assert tags == [
            "engine_temp:default",
            "rpm:default",
            "speed:default",
            "throttle_position:default",
            "maf:from_rpm_throttle",
        ]
        assert known == {
            "engine_temp": 90.0,
            "rpm": 800.0,
            "speed": 0.0,
            "throttle_position": 0.0,
            "maf": 0.5,
        }

    def test_cached_map_preferred(self, chain: FallbackChain) -> None:
        known = {"rpm": 2000.0, "speed": 30.0, "engine_temp": 88.0, "throttle_position": 15.0}
        tags = chain.ensure_required(known, {"map": 45.0})
        assert tags == ["map:last_known"]
        assert known["map"] == 45.0

    def test_complete_sample_needs_nothing(self, chain: FallbackChain) -> None:
        known = {
            "rpm": 2000.0,
            "speed": 30.0,
            "engine_temp": 88.0,
            "throttle_position": 15.0,
            "maf": 9.0,
        }
        assert chain.ensure_required(known, {}) == []
