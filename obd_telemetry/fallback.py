"""Estimation strategies for sample fields that could not be read.

Each field has an ordered list of :class:`Strategy` objects.  A strategy is
a pure function ``(known, cache) -> value | None`` where *known* holds the
fields already resolved this tick and *cache* the last-known-good values.
The first strategy that yields a value wins and is reported as a
``"<field>:<strategy>"`` tag.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Mapping, MutableMapping, Optional, Tuple

from obd_telemetry.calculations import (
    DEFAULT_ENGINE_DISPLACEMENT_L,
    DEFAULT_VOLUMETRIC_EFFICIENCY,
    estimate_maf_from_map,
    estimate_maf_from_rpm_throttle,
    estimate_map_from_maf,
)

Estimator = Callable[[Mapping[str, float], Mapping[str, float]], Optional[float]]

DEFAULT_IDLE_RPM = 800.0

PHYSICAL_DEFAULTS: Dict[str, float] = {
    "rpm": DEFAULT_IDLE_RPM,
    "speed": 0.0,
    "engine_temp": 90.0,
    "throttle_position": 0.0,
    "map": 100.0,
}

REQUIRED_FIELDS: Tuple[str, ...] = ("rpm", "speed", "engine_temp", "throttle_position")

AIR_FLOW_FIELDS: Tuple[str, ...] = ("maf", "map")


@dataclass(frozen=True)
class Strategy:
    name: str
    estimate: Estimator


def last_known(field: str) -> Strategy:
    return Strategy("last_known", lambda known, cache: cache.get(field))


def physical_default(field: str) -> Strategy:
    value = PHYSICAL_DEFAULTS[field]
    return Strategy("default", lambda known, cache: value)


def _resolution_order(field: str) -> int:
    # Air-flow estimators read rpm and throttle, so those resolve first.
    if field == "maf":
        return 1
    if field == "map":
        return 2
    return 0


class FallbackChain:
    """Per-field strategy lists bound to one engine model."""

    def __init__(
        self,
        *,
        displacement: float = DEFAULT_ENGINE_DISPLACEMENT_L,
        volumetric_efficiency: float = DEFAULT_VOLUMETRIC_EFFICIENCY,
        idle_rpm: float = DEFAULT_IDLE_RPM,
    ) -> None:
        self._displacement = displacement
        self._volumetric_efficiency = volumetric_efficiency
        self._idle_rpm = idle_rpm

        from_rpm_throttle = Strategy("from_rpm_throttle", self._maf_from_rpm_throttle)
        self._strategies: Dict[str, List[Strategy]] = {
            "maf": [
                Strategy("from_map", self._maf_from_map),
                last_known("maf"),
                from_rpm_throttle,
            ],
            "map": [
                Strategy("from_maf", self._map_from_maf),
                last_known("map"),
                physical_default("map"),
            ],
        }
        # Used when neither air-flow input survived the per-field pass.
        self._air_flow_chain: List[Tuple[str, Strategy]] = [
            ("maf", last_known("maf")),
            ("map", last_known("map")),
            ("maf", from_rpm_throttle),
        ]

    # -- strategy lookup ----------------------------------------------------

    def strategies_for(self, field: str) -> List[Strategy]:
        if field in self._strategies:
            return list(self._strategies[field])
        chain = [last_known(field)]
        if field in PHYSICAL_DEFAULTS:
            chain.append(physical_default(field))
        return chain

    def estimate(
        self,
        field: str,
        known: Mapping[str, float],
        cache: Mapping[str, float],
    ) -> Optional[Tuple[float, str]]:
        """Return ``(value, tag)`` from the first strategy that succeeds."""
        for strategy in self.strategies_for(field):
            value = strategy.estimate(known, cache)
            if value is not None:
                return value, f"{field}:{strategy.name}"
        return None

    # -- bulk resolution ----------------------------------------------------

    def fill_missing(
        self,
        known: MutableMapping[str, float],
        fields: Iterable[str],
        cache: Mapping[str, float],
    ) -> List[str]:
        """Estimate every field in *fields* absent from *known*, in place."""
        tags: List[str] = []
        for field in sorted(set(fields), key=lambda f: (_resolution_order(f), f)):
            if field in known:
                continue
            result = self.estimate(field, known, cache)
            if result is not None:
                known[field], tag = result
                tags.append(tag)
        return tags

    def ensure_required(
        self,
        known: MutableMapping[str, float],
        cache: Mapping[str, float],
    ) -> List[str]:
        """Fill rpm, speed, coolant temp, throttle and one air-flow input."""
        tags = self.fill_missing(known, REQUIRED_FIELDS, cache)
        if not any(field in known for field in AIR_FLOW_FIELDS):
            for field, strategy in self._air_flow_chain:
                value = strategy.estimate(known, cache)
                if value is not None:
                    known[field] = value
                    tags.append(f"{field}:{strategy.name}")
                    break
        return tags

    # -- estimators ---------------------------------------------------------

    def _rpm(self, known: Mapping[str, float]) -> float:
        return known.get("rpm", self._idle_rpm)

    def _maf_from_map(
        self, known: Mapping[str, float], cache: Mapping[str, float]
    ) -> Optional[float]:
        map_kpa = known.get("map")
        if map_kpa is None:
            return None
        return estimate_maf_from_map(
            map_kpa, self._rpm(known), self._displacement, self._volumetric_efficiency
        )

    def _map_from_maf(
        self, known: Mapping[str, float], cache: Mapping[str, float]
    ) -> Optional[float]:
        maf = known.get("maf")
        if maf is None:
            return None
        return estimate_map_from_maf(
            maf, self._rpm(known), self._displacement, self._volumetric_efficiency
        )

    def _maf_from_rpm_throttle(
        self, known: Mapping[str, float], cache: Mapping[str, float]
    ) -> Optional[float]:
        return estimate_maf_from_rpm_throttle(
            self._rpm(known), known.get("throttle_position", 0.0)
        )
