"""Data-quality scoring for one telemetry sample."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional, Sequence

from obd_telemetry.schemas import DataQuality, OBDData

PENALTY_MISSING_PID = 20
PENALTY_NO_AIR_FLOW = 30
PENALTY_ESTIMATED = 20
PENALTY_NO_RPM = 35
PENALTY_NO_SPEED = 25
PENALTY_FALLBACK_DISABLED = 15

DEGRADED_SCORE = 30
DEGRADED_TAG = "all_data"


def assess_data_quality(
    sample: OBDData,
    missing_pids: Sequence[str],
    estimated_values: Sequence[str],
    *,
    fallback_enabled: bool = True,
    timestamp: Optional[datetime] = None,
) -> DataQuality:
    """Score *sample* from 100 down, floored at 0.

    Parameters
    ----------
    sample:
        The final sample, after any estimation was applied.
    missing_pids:
        Enabled PIDs that produced no direct valid reading this tick.
    estimated_values:
        ``"<field>:<strategy>"`` tags for every estimated field.
    fallback_enabled:
        When ``False`` every missing PID costs an extra penalty.
    """
    score = 100
    score -= PENALTY_MISSING_PID * len(missing_pids)
    if sample.maf is None and sample.map is None:
        score -= PENALTY_NO_AIR_FLOW
    if estimated_values:
        score -= PENALTY_ESTIMATED
    if sample.rpm is None:
        score -= PENALTY_NO_RPM
    if sample.speed is None:
        score -= PENALTY_NO_SPEED
    if not fallback_enabled:
        score -= PENALTY_FALLBACK_DISABLED * len(missing_pids)

    return DataQuality(
        score=max(0, score),
        missing_pids=list(missing_pids),
        estimated_values=list(estimated_values),
        last_update=timestamp or datetime.now(timezone.utc),
    )


def degraded_quality(
    enabled_pids: Sequence[str], timestamp: Optional[datetime] = None
) -> DataQuality:
    """Quality attached to a sample synthesized after a failed tick."""
    return DataQuality(
        score=DEGRADED_SCORE,
        missing_pids=list(enabled_pids),
        estimated_values=[DEGRADED_TAG],
        last_update=timestamp or datetime.now(timezone.utc),
    )
