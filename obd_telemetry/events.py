"""Driving event detection over a pair of consecutive samples.

Every rule is evaluated on every call and rules are independent, so one
sample can raise several events.  Nothing is remembered between calls;
suppressing repeats is left to whoever aggregates trips.
"""

from __future__ import annotations

from typing import List, Optional

import structlog

from obd_telemetry.config import EventThresholds
from obd_telemetry.schemas import DrivingEvent, OBDData

logger = structlog.get_logger(__name__)


def detect_driving_events(
    current: OBDData,
    previous: Optional[OBDData] = None,
    elapsed_ms: float = 1000,
    thresholds: Optional[EventThresholds] = None,
) -> List[DrivingEvent]:
    """Return the events raised by *current* (and the delta from *previous*).

    Severity bands use strict comparisons and the highest band met wins:

    * ``high_rpm``: > 3000 medium, > 4000 high
    * ``high_temp``: > 100 °C medium, > 110 °C high
    * ``harsh_acceleration``: > 8 km/h/s medium, > 12 km/h/s high
    * ``harsh_braking``: < -8 km/h/s medium, < -15 km/h/s high; value is the magnitude
    * ``idle_time``: speed 0 and rpm > 500, always low
    * ``speeding``: > limit medium, > high limit high
    * ``engine_load_high``: > 80 % medium, > 95 % high
    """
    t = thresholds or EventThresholds()
    ts = current.timestamp
    events: List[DrivingEvent] = []

    if current.rpm is not None and current.rpm > t.high_rpm:
        events.append(
            DrivingEvent(
                type="high_rpm",
                severity="high" if current.rpm > t.very_high_rpm else "medium",
                value=current.rpm,
                timestamp=ts,
                context=f"Engine speed {current.rpm:.0f} rpm",
            )
        )

    if current.engine_temp is not None and current.engine_temp > t.high_temp:
        events.append(
            DrivingEvent(
                type="high_temp",
                severity="high" if current.engine_temp > t.critical_temp else "medium",
                value=current.engine_temp,
                timestamp=ts,
                context=f"Coolant temperature {current.engine_temp:.0f}°C",
            )
        )

    if (
        previous is not None
        and previous.speed is not None
        and current.speed is not None
        and elapsed_ms > 0
    ):
        rate = (current.speed - previous.speed) / (elapsed_ms / 1000)
        if rate > t.harsh_acceleration:
            events.append(
                DrivingEvent(
                    type="harsh_acceleration",
                    severity="high" if rate > t.harsh_acceleration_high else "medium",
                    value=round(rate, 2),
                    timestamp=ts,
                    context=f"{previous.speed:.0f} -> {current.speed:.0f} km/h",
                )
            )
        elif rate < t.harsh_braking:
            events.append(
                DrivingEvent(
                    type="harsh_braking",
                    severity="high" if rate < t.harsh_braking_high else "medium",
                    value=round(abs(rate), 2),
                    timestamp=ts,
                    context=f"{previous.speed:.0f} -> {current.speed:.0f} km/h",
                )
            )

    if current.speed == 0 and current.rpm is not None and current.rpm > t.idle_rpm:
        events.append(
            DrivingEvent(
                type="idle_time",
                severity="low",
                value=current.rpm,
                timestamp=ts,
                context="Idling while stationary",
            )
        )

    if current.speed is not None and current.speed > t.speed_limit:
        events.append(
            DrivingEvent(
                type="speeding",
                severity="high" if current.speed > t.speeding_high else "medium",
                value=current.speed,
                timestamp=ts,
                context=f"{current.speed:.0f} km/h over {t.speed_limit:.0f} km/h limit",
            )
        )

    if current.engine_load is not None and current.engine_load > t.high_engine_load:
        events.append(
            DrivingEvent(
                type="engine_load_high",
                severity=(
                    "high" if current.engine_load > t.excessive_engine_load else "medium"
                ),
                value=current.engine_load,
                timestamp=ts,
                context=f"Engine load {current.engine_load:.0f}%",
            )
        )

    if events:
        logger.debug("driving_events_detected", types=[e.type for e in events])
    return events
