"""Telemetry configuration via environment variables.

Uses pydantic-settings so every field can be overridden with an env var.
Simulation is the zero-hardware default.

Note: ``env_prefix`` is empty, so field names map directly to env vars
(e.g. ``SAMPLING_FREQUENCY_HZ``, ``FALLBACK_ENABLED``).  List fields such as
``ENABLED_PIDS`` are read as JSON (``'["010C", "010D"]'``).
"""

from __future__ import annotations

from typing import List, Literal

from pydantic import Field
from pydantic_settings import BaseSettings

from obd_telemetry.pids import ESSENTIAL_PIDS
from obd_telemetry.schemas import TelemetryConfig

FuelType = Literal["gasoline", "ethanol", "diesel"]


class EventThresholds(BaseSettings):
    """Cutoffs used by :func:`obd_telemetry.events.detect_driving_events`.

    All comparisons are strict (``>`` / ``<``).
    """

    model_config = {"env_prefix": "EVENT_", "extra": "ignore"}

    high_rpm: float = 3000
    very_high_rpm: float = 4000
    high_temp: float = 100
    critical_temp: float = 110
    harsh_acceleration: float = Field(default=8, description="km/h/s")
    harsh_acceleration_high: float = Field(default=12, description="km/h/s")
    harsh_braking: float = Field(default=-8, description="km/h/s")
    harsh_braking_high: float = Field(default=-15, description="km/h/s")
    idle_rpm: float = 500
    speed_limit: float = Field(default=60, description="km/h")
    speeding_high: float = Field(default=80, description="km/h")
    high_engine_load: float = 80
    excessive_engine_load: float = 95


class TelemetrySettings(BaseSettings):
    """Telemetry runtime settings."""

    model_config = {"env_prefix": "", "env_file": ".env", "extra": "ignore"}

    # -- adapter / transport ------------------------------------------------
    obd_port: str = Field(
        default="sim",
        description="Serial port for ELM327, or 'sim' for simulation mode",
    )
    obd_baudrate: int = Field(default=38400, description="Serial baud rate")
    obd_sim_scenario: str = Field(
        default="city_drive",
        description="Simulation scenario name (from elm327_scenarios.json)",
    )
    command_timeout_seconds: float = Field(
        default=2.0,
        description="Max wait for one adapter reply",
    )
    min_command_interval_ms: float = Field(
        default=100,
        description="Minimum spacing between PID reads on the link",
    )
    reset_delay_seconds: float = Field(
        default=1.0,
        description="Pause after ATZ while the adapter reboots",
    )
    reconnect_interval_seconds: float = Field(
        default=5.0,
        description="Delay between connect/initialize attempts",
    )

    # -- sampling -----------------------------------------------------------
    sampling_frequency_hz: float = Field(default=1.5, gt=0, le=10)
    enabled_pids: List[str] = Field(default_factory=lambda: list(ESSENTIAL_PIDS))
    fallback_enabled: bool = True
    quality_threshold: int = Field(default=70, ge=0, le=100)
    history_size: int = Field(
        default=450,
        description="Samples kept in memory (5 minutes at 1.5 Hz)",
    )

    # -- vehicle model ------------------------------------------------------
    engine_displacement_l: float = 2.0
    volumetric_efficiency: float = 0.85
    fuel_type: FuelType = "gasoline"
    tank_capacity_liters: float = 50.0

    # -- events -------------------------------------------------------------
    speed_limit_kmh: float = 60
    speeding_high_kmh: float = 80
    idle_event_rpm: float = 500

    # -- behaviour ----------------------------------------------------------
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: str = Field(
        default="console",
        description="Log output format: 'console' or 'json'",
    )

    # -- derived ------------------------------------------------------------
    @property
    def is_simulation(self) -> bool:
        """Return ``True`` when running against the simulated adapter."""
        return self.obd_port.strip().lower() == "sim"

    def telemetry_config(self) -> TelemetryConfig:
        return TelemetryConfig(
            frequency=self.sampling_frequency_hz,
            enabled_pids=list(self.enabled_pids),
            fallback_enabled=self.fallback_enabled,
            quality_threshold=self.quality_threshold,
        )

    def event_thresholds(self) -> EventThresholds:
        """Event cutoffs.  ``EVENT_*`` env vars apply unless overridden here."""
        overrides = {
            "speed_limit": "speed_limit_kmh",
            "speeding_high": "speeding_high_kmh",
            "idle_rpm": "idle_event_rpm",
        }
        return EventThresholds(
            **{
                threshold: getattr(self, setting)
                for threshold, setting in overrides.items()
                if setting in self.model_fields_set
            }
        )
