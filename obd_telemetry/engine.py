"""Telemetry collection engine.

Samples the enabled PIDs on a fixed timer, fills gaps through the fallback
chain, derives consumption figures, scores quality and fans the resulting
:class:`RealTimeData` out to subscribers.

Concurrency model
-----------------
One timer task spawns a tick task every ``1 / frequency`` seconds without
waiting for the previous tick.  Reads inside a tick are issued together
with ``asyncio.gather`` and the adapter's lock serializes them on the link.
A tick waits for its predecessor before publishing, so subscribers see
samples in tick start order.  ``stop()`` cancels the timer only; a tick
already in flight still publishes.
"""

from __future__ import annotations

import asyncio
from collections import deque
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Deque, Dict, List, Mapping, Optional, Set, Tuple, Union

import structlog

from obd_telemetry.adapter import ProtocolAdapter
from obd_telemetry.calculations import (
    DEFAULT_ENGINE_DISPLACEMENT_L,
    DEFAULT_VOLUMETRIC_EFFICIENCY,
    calculate_average_consumption,
    calculate_co2_emission,
    calculate_consumption_per_100km,
    calculate_efficiency,
    calculate_fuel_flow,
    estimate_distance_to_empty,
)
from obd_telemetry.config import EventThresholds, TelemetrySettings
from obd_telemetry.events import detect_driving_events
from obd_telemetry.exceptions import (
    AdapterNotReadyError,
    PIDError,
    TelemetryStartError,
    TransportError,
)
from obd_telemetry.fallback import PHYSICAL_DEFAULTS, FallbackChain
from obd_telemetry.pids import field_for_pid
from obd_telemetry.quality import assess_data_quality, degraded_quality
from obd_telemetry.schemas import (
    CalculatedData,
    CollectionStats,
    DrivingEvent,
    OBDData,
    RealTimeData,
    TelemetryConfig,
)

logger = structlog.get_logger(__name__)

DEFAULT_HISTORY_SIZE = 450  # 5 minutes at 1.5 Hz
AVERAGE_WINDOW_SECONDS = 60
_EMA_KEEP = 0.9

DataCallback = Callable[[RealTimeData], Any]
EventCallback = Callable[[DrivingEvent], Any]


class Subscription:
    """Handle returned by ``on_data_update`` / ``on_driving_event``.

    Calling the handle (or :meth:`unsubscribe`) removes the callback.  Safe
    to call more than once and from inside the callback itself.
    """

    def __init__(self, registry: List["Subscription"], callback: Callable[[Any], Any]) -> None:
        self._registry = registry
        self.callback = callback
        self.active = True
        registry.append(self)

    def unsubscribe(self) -> None:
        if not self.active:
            return
        self.active = False
        if self in self._registry:
            self._registry.remove(self)

    __call__ = unsubscribe


class _TickResult:
    """Outcome of one tick, held until it is this tick's turn to publish."""

    __slots__ = ("data", "direct", "degraded")

    def __init__(
        self,
        data: Optional[RealTimeData],
        direct: Mapping[str, float],
        degraded: bool,
    ) -> None:
        self.data = data
        self.direct = direct
        self.degraded = degraded


class TelemetryEngine:
    """Periodic sampler over a ready :class:`ProtocolAdapter`."""

    def __init__(
        self,
        adapter: ProtocolAdapter,
        config: Optional[TelemetryConfig] = None,
        *,
        history_size: int = DEFAULT_HISTORY_SIZE,
        thresholds: Optional[EventThresholds] = None,
        fuel_type: str = "gasoline",
        engine_displacement: float = DEFAULT_ENGINE_DISPLACEMENT_L,
        volumetric_efficiency: float = DEFAULT_VOLUMETRIC_EFFICIENCY,
        tank_capacity_liters: float = 50.0,
    ) -> None:
        self._adapter = adapter
        self._config = config or TelemetryConfig()
        self._thresholds = thresholds or EventThresholds()
        self._fuel_type = fuel_type
        self._engine_displacement = engine_displacement
        self._tank_capacity = tank_capacity_liters
        self._fallback = FallbackChain(
            displacement=engine_displacement,
            volumetric_efficiency=volumetric_efficiency,
        )

        self._history: Deque[RealTimeData] = deque(maxlen=history_size)
        self._current: Optional[RealTimeData] = None
        self._previous_sample: Optional[RealTimeData] = None
        self._last_known: Dict[str, float] = {}
        self._stats = CollectionStats()

        self._data_subscribers: List[Subscription] = []
        self._event_subscribers: List[Subscription] = []

        self._running = False
        self._generation = 0
        self._timer: Optional[asyncio.Task] = None
        self._last_tick: Optional[asyncio.Task] = None
        self._ticks: Set[asyncio.Task] = set()

    @classmethod
    def from_settings(
        cls, adapter: ProtocolAdapter, settings: TelemetrySettings
    ) -> "TelemetryEngine":
        return cls(
            adapter,
            settings.telemetry_config(),
            history_size=settings.history_size,
            thresholds=settings.event_thresholds(),
            fuel_type=settings.fuel_type,
            engine_displacement=settings.engine_displacement_l,
            volumetric_efficiency=settings.volumetric_efficiency,
            tank_capacity_liters=settings.tank_capacity_liters,
        )

    # -- lifecycle ----------------------------------------------------------

    async def start(
        self, config: Union[TelemetryConfig, Mapping[str, Any], None] = None
    ) -> None:
        """Merge *config*, validate connectivity, reset stats and arm the timer.

        Calling ``start`` while running is a no-op.  Raises
        ``TelemetryStartError`` when the adapter cannot reach the vehicle.
        """
        if self._running:
            logger.info("telemetry_already_running")
            return

        if config is not None:
            if isinstance(config, TelemetryConfig):
                changes = config.model_dump(exclude_unset=True)
            else:
                changes = dict(config)
            self._config = self._merge_config(changes)

        if not self._adapter.is_ready:
            raise TelemetryStartError(
                f"Adapter is {self._adapter.state.value}; initialize it before start()"
            )
        if not await self._adapter.validate_connection():
            raise TelemetryStartError("OBD connection validation failed")

        # Ticks left over from a previous run must not count against this one.
        await self.drain()
        self._stats = CollectionStats()
        self._running = True
        self._arm_timer()
        logger.info(
            "telemetry_started",
            frequency=self._config.frequency,
            enabled_pids=self._config.enabled_pids,
            fallback_enabled=self._config.fallback_enabled,
        )

    async def stop(self) -> None:
        """Disarm the timer.  Idempotent; in-flight ticks still publish."""
        if not self._running:
            return
        self._running = False
        self._generation += 1
        timer, self._timer = self._timer, None
        if timer is not None:
            timer.cancel()
            try:
                await timer
            except asyncio.CancelledError:
                pass
        stats = self.get_stats()
        logger.info(
            "telemetry_stopped",
            total=stats.total_collections,
            successful=stats.successful_collections,
            failed=stats.failed_collections,
            success_rate=stats.success_rate,
        )

    async def drain(self) -> None:
        """Wait until every tick already in flight has published."""
        while self._ticks:
            await asyncio.wait(set(self._ticks))

    def is_running(self) -> bool:
        return self._running

    def update_config(self, **changes: Any) -> TelemetryConfig:
        """Merge *changes* into the running config.

        A frequency change while running re-arms the timer; history and
        statistics are kept.
        """
        previous = self._config
        self._config = self._merge_config(changes)
        if self._running and self._config.frequency != previous.frequency:
            self._arm_timer()
            logger.info(
                "telemetry_frequency_changed",
                old=previous.frequency,
                new=self._config.frequency,
            )
        return self._config

    @property
    def config(self) -> TelemetryConfig:
        return self._config

    def _merge_config(self, changes: Mapping[str, Any]) -> TelemetryConfig:
        # model_copy(update=...) skips validation; rebuild instead.
        return TelemetryConfig.model_validate({**self._config.model_dump(), **changes})

    # -- queries ------------------------------------------------------------

    def get_stats(self) -> CollectionStats:
        stats = self._stats.model_copy()
        if stats.total_collections:
            stats.success_rate = round(
                stats.successful_collections / stats.total_collections * 100, 2
            )
        stats.is_running = self._running
        stats.current_frequency = self._config.frequency
        return stats

    def get_current_data(self) -> Optional[RealTimeData]:
        return self._current

    def get_data_history(self, seconds: Optional[float] = None) -> List[RealTimeData]:
        """Samples newer than *seconds* ago, oldest first (all when ``None``)."""
        if seconds is None:
            return list(self._history)
        cutoff = datetime.now(timezone.utc) - timedelta(seconds=seconds)
        return [d for d in self._history if d.timestamp > cutoff]

    # -- subscriptions ------------------------------------------------------

    def on_data_update(self, callback: DataCallback) -> Subscription:
        return Subscription(self._data_subscribers, callback)

    def on_driving_event(self, callback: EventCallback) -> Subscription:
        return Subscription(self._event_subscribers, callback)

    # -- collection ---------------------------------------------------------

    async def collect_once(self) -> Optional[RealTimeData]:
        """Run one tick now and return what it published."""
        return await self._spawn_tick()

    def _spawn_tick(self) -> asyncio.Task:
        previous = self._last_tick
        task = asyncio.create_task(self._tick(previous))
        self._last_tick = task
        self._ticks.add(task)
        task.add_done_callback(self._ticks.discard)
        return task

    async def _tick(self, previous: Optional[asyncio.Task]) -> Optional[RealTimeData]:
        loop = asyncio.get_running_loop()
        started = loop.time()
        config = self._config
        self._stats.total_collections += 1

        try:
            result = await self._collect(config)
        except (TransportError, AdapterNotReadyError) as exc:
            logger.warning("tick_failed", error=str(exc))
            result = self._fail_tick(config)
        except Exception:
            logger.exception("tick_failed_unexpectedly")
            result = self._fail_tick(config)
        elapsed_ms = (loop.time() - started) * 1000

        if previous is not None and not previous.done():
            await asyncio.wait({previous})

        self._publish(result, config)
        if not result.degraded:
            self._stats.successful_collections += 1
            if self._stats.average_collection_time == 0:
                self._stats.average_collection_time = elapsed_ms
            else:
                self._stats.average_collection_time = (
                    self._stats.average_collection_time * _EMA_KEEP
                    + elapsed_ms * (1 - _EMA_KEEP)
                )
        return result.data

    async def _collect(self, config: TelemetryConfig) -> _TickResult:
        timestamp = datetime.now(timezone.utc)
        direct, missing = await self._read_enabled(config.enabled_pids)

        known = dict(direct)
        estimated: List[str] = []
        if config.fallback_enabled:
            failed_fields = [f for f in map(field_for_pid, missing) if f is not None]
            estimated += self._fallback.fill_missing(known, failed_fields, self._last_known)
            estimated += self._fallback.ensure_required(known, self._last_known)

        sample = OBDData(timestamp=timestamp, **known)
        recent = self.get_data_history(AVERAGE_WINDOW_SECONDS)
        quality = assess_data_quality(
            sample,
            missing,
            estimated,
            fallback_enabled=config.fallback_enabled,
            timestamp=timestamp,
        )
        data = RealTimeData(
            **sample.model_dump(),
            calculated=self._calculate(sample, recent),
            connection_status=self._adapter.connection_status,
            data_quality=quality,
        )
        return _TickResult(data, direct, degraded=False)

    async def _read_enabled(self, pids: List[str]) -> Tuple[Dict[str, float], List[str]]:
        """Read every PID concurrently; return direct values and missing PIDs.

        Unrecoverable errors are re-raised only after every read settled.
        """
        results = await asyncio.gather(
            *(self._adapter.read_pid(pid) for pid in pids), return_exceptions=True
        )
        direct: Dict[str, float] = {}
        substituted: Dict[str, float] = {}
        missing: List[str] = []
        fatal: Optional[BaseException] = None

        for pid, result in zip(pids, results):
            if isinstance(result, BaseException):
                if isinstance(result, PIDError):
                    logger.warning("pid_read_failed", pid=pid, error=str(result))
                elif fatal is None:
                    fatal = result
                missing.append(pid)
                continue

            field = field_for_pid(pid)
            if not result.is_valid or result.value is None or field is None:
                logger.warning("pid_response_invalid", pid=pid, error=result.error)
                missing.append(pid)
                continue

            if result.fallback_pid:
                sub_field = field_for_pid(result.fallback_pid)
                if sub_field is not None:
                    substituted[sub_field] = result.value
                missing.append(pid)
            else:
                direct[field] = result.value

        if fatal is not None:
            raise fatal
        for sub_field, value in substituted.items():
            direct.setdefault(sub_field, value)
        return direct, missing

    def _calculate(self, sample: OBDData, recent: List[RealTimeData]) -> CalculatedData:
        fuel_flow = calculate_fuel_flow(
            sample, engine_size=self._engine_displacement, fuel_type=self._fuel_type
        )
        instant = calculate_consumption_per_100km(fuel_flow, sample.speed or 0)
        average = calculate_average_consumption(recent)
        return CalculatedData(
            instant_consumption=instant,
            average_consumption=average,
            efficiency=calculate_efficiency(sample, recent),
            co2_emission=calculate_co2_emission(fuel_flow, self._fuel_type),
            fuel_flow=fuel_flow,
            distance_to_empty=estimate_distance_to_empty(
                sample.fuel_level, self._tank_capacity, average or instant
            ),
        )

    def _fail_tick(self, config: TelemetryConfig) -> _TickResult:
        self._stats.failed_collections += 1
        if not config.fallback_enabled:
            return _TickResult(None, {}, degraded=True)
        return _TickResult(self._degraded_sample(config), {}, degraded=True)

    def _degraded_sample(self, config: TelemetryConfig) -> RealTimeData:
        timestamp = datetime.now(timezone.utc)
        if self._current is not None:
            values = self._current.sensor_values()
            calculated = self._current.calculated
        else:
            values = dict(PHYSICAL_DEFAULTS)
            calculated = CalculatedData()
        return RealTimeData(
            timestamp=timestamp,
            **values,
            calculated=calculated,
            connection_status="error",
            data_quality=degraded_quality(config.enabled_pids, timestamp),
        )

    # -- publication --------------------------------------------------------

    def _publish(self, result: _TickResult, config: TelemetryConfig) -> None:
        data = result.data
        if data is None:
            return
        self._current = data
        self._stats.last_collection_time = data.timestamp

        if not result.degraded:
            self._history.append(data)
            self._last_known.update(result.direct)
            if data.data_quality.score < config.quality_threshold:
                self._stats.low_quality_collections += 1
                logger.warning(
                    "low_data_quality",
                    score=data.data_quality.score,
                    threshold=config.quality_threshold,
                    missing=data.data_quality.missing_pids,
                    estimated=data.data_quality.estimated_values,
                )

        for sub in tuple(self._data_subscribers):
            if sub.active:
                _deliver(sub, data, "data")

        if not result.degraded:
            self._emit_events(data)

    def _emit_events(self, data: RealTimeData) -> None:
        previous, self._previous_sample = self._previous_sample, data
        elapsed_ms = 0.0
        if previous is not None:
            elapsed_ms = (data.timestamp - previous.timestamp).total_seconds() * 1000
        events = detect_driving_events(data, previous, elapsed_ms, self._thresholds)
        for event in events:
            for sub in tuple(self._event_subscribers):
                if sub.active:
                    _deliver(sub, event, "driving_event")

    # -- timer --------------------------------------------------------------

    def _arm_timer(self) -> None:
        self._generation += 1
        if self._timer is not None:
            self._timer.cancel()
        self._timer = asyncio.create_task(self._run_timer(self._generation))

    async def _run_timer(self, generation: int) -> None:
        loop = asyncio.get_running_loop()
        interval = self._config.interval_seconds
        next_at = loop.time() + interval
        while True:
            await asyncio.sleep(max(0.0, next_at - loop.time()))
            if not self._running or generation != self._generation:
                return
            self._spawn_tick()
            next_at += interval


def _deliver(sub: Subscription, payload: Any, kind: str) -> None:
    try:
        sub.callback(payload)
    except Exception:
        logger.exception("subscriber_failed", subscriber=kind)
