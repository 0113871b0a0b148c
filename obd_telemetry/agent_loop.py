"""Main asyncio loop: connect, initialize, sample, reconnect."""

from __future__ import annotations

import asyncio
import signal
import sys
from pathlib import Path
from typing import IO, Optional

import structlog

from obd_telemetry.adapter import ProtocolAdapter
from obd_telemetry.config import TelemetrySettings
from obd_telemetry.engine import TelemetryEngine
from obd_telemetry.exceptions import TelemetryStartError
from obd_telemetry.schemas import DrivingEvent, RealTimeData
from obd_telemetry.transport.base import Transport

logger = structlog.get_logger(__name__)

_SUPERVISE_INTERVAL_SECONDS = 1.0


def create_transport(settings: TelemetrySettings) -> Transport:
    """Factory: return the right transport for the current config.

    ``SerialTransport`` is imported lazily so simulation mode works without
    pyserial installed.
    """
    if settings.is_simulation:
        from obd_telemetry.transport.simulation import SimulatedTransport

        return SimulatedTransport(scenario=settings.obd_sim_scenario)

    from obd_telemetry.transport.serial_port import SerialTransport

    return SerialTransport(
        port=settings.obd_port,
        baudrate=settings.obd_baudrate,
        timeout=settings.command_timeout_seconds,
    )


def create_adapter(transport: Transport, settings: TelemetrySettings) -> ProtocolAdapter:
    return ProtocolAdapter(
        transport,
        min_command_interval=settings.min_command_interval_ms / 1000,
        command_timeout=settings.command_timeout_seconds,
        reset_delay=settings.reset_delay_seconds,
    )


class JsonlSink:
    """Subscriber that appends every sample to a JSON Lines file."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._fh: Optional[IO[str]] = None

    def __call__(self, data: RealTimeData) -> None:
        if self._fh is None:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._fh = open(self._path, "a", encoding="utf-8")
        self._fh.write(data.model_dump_json() + "\n")
        self._fh.flush()

    def close(self) -> None:
        if self._fh is not None:
            self._fh.close()
            self._fh = None


async def run_agent(
    settings: TelemetrySettings,
    *,
    once: bool = False,
    duration: Optional[float] = None,
    output: Optional[Path] = None,
) -> None:
    """Run the telemetry loop.

    Parameters
    ----------
    settings:
        Fully-resolved telemetry configuration.
    once:
        If ``True``, collect a single sample then exit.
    duration:
        Stop after this many seconds of sampling (``None`` runs until a
        shutdown signal).
    output:
        Optional JSON Lines file receiving every published sample.
    """
    shutdown_event = asyncio.Event()

    # --- signal handling ---------------------------------------------------
    def _request_shutdown() -> None:
        logger.info("shutdown_requested")
        shutdown_event.set()

    loop = asyncio.get_running_loop()
    if sys.platform != "win32":
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, _request_shutdown)
    # On Windows, SIGINT is handled by the default KeyboardInterrupt.

    transport = create_transport(settings)
    sink = JsonlSink(output) if output is not None else None

    try:
        await _loop(
            transport,
            settings,
            shutdown_event,
            once=once,
            duration=duration,
            sink=sink,
        )
    finally:
        await transport.disconnect()
        if sink is not None:
            sink.close()


async def _loop(
    transport: Transport,
    settings: TelemetrySettings,
    shutdown_event: asyncio.Event,
    *,
    once: bool,
    duration: Optional[float],
    sink: Optional[JsonlSink],
) -> None:
    """Connect-initialize-sample cycle with auto-reconnect."""
    adapter = create_adapter(transport, settings)
    engine = TelemetryEngine.from_settings(adapter, settings)
    engine.on_data_update(_log_sample)
    engine.on_driving_event(_log_event)
    if sink is not None:
        engine.on_data_update(sink)

    loop = asyncio.get_running_loop()
    deadline = loop.time() + duration if duration is not None else None

    while not shutdown_event.is_set():
        # --- connect (or reconnect) and initialize -------------------------
        if not transport.is_connected() or not adapter.is_ready:
            try:
                if not transport.is_connected():
                    await transport.connect()
                    logger.info(
                        "transport_connected",
                        mode="simulation" if settings.is_simulation else "serial",
                        port=settings.obd_port,
                    )
                await adapter.initialize()
                info = await adapter.get_vehicle_info()
                logger.info("vehicle_info", **info)
            except Exception:
                logger.exception("adapter_setup_failed")
                if once:
                    return
                await _interruptible_sleep(
                    settings.reconnect_interval_seconds, shutdown_event
                )
                continue

        if once:
            await engine.collect_once()
            return

        # --- sample --------------------------------------------------------
        try:
            await engine.start()
        except TelemetryStartError:
            logger.exception("telemetry_start_failed")
            await _interruptible_sleep(
                settings.reconnect_interval_seconds, shutdown_event
            )
            continue

        try:
            while not shutdown_event.is_set():
                pause = _SUPERVISE_INTERVAL_SECONDS
                if deadline is not None:
                    remaining = deadline - loop.time()
                    if remaining <= 0:
                        logger.info("duration_elapsed", seconds=duration)
                        shutdown_event.set()
                        break
                    pause = min(pause, remaining)
                await _interruptible_sleep(pause, shutdown_event)
                if not transport.is_connected():
                    logger.warning("transport_lost", port=settings.obd_port)
                    break
        finally:
            await engine.stop()
            await engine.drain()


def _log_sample(data: RealTimeData) -> None:
    logger.info(
        "telemetry_sample",
        rpm=data.rpm,
        speed=data.speed,
        engine_temp=data.engine_temp,
        maf=data.maf,
        map=data.map,
        consumption=data.calculated.instant_consumption,
        quality=data.data_quality.score,
        status=data.connection_status,
    )


def _log_event(event: DrivingEvent) -> None:
    logger.info(
        "driving_event",
        type=event.type,
        severity=event.severity,
        value=event.value,
        context=event.context,
    )


async def _interruptible_sleep(
    seconds: float, event: asyncio.Event
) -> None:
    """Sleep for *seconds* but wake early if *event* is set."""
    try:
        await asyncio.wait_for(event.wait(), timeout=seconds)
    except asyncio.TimeoutError:
        pass
