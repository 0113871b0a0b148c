"""CLI entry point: ``python -m obd_telemetry [--once] [--duration S] [--output FILE] [--scenario NAME]``."""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

import structlog


def _configure_logging(level: str, fmt: str) -> None:
    """Set up structlog with console or JSON rendering."""
    import logging

    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, level.upper(), logging.INFO),
        stream=sys.stderr,
    )

    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if fmt == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="obd_telemetry",
        description="OBD-II real-time telemetry collector for ELM327 adapters",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        default=False,
        help="Collect a single sample then exit",
    )
    parser.add_argument(
        "--duration",
        type=float,
        default=None,
        metavar="SECONDS",
        help="Stop after sampling for this many seconds",
    )
    parser.add_argument(
        "--output",
        type=Path,
        default=None,
        metavar="FILE",
        help="Append every sample to FILE as JSON Lines",
    )
    parser.add_argument(
        "--scenario",
        default=None,
        help="Simulation scenario (overrides OBD_SIM_SCENARIO)",
    )
    args = parser.parse_args()

    # Load settings from env / .env file first, then override with CLI flags.
    from obd_telemetry.config import TelemetrySettings

    settings = TelemetrySettings()
    if args.scenario:
        settings.obd_sim_scenario = args.scenario

    _configure_logging(settings.log_level, settings.log_format)

    logger = structlog.get_logger("obd_telemetry")
    logger.info(
        "telemetry_agent_starting",
        version=__import__("obd_telemetry").__version__,
        mode="simulation" if settings.is_simulation else "serial",
        port=settings.obd_port,
        scenario=settings.obd_sim_scenario if settings.is_simulation else None,
        frequency=settings.sampling_frequency_hz,
        once=args.once,
        duration=args.duration,
    )

    from obd_telemetry.agent_loop import run_agent

    try:
        asyncio.run(
            run_agent(
                settings,
                once=args.once,
                duration=args.duration,
                output=args.output,
            )
        )
    except KeyboardInterrupt:
        logger.info("telemetry_agent_interrupted")
        sys.exit(0)


if __name__ == "__main__":
    main()
