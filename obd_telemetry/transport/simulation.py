"""ELM327 emulator (no hardware required).

Loads scenarios from ``fixtures/elm327_scenarios.json`` and answers AT
commands, support bitmask queries and Mode 01/09 requests the way a real
adapter would.  Gaussian noise is applied to every PID read so
consecutive samples vary realistically.
"""

from __future__ import annotations

import asyncio
import json
import random
from pathlib import Path
from typing import Any, Dict, List, Optional

import structlog

from obd_telemetry.exceptions import NotConnectedError
from obd_telemetry.pids import SUPPORT_QUERIES, encode_value, get_pid_definition
from obd_telemetry.transport.base import Transport

logger = structlog.get_logger(__name__)

_FIXTURES_DIR = Path(__file__).resolve().parent.parent / "fixtures"

ELM_IDENTIFICATION = "ELM327 v1.5"
_PROTOCOL_NAMES = {
    "0": "AUTO",
    "1": "SAE J1850 PWM",
    "2": "SAE J1850 VPW",
    "3": "ISO 9141-2",
    "4": "ISO 14230-4 (KWP 5BAUD)",
    "5": "ISO 14230-4 (KWP FAST)",
    "6": "ISO 15765-4 (CAN 11/500)",
    "7": "ISO 15765-4 (CAN 29/500)",
    "8": "ISO 15765-4 (CAN 11/250)",
    "9": "ISO 15765-4 (CAN 29/250)",
}


class SimulatedTransport(Transport):
    """Answers adapter commands from a JSON fixture scenario."""

    def __init__(self, scenario: str = "city_drive") -> None:
        self._scenario_name = scenario
        self._scenario: Dict[str, Any] = {}
        self._connected = False
        self._protocol = "0"

    # -- lifecycle ----------------------------------------------------------

    async def connect(self) -> None:
        scenarios = _load_scenarios()
        if self._scenario_name not in scenarios:
            available = ", ".join(sorted(scenarios))
            raise ValueError(
                f"Unknown simulation scenario '{self._scenario_name}'. "
                f"Available: {available}"
            )
        self._scenario = scenarios[self._scenario_name]
        self._protocol = "0"
        self._connected = True
        logger.info("simulated_transport_connected", scenario=self._scenario_name)

    async def disconnect(self) -> None:
        self._connected = False

    def is_connected(self) -> bool:
        return self._connected

    # -- commands -----------------------------------------------------------

    async def send_command(self, command: str) -> str:
        if not self._connected:
            raise NotConnectedError()
        latency = self._scenario.get("latency_ms", 0)
        if latency:
            await asyncio.sleep(latency / 1000)

        cmd = command.strip().upper().replace(" ", "")
        if cmd.startswith("AT"):
            return self._answer_at(cmd[2:])
        if cmd == "0902":
            return self._answer_vin()
        if len(cmd) == 4 and cmd.startswith("01"):
            return self._answer_mode01(cmd)
        return "?"

    @property
    def supported_pids(self) -> List[str]:
        return sorted(self._scenario.get("pids", {}))

    # -- internal -----------------------------------------------------------

    def _answer_at(self, at: str) -> str:
        if at in ("Z", "WS"):
            self._protocol = "0"
            return ELM_IDENTIFICATION
        if at == "I":
            return ELM_IDENTIFICATION
        if at == "DPN":
            return self._detected_protocol()
        if at == "DP":
            return _PROTOCOL_NAMES.get(self._detected_protocol(), "AUTO")
        if at == "RV":
            return f"{self._scenario.get('battery_voltage', 12.6):.1f}V"
        if at.startswith("SP") and len(at) == 3:
            if at[2] not in _PROTOCOL_NAMES:
                return "?"
            self._protocol = at[2]
            return "OK"
        return "OK"

    def _detected_protocol(self) -> str:
        if self._protocol != "0":
            return self._protocol
        return str(self._scenario.get("protocol", "6"))

    def _answer_vin(self) -> str:
        vin = self._scenario.get("vin")
        if not vin:
            return "NO DATA"
        return "490201" + vin.encode("ascii").hex().upper()

    def _answer_mode01(self, cmd: str) -> str:
        for query, first in SUPPORT_QUERIES:
            if cmd == query:
                return self._answer_support(query, first)

        pid_def = self._scenario.get("pids", {}).get(cmd)
        definition = get_pid_definition(cmd)
        if pid_def is None or definition is None:
            return "NO DATA"
        value = _apply_noise(pid_def["base"], pid_def.get("noise", 0.0))
        value = max(definition.min_value, min(definition.max_value, value))
        return definition.response_header + encode_value(definition, value).hex().upper()

    def _answer_support(self, query: str, first: int) -> str:
        numbers = [int(pid[2:], 16) for pid in self._scenario.get("pids", {})]
        if first > 1 and not any(n >= first - 1 for n in numbers):
            return "NO DATA"
        mask = 0
        for n in numbers:
            if first <= n < first + 31:
                mask |= 1 << (31 - (n - first))
        # Last bit advertises the next range query.
        if any(n >= first + 31 for n in numbers):
            mask |= 1
        return "41" + query[2:] + f"{mask:08X}"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

_scenarios_cache: Optional[Dict[str, Any]] = None


def _load_scenarios() -> Dict[str, Any]:
    global _scenarios_cache
    if _scenarios_cache is None:
        path = _FIXTURES_DIR / "elm327_scenarios.json"
        with open(path, encoding="utf-8") as fh:
            _scenarios_cache = json.load(fh)
    return _scenarios_cache


def available_scenarios() -> List[str]:
    return sorted(_load_scenarios())


def _apply_noise(base: float, noise: float) -> float:
    """Apply Gaussian noise (std-dev = noise) to a base value."""
    if noise <= 0:
        return base
    return base + random.gauss(0, noise)
