"""Shared pytest fixtures for telemetry tests."""

from __future__ import annotations

import asyncio
from typing import AsyncGenerator, Callable, Dict, Generator, List, Optional

import pytest
import pytest_asyncio

from obd_telemetry.adapter import ProtocolAdapter
from obd_telemetry.exceptions import NotConnectedError
from obd_telemetry.transport.base import Transport

# Reply table of a healthy ELM327 on a CAN vehicle.
DEFAULT_REPLIES: Dict[str, str] = {
    "ATZ": "ELM327 v1.5",
    "ATE0": "OK",
    "ATL0": "OK",
    "ATS0": "OK",
    "ATH0": "OK",
    "ATST32": "OK",
    "ATAT1": "OK",
    "ATSP0": "OK",
    "ATSP6": "OK",
    "ATDPN": "6",
    "ATDP": "ISO 15765-4 (CAN 11/500)",
    # Support bitmasks.  MAF (0110) is not advertised and is only found by
    # the individual essential-PID probe.
    "0100": "4100BE3EA813",
    "0120": "412098180001",
    "0140": "414040000000",
    "010C": "410C1AF8",  # 1726 rpm
    "010D": "410D50",  # 80 km/h
    "0105": "410550",  # 40 °C
    "0110": "41101F40",  # 80.00 g/s
    "010B": "410B64",  # 100 kPa
    "0111": "411180",  # 50.2 %
    "0104": "410480",  # 50.2 %
    "0902": "4902014A484D424D4F434B56494E313233",
}


class FakeTransport(Transport):
    """Scripted in-memory adapter link.

    Unknown commands answer ``NO DATA``.  ``errors`` maps a command to an
    exception raised instead of replying; ``delays`` adds latency per
    command.
    """

    def __init__(
        self,
        replies: Optional[Dict[str, str]] = None,
        *,
        connected: bool = True,
    ) -> None:
        self.replies: Dict[str, str] = dict(DEFAULT_REPLIES)
        if replies:
            self.replies.update(replies)
        self.errors: Dict[str, BaseException] = {}
        self.delays: Dict[str, float] = {}
        self.sent: List[str] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self._connected = connected

    async def connect(self) -> None:
        self._connected = True

    async def disconnect(self) -> None:
        self._connected = False

    def is_connected(self) -> bool:
        return self._connected

    async def send_command(self, command: str) -> str:
        if not self._connected:
            raise NotConnectedError()
        self.sent.append(command)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            delay = self.delays.get(command, 0.0)
            if delay:
                await asyncio.sleep(delay)
            if command in self.errors:
                raise self.errors[command]
            return self.replies.get(command, "NO DATA")
        finally:
            self.in_flight -= 1


def make_adapter(transport: Transport, **kwargs: float) -> ProtocolAdapter:
    """Adapter with pacing and reset delay disabled unless overridden."""
    options = {"min_command_interval": 0.0, "reset_delay": 0.0, "command_timeout": 1.0}
    options.update(kwargs)
    return ProtocolAdapter(transport, **options)


@pytest.fixture(autouse=True)
def _reset_scenario_cache() -> Generator[None, None, None]:
    """Clear the simulation scenario cache between tests."""
    from obd_telemetry.transport import simulation

    simulation._scenarios_cache = None
    yield
    simulation._scenarios_cache = None


@pytest.fixture()
def transport_factory() -> Callable[..., FakeTransport]:
    """Build a :class:`FakeTransport` with extra or overridden replies."""
    return FakeTransport


@pytest.fixture()
def adapter_factory() -> Callable[..., ProtocolAdapter]:
    return make_adapter


@pytest.fixture()
def fake_transport() -> FakeTransport:
    return FakeTransport()


@pytest_asyncio.fixture()
async def ready_adapter(fake_transport: FakeTransport) -> AsyncGenerator[ProtocolAdapter, None]:
    """An adapter initialized against the default reply table."""
    adapter = make_adapter(fake_transport)
    await adapter.initialize()
    yield adapter
