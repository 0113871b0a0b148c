"""Tests for obd_telemetry.transport.simulation -- SimulatedTransport."""

from __future__ import annotations

import pytest

from obd_telemetry.adapter import OBDProtocol, ProtocolAdapter, parse_vin
from obd_telemetry.engine import TelemetryEngine
from obd_telemetry.exceptions import NotConnectedError
from obd_telemetry.transport import simulation
from obd_telemetry.transport.simulation import SimulatedTransport, available_scenarios


@pytest.fixture()
def no_noise(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(simulation.random, "gauss", lambda mu, sigma: 0.0)


async def _connected(scenario: str = "city_drive") -> SimulatedTransport:
    transport = SimulatedTransport(scenario=scenario)
    await transport.connect()
    return transport


def _adapter(transport: SimulatedTransport) -> ProtocolAdapter:
    return ProtocolAdapter(transport, min_command_interval=0, reset_delay=0)


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_connect_disconnect_lifecycle() -> None:
    transport = SimulatedTransport(scenario="idle")
    assert not transport.is_connected()

    await transport.connect()
    assert transport.is_connected()

    await transport.disconnect()
    assert not transport.is_connected()


@pytest.mark.asyncio
async def test_unknown_scenario_raises() -> None:
    transport = SimulatedTransport(scenario="nonexistent")
    with pytest.raises(ValueError, match="Unknown simulation scenario"):
        await transport.connect()


@pytest.mark.asyncio
async def test_send_requires_connection() -> None:
    with pytest.raises(NotConnectedError):
        await SimulatedTransport().send_command("ATZ")


def test_available_scenarios() -> None:
    assert available_scenarios() == [
        "city_drive", "highway", "idle", "no_maf", "overheating",
    ]
    assert simulation._scenarios_cache is not None


# ---------------------------------------------------------------------------
# AT commands
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_identification_and_settings() -> None:
    transport = await _connected()
    assert await transport.send_command("ATZ") == "ELM327 v1.5"
    assert await transport.send_command("ATE0") == "OK"
    assert await transport.send_command("AT ST 32") == "OK"
    assert await transport.send_command("ATRV") == "14.1V"


@pytest.mark.asyncio
async def test_protocol_selection() -> None:
    transport = await _connected()
    assert await transport.send_command("ATDPN") == "6"
    assert await transport.send_command("ATDP") == "ISO 15765-4 (CAN 11/500)"

    assert await transport.send_command("ATSP3") == "OK"
    assert await transport.send_command("ATDPN") == "3"
    assert await transport.send_command("ATSPX") == "?"

    await transport.send_command("ATZ")
    assert await transport.send_command("ATDPN") == "6"


# ---------------------------------------------------------------------------
# Mode 01 / 09
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_vin() -> None:
    transport = await _connected()
    assert parse_vin(await transport.send_command("0902")) == "1HGCM82633A004352"

    no_vin = await _connected("no_maf")
    assert await no_vin.send_command("0902") == "NO DATA"


@pytest.mark.asyncio
async def test_support_masks_chain_ranges() -> None:
    transport = await _connected("idle")
    first = await transport.send_command("0100")
    assert first.startswith("4100")
    # 012F is in the next range, so the last bit is set.
    assert int(first[4:], 16) & 1 == 1

    second = await transport.send_command("0120")
    assert int(second[4:], 16) & (1 << (31 - (0x2F - 0x21)))
    assert await transport.send_command("0140") == "NO DATA"


@pytest.mark.asyncio
async def test_encoded_values(no_noise: None) -> None:
    transport = await _connected("idle")
    assert await transport.send_command("010C") == "410C0C30"  # 780 rpm
    assert await transport.send_command("010D") == "410D00"
    assert await transport.send_command("0105") == "41057D"  # 85 °C


@pytest.mark.asyncio
async def test_values_clamped_to_pid_range(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(simulation.random, "gauss", lambda mu, sigma: 1000.0)
    transport = await _connected("highway")
    assert await transport.send_command("010D") == "410DFF"


@pytest.mark.asyncio
async def test_unknown_requests() -> None:
    transport = await _connected("no_maf")
    assert await transport.send_command("0110") == "NO DATA"
    assert await transport.send_command("03") == "?"
    assert "0110" not in transport.supported_pids


@pytest.mark.asyncio
async def test_noise_varies_between_reads() -> None:
    transport = await _connected()
    replies = {await transport.send_command("010C") for _ in range(20)}
    assert len(replies) > 1


# ---------------------------------------------------------------------------
# Full stack over the emulator
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_adapter_initializes_against_emulator() -> None:
    transport = await _connected()
    adapter = _adapter(transport)
    await adapter.initialize()

    assert adapter.protocol is OBDProtocol.CAN_11BIT_500K
    assert set(adapter.get_supported_pids()) == set(transport.supported_pids)
    info = await adapter.get_vehicle_info()
    assert info["vin"] == "1HGCM82633A004352"


@pytest.mark.asyncio
async def test_missing_maf_read_through_map(no_noise: None) -> None:
    transport = await _connected("no_maf")
    adapter = _adapter(transport)
    await adapter.initialize()

    assert adapter.protocol is OBDProtocol.ISO_9141_2
    assert not adapter.is_pid_supported("0110")
    response = await adapter.read_pid("0110")
    assert response.fallback_pid == "010B"
    assert response.value == 55.0


@pytest.mark.asyncio
async def test_overheating_scenario_raises_events(no_noise: None) -> None:
    transport = await _connected("overheating")
    adapter = _adapter(transport)
    await adapter.initialize()
    engine = TelemetryEngine(adapter)
    events = []
    engine.on_driving_event(events.append)

    data = await engine.collect_once()

    assert data.engine_temp == 113.0
    assert data.data_quality.score == 100
    assert {(e.type, e.severity) for e in events} >= {
        ("high_temp", "high"),
        ("high_rpm", "high"),
    }
