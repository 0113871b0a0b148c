"""ELM327 protocol adapter.

Turns the text command channel of a :class:`~obd_telemetry.transport.Transport`
into typed Mode 01 reads.  The adapter owns the PID support map for its
vehicle; the catalog in :mod:`obd_telemetry.pids` is shared and read-only.

Lifecycle::

    UNINITIALIZED -> RESETTING -> CONFIGURING -> DETECTING_PROTOCOL
                  -> DISCOVERING_PIDS -> READY

Any failing stage moves the adapter to ``FAILED``.  ``initialize()`` may be
called again from any state.
"""

from __future__ import annotations

import asyncio
import re
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Iterable, List, Optional, Union

import structlog

from obd_telemetry.exceptions import (
    AdapterNotReadyError,
    InitializationError,
    NotConnectedError,
    OBDError,
    PIDError,
    PIDNotSupportedError,
    PIDReadError,
    ResponseFormatError,
    TransportError,
)
from obd_telemetry.pids import (
    COMMON_PIDS,
    ESSENTIAL_PIDS,
    FALLBACK_PIDS,
    PID_CATALOG,
    SUPPORT_QUERIES,
    PIDDefinition,
    decode_payload,
    get_pid_definition,
    normalize_pid,
    parse_hex_bytes,
)
from obd_telemetry.schemas import ConnectionStatus, OBDResponse, PIDSupportRecord
from obd_telemetry.transport.base import Transport

logger = structlog.get_logger(__name__)

_TIMEOUTS = (asyncio.TimeoutError, TimeoutError)

ELM_IDENTIFICATION = "ELM327"

# Echo off, line feeds off, spaces off, headers off, ~200 ms timeout,
# adaptive timing.
CONFIG_SEQUENCE = ("ATE0", "ATL0", "ATS0", "ATH0", "ATST32", "ATAT1")

# Most specific first so the reported pattern names the real condition.
ERROR_PATTERNS = (
    "NO DATA",
    "UNABLE TO CONNECT",
    "BUS ERROR",
    "BUS BUSY",
    "CAN ERROR",
    "FB ERROR",
    "DATA ERROR",
    "BUFFER FULL",
    "STOPPED",
    "ERROR",
)

_SEARCHING = "SEARCHING..."
_FRAME_INDEX = re.compile(r"^[0-9A-F]:")
_WHITESPACE = re.compile(r"\s+")


class AdapterState(str, Enum):
    UNINITIALIZED = "uninitialized"
    RESETTING = "resetting"
    CONFIGURING = "configuring"
    DETECTING_PROTOCOL = "detecting_protocol"
    DISCOVERING_PIDS = "discovering_pids"
    READY = "ready"
    FAILED = "failed"


_INIT_STATES = (
    AdapterState.RESETTING,
    AdapterState.CONFIGURING,
    AdapterState.DETECTING_PROTOCOL,
    AdapterState.DISCOVERING_PIDS,
)


class OBDProtocol(str, Enum):
    """ELM327 protocol numbers as used by ``ATSPn`` / ``ATDPN``."""

    AUTO = "0"
    SAE_J1850_PWM = "1"
    SAE_J1850_VPW = "2"
    ISO_9141_2 = "3"
    KWP2000_5_BAUD = "4"
    KWP2000_FAST = "5"
    CAN_11BIT_500K = "6"
    CAN_29BIT_500K = "7"
    CAN_11BIT_250K = "8"
    CAN_29BIT_250K = "9"

    @property
    def command(self) -> str:
        return "ATSP" + self.value

    @classmethod
    def parse(cls, value: Union["OBDProtocol", str]) -> "OBDProtocol":
        """Accept a member, its name (``"CAN_11BIT_500K"``) or its number."""
        if isinstance(value, cls):
            return value
        key = value.strip().upper()
        if key in cls.__members__:
            return cls[key]
        # ATDPN prefixes auto-detected protocols with "A".
        if len(key) == 2 and key.startswith("A"):
            key = key[1:]
        return cls(key)


def match_error(reply: str) -> Optional[str]:
    """Return the adapter error pattern in *reply*, or ``None``."""
    text = reply.strip().upper()
    if text == "?":
        return "?"
    for pattern in ERROR_PATTERNS:
        if pattern in text:
            return pattern
    return None


def _compact_lines(reply: str) -> List[str]:
    lines = []
    for line in reply.upper().splitlines():
        compact = _WHITESPACE.sub("", line).replace(_SEARCHING, "")
        if compact:
            lines.append(compact)
    return lines


def _payload_error(
    definition: PIDDefinition, payload: str, value: Optional[float]
) -> Optional[str]:
    expected = definition.num_bytes * 2
    if len(payload) != expected:
        return (
            f"Expected {definition.num_bytes} data byte(s) for {definition.name}, "
            f"got {payload!r}"
        )
    if value is None:
        return "No decoded value"
    if not definition.in_range(value):
        return (
            f"Value {value} outside [{definition.min_value}, "
            f"{definition.max_value}] for {definition.name}"
        )
    return None


def parse_vin(reply: str) -> Optional[str]:
    """Extract the VIN from a Mode 09 PID 02 reply (single or multi-frame)."""
    chunks: List[str] = []
    for line in _compact_lines(reply):
        line = _FRAME_INDEX.sub("", line)
        if line.startswith("4902"):
            # Mode echo, PID, then message count / sequence byte.
            line = line[6:]
        elif len(line) <= 3:
            # CAN multi-frame byte count header.
            continue
        chunks.append(line)
    try:
        data = bytes(parse_hex_bytes("".join(chunks)))
    except ValueError:
        return None
    vin = "".join(ch for ch in data.decode("ascii", errors="ignore") if ch.isalnum())
    return vin[-17:] or None


class ProtocolAdapter:
    """Typed PID-read interface over an ELM327 command channel.

    Parameters
    ----------
    transport:
        Connected command channel.  The adapter is its only user.
    support_records:
        PID support map to populate; a fresh dict when omitted.
    min_command_interval:
        Seconds enforced between consecutive PID reads and discovery probes.
    command_timeout:
        Seconds to wait for a single reply.
    reset_delay:
        Seconds to wait after ``ATZ`` while the adapter reboots.
    """

    def __init__(
        self,
        transport: Transport,
        *,
        support_records: Optional[Dict[str, PIDSupportRecord]] = None,
        min_command_interval: float = 0.1,
        command_timeout: float = 2.0,
        reset_delay: float = 1.0,
    ) -> None:
        self._transport = transport
        self._records: Dict[str, PIDSupportRecord] = (
            support_records if support_records is not None else {}
        )
        self._min_interval = min_command_interval
        self._command_timeout = command_timeout
        self._reset_delay = reset_delay

        self._state = AdapterState.UNINITIALIZED
        self._failure: Optional[str] = None
        self._protocol = OBDProtocol.AUTO
        self._lock = asyncio.Lock()
        self._last_command_at = float("-inf")

    # -- properties ---------------------------------------------------------

    @property
    def state(self) -> AdapterState:
        return self._state

    @property
    def failure_cause(self) -> Optional[str]:
        return self._failure

    @property
    def protocol(self) -> OBDProtocol:
        return self._protocol

    @property
    def is_ready(self) -> bool:
        return self._state is AdapterState.READY

    @property
    def connection_status(self) -> ConnectionStatus:
        if self._state is AdapterState.FAILED:
            return "error"
        if self._state in _INIT_STATES:
            return "connecting"
        if self._state is AdapterState.READY and self._transport.is_connected():
            return "connected"
        return "disconnected"

    # -- lifecycle ----------------------------------------------------------

    async def initialize(self) -> None:
        """Reset, configure, detect the protocol, validate and discover PIDs.

        Raises ``NotConnectedError`` if the transport is down and
        ``InitializationError`` naming the stage that failed otherwise.
        """
        if not self._transport.is_connected():
            self._fail("Transport not connected")
            raise NotConnectedError()

        try:
            self._enter(AdapterState.RESETTING)
            reply = await self._reset()
            if ELM_IDENTIFICATION not in reply.upper():
                raise InitializationError(
                    "reset", f"Device is not responding as ELM327 (got {reply!r})"
                )

            self._enter(AdapterState.CONFIGURING)
            for command in CONFIG_SEQUENCE:
                reply = await self._send(command)
                pattern = match_error(reply)
                if pattern is not None:
                    raise InitializationError("configure", f"{command} -> {pattern}")

            self._enter(AdapterState.DETECTING_PROTOCOL)
            await self._detect_protocol()

            self._enter(AdapterState.DISCOVERING_PIDS)
            if not await self.validate_connection():
                raise InitializationError(
                    "validate_connection", "vehicle did not answer 0100"
                )
            supported = await self.discover_supported_pids()
        except InitializationError as exc:
            self._fail(str(exc))
            raise
        except _TIMEOUTS as exc:
            stage = self._state.value
            self._fail(f"timeout during {stage}")
            raise InitializationError(stage, "timed out waiting for adapter") from exc
        except TransportError as exc:
            stage = self._state.value
            self._fail(str(exc))
            raise InitializationError(stage, str(exc)) from exc

        self._enter(AdapterState.READY)
        logger.info(
            "adapter_ready",
            protocol=self._protocol.name,
            supported=len(supported),
        )

    async def reset_adapter(self) -> str:
        """Send ``ATZ`` and wait for the reboot.

        The adapter's configuration is lost, so the state drops back to
        ``UNINITIALIZED``; call :meth:`initialize` before reading again.
        """
        reply = await self._reset()
        self._state = AdapterState.UNINITIALIZED
        return reply

    async def set_protocol(self, protocol: Union[OBDProtocol, str]) -> None:
        selected = OBDProtocol.parse(protocol)
        reply = await self._send(selected.command)
        pattern = match_error(reply)
        if pattern is not None:
            raise InitializationError("set_protocol", f"{selected.command} -> {pattern}")
        self._protocol = selected
        logger.info("protocol_set", protocol=selected.name)

    # -- reads --------------------------------------------------------------

    async def read_pid(self, pid: str) -> OBDResponse:
        """Read and decode one Mode 01 PID.

        An unsupported PID with a supported substitute in ``FALLBACK_PIDS``
        is served from the substitute; the response keeps the requested
        ``pid`` and sets ``fallback_pid``.  Out-of-range or short payloads
        come back with ``is_valid=False`` rather than raising.
        """
        self._require_ready()
        if not self._transport.is_connected():
            raise NotConnectedError()

        try:
            key = normalize_pid(pid)
        except ValueError:
            raise PIDNotSupportedError(pid, "malformed identifier") from None
        definition = PID_CATALOG.get(key)
        if definition is None:
            raise PIDNotSupportedError(key, "unknown PID")

        record = self._records.get(key)
        if record is None or record.is_supported:
            return await self._read_definition(definition)

        substitute = FALLBACK_PIDS.get(key)
        if substitute is None or not self.is_pid_supported(substitute):
            raise PIDNotSupportedError(key)
        response = await self._read_definition(PID_CATALOG[substitute])
        logger.debug("pid_fallback_read", pid=key, fallback_pid=substitute)
        return response.model_copy(
            update={
                "pid": key,
                "fallback_pid": substitute,
                "description": (
                    f"{response.description} (fallback for {definition.description})"
                ),
            }
        )

    async def read_multiple_pids(self, pids: Iterable[str]) -> List[OBDResponse]:
        """Read each PID in turn; PID-level failures are logged and skipped."""
        responses: List[OBDResponse] = []
        for pid in pids:
            try:
                responses.append(await self.read_pid(pid))
            except PIDError as exc:
                logger.warning("pid_read_skipped", pid=pid, error=str(exc))
        return responses

    async def read_essential_data(self) -> List[OBDResponse]:
        return await self.read_multiple_pids(ESSENTIAL_PIDS)

    def validate_response(self, response: OBDResponse) -> bool:
        if not response.is_valid or response.value is None:
            return False
        definition = get_pid_definition(response.fallback_pid or response.pid)
        if definition is None:
            return False
        return _payload_error(definition, response.raw_value, response.value) is None

    async def get_vehicle_info(self) -> Dict[str, Optional[str]]:
        """VIN (Mode 09 PID 02) and protocol as reported by the adapter."""
        self._require_ready()
        info: Dict[str, Optional[str]] = {
            "vin": None,
            "protocol": None,
            "protocol_name": self._protocol.name,
        }

        try:
            reply = await self._send("0902", paced=True)
            if match_error(reply) is None:
                info["vin"] = parse_vin(reply)
            else:
                logger.warning("vin_unavailable", reply=reply)
        except _TIMEOUTS:
            logger.warning("vin_unavailable", reply="timeout")

        try:
            reply = await self._send("ATDPN")
            if match_error(reply) is None:
                info["protocol"] = reply.strip()
        except _TIMEOUTS:
            logger.warning("protocol_number_unavailable")
        return info

    # -- support discovery --------------------------------------------------

    async def discover_supported_pids(self) -> List[str]:
        """Populate the support map from the 0100/0120/0140 bitmasks.

        Essential PIDs the bitmasks do not confirm are probed one by one.
        When no bitmask query answers at all, ``COMMON_PIDS`` are assumed
        supported.  Returns the supported PIDs.
        """
        answered = False
        for query, first in SUPPORT_QUERIES:
            mask = await self._query_support_mask(query)
            if mask is None:
                continue
            answered = True
            now = datetime.now(timezone.utc)
            for bit in range(32):
                pid = f"01{first + bit:02X}"
                is_set = bool(mask & (1 << (31 - bit)))
                # Bit 32 of each range only advertises the next range query.
                if bit == 31 or (not is_set and pid not in PID_CATALOG):
                    continue
                self._records[pid] = PIDSupportRecord(
                    pid=pid,
                    is_supported=is_set,
                    tested_at=now,
                    fallback_pid=None if is_set else FALLBACK_PIDS.get(pid),
                )

        if not answered:
            logger.warning("pid_discovery_failed", assumed=list(COMMON_PIDS))
            now = datetime.now(timezone.utc)
            for pid in COMMON_PIDS:
                self._records[pid] = PIDSupportRecord(
                    pid=pid,
                    is_supported=True,
                    tested_at=now,
                    estimation_method="lookup",
                )
            return self.get_supported_pids()

        for pid in ESSENTIAL_PIDS:
            if not self.is_pid_supported(pid):
                await self.probe_pid(pid)

        supported = self.get_supported_pids()
        logger.info("pids_discovered", count=len(supported), pids=supported)
        return supported

    async def probe_pid(self, pid: str) -> bool:
        """Test one PID with a direct read and record the outcome."""
        key = normalize_pid(pid)
        header = "41" + key[2:]
        try:
            reply = await self._send(key, paced=True)
            supported = match_error(reply) is None and any(
                line.startswith(header) for line in _compact_lines(reply)
            )
        except _TIMEOUTS:
            supported = False
        self._records[key] = PIDSupportRecord(
            pid=key,
            is_supported=supported,
            fallback_pid=None if supported else FALLBACK_PIDS.get(key),
        )
        logger.debug("pid_probed", pid=key, supported=supported)
        return supported

    def is_pid_supported(self, pid: str) -> bool:
        try:
            record = self._records.get(normalize_pid(pid))
        except ValueError:
            return False
        return record is not None and record.is_supported

    def get_supported_pids(self) -> List[str]:
        return sorted(pid for pid, record in self._records.items() if record.is_supported)

    def get_essential_pids(self) -> List[str]:
        """Essential PIDs the vehicle supports."""
        return [pid for pid in ESSENTIAL_PIDS if self.is_pid_supported(pid)]

    def support_records(self) -> Dict[str, PIDSupportRecord]:
        return dict(self._records)

    # -- connectivity -------------------------------------------------------

    async def validate_connection(self) -> bool:
        """``0100`` must answer without an error pattern.

        A follow-up RPM probe is logged but never fails validation.
        """
        try:
            reply = await self._send("0100", paced=True)
        except (TransportError, *_TIMEOUTS) as exc:
            logger.warning("connection_validation_failed", error=str(exc) or "timeout")
            return False
        pattern = match_error(reply)
        if pattern is not None:
            logger.warning("connection_validation_failed", reply=reply, pattern=pattern)
            return False

        try:
            probe = await self._send("010C", paced=True)
            if match_error(probe) is not None:
                logger.info("rpm_probe_failed", reply=probe)
        except (TransportError, *_TIMEOUTS) as exc:
            logger.info("rpm_probe_failed", error=str(exc) or "timeout")
        return True

    # -- internal -----------------------------------------------------------

    def _enter(self, state: AdapterState) -> None:
        self._state = state
        if state is not AdapterState.FAILED:
            self._failure = None
        logger.debug("adapter_state", state=state.value)

    def _fail(self, cause: str) -> None:
        self._state = AdapterState.FAILED
        self._failure = cause
        logger.error("adapter_failed", cause=cause)

    def _require_ready(self) -> None:
        if self._state is not AdapterState.READY:
            raise AdapterNotReadyError(
                f"Adapter is {self._state.value}; call initialize() first"
            )

    async def _send(self, command: str, *, paced: bool = False) -> str:
        """One command round-trip; only one is ever in flight.

        With *paced* set, waits until ``min_command_interval`` has passed
        since the previous command.
        """
        async with self._lock:
            loop = asyncio.get_running_loop()
            if paced:
                wait = self._last_command_at + self._min_interval - loop.time()
                if wait > 0:
                    await asyncio.sleep(wait)
            try:
                reply = await asyncio.wait_for(
                    self._transport.send_command(command),
                    timeout=self._command_timeout,
                )
            except (OBDError, *_TIMEOUTS):
                raise
            except Exception as exc:
                raise TransportError(f"Command {command} failed: {exc}") from exc
            finally:
                self._last_command_at = loop.time()
        return reply.strip()

    async def _reset(self) -> str:
        reply = await self._send("ATZ")
        if self._reset_delay > 0:
            await asyncio.sleep(self._reset_delay)
        return reply

    async def _detect_protocol(self) -> None:
        try:
            reply = await self._send(OBDProtocol.AUTO.command)
            if match_error(reply) is not None:
                raise ValueError(reply)
            reply = await self._send("ATDPN")
            if match_error(reply) is not None:
                raise ValueError(reply)
            self._protocol = OBDProtocol.parse(reply)
        except (ValueError, *_TIMEOUTS) as exc:
            logger.warning("protocol_detection_failed", error=str(exc) or "timeout")
            self._protocol = OBDProtocol.AUTO
        logger.info("protocol_detected", protocol=self._protocol.name)

    async def _query_support_mask(self, query: str) -> Optional[int]:
        try:
            reply = await self._send(query, paced=True)
        except _TIMEOUTS:
            logger.debug("support_query_timeout", query=query)
            return None
        if match_error(reply) is not None:
            logger.debug("support_query_unanswered", query=query, reply=reply)
            return None
        header = "41" + query[2:]
        for line in _compact_lines(reply):
            if line.startswith(header) and len(line) >= len(header) + 8:
                try:
                    return int(line[len(header):len(header) + 8], 16)
                except ValueError:
                    return None
        return None

    async def _read_definition(self, definition: PIDDefinition) -> OBDResponse:
        try:
            reply = await self._send(definition.pid, paced=True)
        except _TIMEOUTS:
            raise PIDReadError(definition.pid, "TIMEOUT") from None
        pattern = match_error(reply)
        if pattern is not None:
            raise PIDReadError(definition.pid, reply.strip() or pattern)
        return self._parse_reply(definition, reply)

    @staticmethod
    def _parse_reply(definition: PIDDefinition, reply: str) -> OBDResponse:
        header = definition.response_header
        line = next(
            (ln for ln in _compact_lines(reply) if ln.startswith(header)), None
        )
        if line is None:
            raise ResponseFormatError(definition.pid, header, reply)
        payload = line[len(header):]

        value: Optional[float] = None
        try:
            value = decode_payload(definition, parse_hex_bytes(payload))
        except ValueError as exc:
            error: Optional[str] = str(exc)
        else:
            error = _payload_error(definition, payload, value)

        if error is not None:
            logger.debug("pid_response_invalid", pid=definition.pid, error=error)
        return OBDResponse(
            pid=definition.pid,
            raw_value=payload,
            value=value,
            unit=definition.unit,
            description=definition.description,
            is_valid=error is None,
            error=error,
        )
