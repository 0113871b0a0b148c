"""SerialTransport -- pyserial wrapper for a physical ELM327.

``pyserial`` is imported lazily inside methods so that simulation mode
works without it installed.  All blocking I/O is offloaded to a thread via
``asyncio.to_thread``.
"""

from __future__ import annotations

import asyncio
from typing import Any, List

import structlog

from obd_telemetry.exceptions import NotConnectedError, TransportError
from obd_telemetry.transport.base import Transport

logger = structlog.get_logger(__name__)

PROMPT = b">"


class SerialTransport(Transport):
    """Talks to an ELM327 over a serial port (USB, or Bluetooth RFCOMM)."""

    def __init__(self, port: str, baudrate: int = 38400, timeout: float = 2.0) -> None:
        self._port = port
        self._baudrate = baudrate
        self._timeout = timeout
        self._serial: Any = None  # serial.Serial instance (lazy)

    # -- lifecycle ----------------------------------------------------------

    async def connect(self) -> None:
        serial = _import_serial()
        try:
            self._serial = await asyncio.to_thread(
                serial.Serial,
                port=self._port,
                baudrate=self._baudrate,
                timeout=self._timeout,
            )
        except serial.SerialException as exc:
            raise TransportError(f"Cannot open {self._port}: {exc}") from exc
        logger.info("serial_transport_connected", port=self._port, baudrate=self._baudrate)

    async def disconnect(self) -> None:
        if self._serial is not None:
            await asyncio.to_thread(self._serial.close)
            self._serial = None

    def is_connected(self) -> bool:
        return self._serial is not None and bool(self._serial.is_open)

    # -- commands -----------------------------------------------------------

    async def send_command(self, command: str) -> str:
        if not self.is_connected():
            raise NotConnectedError()
        serial = _import_serial()
        try:
            raw = await asyncio.to_thread(self._exchange, command)
        except serial.SerialException as exc:
            raise TransportError(f"Serial I/O failed on {self._port}: {exc}") from exc
        if not raw.endswith(PROMPT):
            raise TimeoutError(f"No prompt from adapter for {command!r}")
        return clean_reply(raw, command)

    # -- internal -----------------------------------------------------------

    def _exchange(self, command: str) -> bytes:
        self._serial.reset_input_buffer()
        self._serial.write((command + "\r").encode("ascii"))
        self._serial.flush()
        return self._serial.read_until(PROMPT)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def clean_reply(raw: bytes, command: str) -> str:
    """Strip the prompt, blank lines and any echoed command from *raw*."""
    text = raw.decode("ascii", errors="ignore").replace(">", "")
    lines: List[str] = [
        line.strip() for line in text.replace("\r", "\n").split("\n") if line.strip()
    ]
    if lines and lines[0].replace(" ", "") == command.replace(" ", ""):
        lines = lines[1:]
    return "\n".join(lines)


def _import_serial() -> Any:
    """Lazy-import pyserial so it's only needed for hardware."""
    try:
        import serial  # type: ignore[import-untyped]
        return serial
    except ImportError as exc:
        raise ImportError(
            "pyserial is required for hardware mode. "
            "Install it with: pip install pyserial"
        ) from exc
