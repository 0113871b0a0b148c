"""Exception hierarchy for the telemetry core.

Transport-level errors abort the current tick, protocol-level errors abort
``ProtocolAdapter.initialize()``, and PID-level errors stay local to a
single read.
"""

from __future__ import annotations

from typing import Optional


class OBDError(Exception):
    """Base class for every error raised by ``obd_telemetry``."""


# ---------------------------------------------------------------------------
# Transport level
# ---------------------------------------------------------------------------


class TransportError(OBDError):
    """A command round-trip failed at the link layer."""


class NotConnectedError(TransportError):
    """The transport reports itself disconnected."""

    def __init__(self, message: str = "Transport not connected") -> None:
        super().__init__(message)


# ---------------------------------------------------------------------------
# Protocol level
# ---------------------------------------------------------------------------


class InitializationError(OBDError):
    """Adapter initialization failed at a named stage."""

    def __init__(self, stage: str, cause: str) -> None:
        self.stage = stage
        self.cause = cause
        super().__init__(f"OBD initialization failed at {stage}: {cause}")


class AdapterNotReadyError(OBDError):
    """A read was attempted before the adapter reached ``READY``."""


# ---------------------------------------------------------------------------
# PID level
# ---------------------------------------------------------------------------


class PIDError(OBDError):
    """Failure local to one PID read."""

    def __init__(self, pid: str, message: str) -> None:
        self.pid = pid
        super().__init__(message)


class PIDNotSupportedError(PIDError):
    def __init__(self, pid: str, detail: Optional[str] = None) -> None:
        message = f"PID {pid} not supported by vehicle"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(pid, message)


class PIDReadError(PIDError):
    def __init__(self, pid: str, reply: str) -> None:
        self.reply = reply
        super().__init__(pid, f"Error reading PID {pid}: {reply}")


class ResponseFormatError(PIDError):
    """Reply does not echo the requested mode and PID."""

    def __init__(self, pid: str, expected: str, reply: str) -> None:
        self.expected = expected
        self.reply = reply
        super().__init__(
            pid,
            f"Response for PID {pid} does not start with {expected}: {reply!r}",
        )


# ---------------------------------------------------------------------------
# Engine level
# ---------------------------------------------------------------------------


class TelemetryStartError(OBDError):
    """``TelemetryEngine.start()`` could not validate connectivity."""
