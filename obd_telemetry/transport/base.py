"""Abstract command channel to an ELM327-class adapter."""

from __future__ import annotations

from abc import ABC, abstractmethod


class Transport(ABC):
    """Text command/response link to the adapter.

    Concrete implementations: ``SimulatedTransport`` (scenario-based
    emulator) and ``SerialTransport`` (pyserial).  Link establishment,
    link-layer retries and reconnection belong here, not in the adapter.
    """

    @abstractmethod
    async def connect(self) -> None:
        """Open the link."""

    @abstractmethod
    async def disconnect(self) -> None:
        """Close the link."""

    @abstractmethod
    def is_connected(self) -> bool:
        """Return ``True`` if the link is open."""

    @abstractmethod
    async def send_command(self, command: str) -> str:
        """Send *command* and await the adapter's reply.

        The line terminator is appended here.  The returned text has line
        terminators, echo and the ``>`` prompt stripped; multi-line replies
        are joined with ``"\\n"``.

        Raises ``TransportError`` when the round-trip fails and
        ``TimeoutError`` when no prompt arrives in time.
        """
