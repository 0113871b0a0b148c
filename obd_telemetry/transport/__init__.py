"""Adapter transport layer.

Provides the ``Transport`` ABC with two concrete implementations:

* ``SimulatedTransport`` -- ELM327 emulator driven by JSON scenarios.
* ``SerialTransport``    -- wraps pyserial (lazy-imported).
"""

from obd_telemetry.transport.base import Transport

__all__ = ["Transport"]
