"""OBD Telemetry -- real-time vehicle telemetry from ELM327 adapters.

Configures the adapter, discovers supported PIDs and samples them on a
fixed timer, filling sensor gaps with estimates and scoring the quality
of every published sample.  Driving events are derived from consecutive
samples.
"""

__version__ = "0.1.0"
