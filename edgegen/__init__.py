"""EdgeGen edge modules.

Small edge-runtime modules that talk to an upstream hub over a managed
duplex connection:
- data generator: correlated temperature/humidity telemetry with a
  remotely tunable sampling rate
- HTTP relay: direct-method driven GET/POST forwarder
- SQL writer: input-driven Postgres sink

Each module exits non-zero when its connection cannot be recovered and
relies on the edge agent to restart it.
"""

__version__ = "0.4.0"
