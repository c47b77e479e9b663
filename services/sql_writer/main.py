"""Writes routed telemetry batches into Postgres.

Container entrypoint; configuration comes from the environment (see
edgegen.config.ModuleSettings).
"""

from __future__ import annotations

from edgegen.sql_sink import run


if __name__ == "__main__":
    raise SystemExit(run())
