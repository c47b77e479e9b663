"""Simulated temperature/humidity telemetry module.

Container entrypoint; configuration comes from the environment (see
edgegen.config.ModuleSettings).
"""

from __future__ import annotations

from edgegen.data_generator import run


if __name__ == "__main__":
    raise SystemExit(run())
