"""Direct-method HTTP relay module.

Container entrypoint; configuration comes from the environment (see
edgegen.config.ModuleSettings).
"""

from __future__ import annotations

from edgegen.relay import run


if __name__ == "__main__":
    raise SystemExit(run())
