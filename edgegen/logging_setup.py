"""Logging configuration.

Goals:
- Console logs by default (edge agent log collection reads container stdout)
- Optional structured JSON logs (LOG_FORMAT=json)
- Every record carries the module id so multi-module device logs stay readable
- Minimal dependencies (stdlib only)

Log level follows the edge runtime vocabulary (RuntimeLogLevel):
fatal, error, warn, info, debug, verbose.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict


_RUNTIME_LEVELS = {
    "fatal": logging.CRITICAL,
    "critical": logging.CRITICAL,
    "error": logging.ERROR,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "info": logging.INFO,
    "debug": logging.DEBUG,
    "verbose": logging.DEBUG,
}

# Structured fields passed through `extra=` that the JSON formatter keeps.
_STRUCTURED_FIELDS = (
    "module_id",
    "sequence",
    "status",
    "reason",
    "samplingrate",
    "method",
    "input_name",
    "rows",
)


def normalize_log_level(value: str) -> int:
    """Map a runtime log level name to a `logging` level (default INFO)."""

    return _RUNTIME_LEVELS.get((value or "info").strip().lower(), logging.INFO)


class _ModuleFilter(logging.Filter):
    def __init__(self, module_id: str):
        super().__init__()
        self._module_id = module_id

    def filter(self, record: logging.LogRecord) -> bool:  # noqa: A003
        if self._module_id and getattr(record, "module_id", None) is None:
            setattr(record, "module_id", self._module_id)
        return True


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:  # noqa: A003
        payload: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "severity": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for key in _STRUCTURED_FIELDS:
            v = getattr(record, key, None)
            if v is not None:
                payload[key] = v

        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        return json.dumps(payload, default=str)


def setup_logging(*, log_level: str = "info", log_format: str = "console", module_id: str = "") -> None:
    """Configure root logging.

    Idempotent: safe to call multiple times.
    """

    level = normalize_log_level(log_level)

    root = logging.getLogger()
    root.setLevel(level)

    for h in list(root.handlers):
        root.removeHandler(h)

    handler = logging.StreamHandler()
    if (log_format or "console").lower() == "json":
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(name)s - %(message)s"))

    handler.addFilter(_ModuleFilter(module_id=module_id))
    root.addHandler(handler)

    # Quiet some noisy libs (keep errors).
    logging.getLogger("paho").setLevel(max(level, logging.WARNING))
    logging.getLogger("urllib3").setLevel(max(level, logging.WARNING))

    logging.getLogger(__name__).info("Initialized logger with log level %s", (log_level or "info").lower())
