"""Desired/reported sampling-rate synchronization.

The operator sets `samplingrate` (milliseconds) in the module twin's desired
properties. A desired value is applied only if it is an integer within
[1, 60000]; anything else is ignored and the current value kept. Either way
the effective value is reported back, which doubles as an acknowledgment.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Mapping, Optional

from .config import DEFAULT_SAMPLING_RATE_MS, MAX_SAMPLING_RATE_MS, MIN_SAMPLING_RATE_MS
from .hub import HubConnection

logger = logging.getLogger(__name__)

SAMPLING_RATE_KEY = "samplingrate"


def is_valid_sampling_rate(value: Any) -> bool:
    # bool is an int subclass; JSON true must not read as 1ms.
    if not isinstance(value, int) or isinstance(value, bool):
        return False
    return MIN_SAMPLING_RATE_MS <= value <= MAX_SAMPLING_RATE_MS


class ConfigSynchronizer:
    def __init__(self, connection: HubConnection, *, initial_interval_ms: int = DEFAULT_SAMPLING_RATE_MS) -> None:
        if not is_valid_sampling_rate(initial_interval_ms):
            raise ValueError(f"initial interval out of range: {initial_interval_ms!r}")
        self._connection = connection
        self._lock = threading.Lock()
        self._interval_ms = initial_interval_ms

    @property
    def interval_ms(self) -> int:
        with self._lock:
            return self._interval_ms

    @property
    def interval_seconds(self) -> float:
        return self.interval_ms / 1000.0

    def merge(self, desired: Optional[Any]) -> int:
        """Apply a desired sampling rate if valid and report the effective value.

        Raises DeliveryError when the reported document cannot be delivered.
        """

        with self._lock:
            if is_valid_sampling_rate(desired):
                if desired != self._interval_ms:
                    logger.info("Setting samplingRate to %sms", desired, extra={"samplingrate": desired})
                self._interval_ms = desired
            elif desired is not None:
                logger.debug("Ignoring desired samplingrate=%r", desired)
            effective = self._interval_ms

        self._connection.update_reported_config({SAMPLING_RATE_KEY: effective})
        return effective

    def merge_document(self, doc: Optional[Mapping[str, Any]]) -> int:
        """Merge a desired-properties document; unknown keys are ignored."""

        desired = None
        if isinstance(doc, Mapping):
            desired = doc.get(SAMPLING_RATE_KEY)
        return self.merge(desired)
