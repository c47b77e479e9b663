"""Telemetry emission loop.

One tick = generate a reading, send it upstream, sleep for the current
sampling interval. The interval is read at the start of each sleep, so a
new desired sampling rate takes effect from the next tick. Cancellation
interrupts the sleep immediately.
"""

from __future__ import annotations

import enum
import logging
import threading
from datetime import datetime
from typing import Callable

from .hub import DeliveryError, HubConnection
from .runtime import StopSignal
from .sensor import SensorModel
from .synchronizer import ConfigSynchronizer
from .telemetry import TelemetryEnvelope, format_device_time, utc_now

logger = logging.getLogger(__name__)


class LoopState(enum.Enum):
    """A loop is RUNNING from construction; STOPPED is terminal."""

    RUNNING = "running"
    STOPPED = "stopped"


class SequenceCounter:
    """Thread-safe counter; the first value handed out is 1."""

    def __init__(self, start: int = 0) -> None:
        self._value = start
        self._lock = threading.Lock()

    @property
    def value(self) -> int:
        with self._lock:
            return self._value

    def next(self) -> int:
        with self._lock:
            self._value += 1
            return self._value


class EmissionLoop:
    def __init__(
        self,
        connection: HubConnection,
        sensor: SensorModel,
        synchronizer: ConfigSynchronizer,
        stop: StopSignal,
        *,
        device_id: str,
        output_name: str = "output1",
        sequence: SequenceCounter | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._connection = connection
        self._sensor = sensor
        self._synchronizer = synchronizer
        self._stop = stop
        self._device_id = device_id
        self._output_name = output_name
        self._sequence = sequence if sequence is not None else SequenceCounter()
        self._clock = clock

        self.state = LoopState.RUNNING
        self.ticks = 0

    def tick(self) -> TelemetryEnvelope:
        """Generate and send one envelope (no sleep)."""

        seq = self._sequence.next()
        temperature, humidity = self._sensor.next()
        envelope = TelemetryEnvelope(
            device_id=self._device_id,
            device_time=format_device_time(self._clock()),
            temperature=temperature,
            humidity=humidity,
            sequence=seq,
        )

        message = envelope.to_message()
        logger.info("Sending message: Count: %s, Body: [%s]", seq, envelope.to_json(), extra={"sequence": seq})
        try:
            self._connection.send_event(self._output_name, message)
            logger.debug("Message %s sent", seq, extra={"sequence": seq})
        except DeliveryError as e:
            # Sustained loss is reported as RETRY_EXPIRED on the status handler.
            logger.warning("Message %s not delivered: %s", seq, e, extra={"sequence": seq})
        return envelope

    def run(self) -> None:
        if self.state is LoopState.STOPPED:
            return
        try:
            while not self._stop.is_set():
                self.tick()
                self.ticks += 1
                if self._stop.wait(self._synchronizer.interval_seconds):
                    break
        finally:
            self.state = LoopState.STOPPED
        logger.info("Emission loop stopped after %s messages", self.ticks)
