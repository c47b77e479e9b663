"""Simulated temperature/humidity sensor.

Readings are a bounded random walk so graphs drift slowly instead of
jumping around:
- temperature moves by at most 0.5 degrees per reading, except for a rare
  anomaly (~0.2% of readings) that shifts it by +/-20 degrees at once
- humidity is loosely inverse-correlated with temperature: cold readings
  push it up, hot readings push it down, plus +/-10 noise

The model has no I/O. Pass a seeded `random.Random` for reproducible runs.
"""

from __future__ import annotations

import random
from dataclasses import dataclass
from typing import Optional, Tuple


MIN_TEMPERATURE = -20.0
MAX_TEMPERATURE = 45.0
ANOMALY_ODDS = 500
ANOMALY_SHIFT = 20.0
MAX_DRIFT = 0.5
HUMIDITY_NOISE = 10


@dataclass
class SensorState:
    last_temperature: float = 0.0
    last_humidity: int = 0


class SensorModel:
    """Stateful generator producing one (temperature, humidity) pair per call.

    Only the emission loop's thread may call `next()`.
    """

    def __init__(self, state: Optional[SensorState] = None, rng: Optional[random.Random] = None) -> None:
        self.state = state if state is not None else SensorState()
        self._rng = rng if rng is not None else random.Random()

    @classmethod
    def from_seed(cls, seed: Optional[int]) -> "SensorModel":
        return cls(rng=random.Random(seed) if seed is not None else random.Random())

    def next(self) -> Tuple[float, int]:
        temperature = self._next_temperature()
        humidity = self._next_humidity(temperature)

        self.state.last_temperature = temperature
        self.state.last_humidity = humidity
        return temperature, humidity

    def _next_temperature(self) -> float:
        rng = self._rng
        t = self.state.last_temperature

        if rng.randrange(0, ANOMALY_ODDS) == 0:
            t += ANOMALY_SHIFT if rng.randrange(2) == 0 else -ANOMALY_SHIFT
        else:
            t += rng.uniform(-MAX_DRIFT, MAX_DRIFT)

        # Saturate, never wrap.
        if t < MIN_TEMPERATURE:
            t = MIN_TEMPERATURE
        elif t > MAX_TEMPERATURE:
            t = MAX_TEMPERATURE
        return t

    def _next_humidity(self, temperature: float) -> int:
        rng = self._rng
        h = self.state.last_humidity

        # Baseline before noise: colder means more humid.
        if temperature < 5 and h < 70:
            h = 80
        elif 5 <= temperature < 25 and h < 50:
            h = 60
        elif temperature >= 25 and h > 40:
            h = 30

        h += rng.randint(-HUMIDITY_NOISE, HUMIDITY_NOISE)

        # Out of range readings are redrawn near the edge rather than pinned to it,
        # so the series does not flatline at 0 or 100.
        if h < 0:
            h = rng.randrange(0, 20)
        elif h > 100:
            h = rng.randint(90, 100)
        return h
