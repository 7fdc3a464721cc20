"""Synthetic readings for the simulated field device."""
from __future__ import annotations

import random
from datetime import datetime, timezone
from typing import Callable, Optional

from sensor_dashboard import build_info
from sensor_dashboard.config import PublisherConfig
from sensor_dashboard.telemetry import TelemetryEnvelope

DAYLIGHT_HOURS = range(6, 19)
EVENING_HOURS = range(19, 23)


def _local_now() -> datetime:
    return datetime.now().astimezone()


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def light_base(hour: int) -> int:
    """Ambient light floor for the wall-clock hour (daylight, evening, night)."""

    if hour in DAYLIGHT_HOURS:
        return 600
    if hour in EVENING_HOURS:
        return 200
    return 50


class ReadingSimulator:
    """Generate bounded, repeatable readings for one simulated device."""

    def __init__(
        self,
        config: PublisherConfig,
        *,
        rng: Optional[random.Random] = None,
        clock: Callable[[], datetime] = _local_now,
    ):
        if build_info.BUILD_FLAVOR == "prod":
            raise RuntimeError("Simulation is not allowed in production builds")
        self.config = config
        self.random = rng if rng is not None else random.Random(config.seed)
        self._clock = clock

    def temperature(self) -> float:
        return round(25.0 + self.random.uniform(-5.0, 5.0), 1)

    def humidity(self) -> float:
        return round(_clamp(60.0 + self.random.uniform(-20.0, 20.0), 30.0, 90.0), 1)

    def pressure(self) -> float:
        return round(1013.0 + self.random.uniform(-10.0, 10.0), 1)

    def light(self, hour: int) -> int:
        return int(round(light_base(hour) + self.random.uniform(0.0, 300.0)))

    def battery_level(self) -> int:
        # slow discharge band
        return int(round(self.random.uniform(70.0, 100.0)))

    def signal_strength(self) -> int:
        return int(round(-self.random.uniform(30.0, 80.0)))

    def next_reading(self, now: Optional[datetime] = None) -> TelemetryEnvelope:
        """Draw one reading; ``now`` drives both the light bucket and the timestamp."""

        now = now or self._clock()
        if now.tzinfo is None:
            now = now.astimezone()
        return TelemetryEnvelope(
            device_id=self.config.device_id,
            location=self.config.location,
            temperature=self.temperature(),
            humidity=self.humidity(),
            pressure=self.pressure(),
            light=self.light(now.hour),
            battery_level=self.battery_level(),
            signal_strength=self.signal_strength(),
            timestamp=now.astimezone(timezone.utc),
        )
