"""Alert rules evaluated against each incoming reading."""

from __future__ import annotations

from datetime import datetime
from typing import Iterable, Optional, Sequence, Tuple

from models.records import Alert, AlertKind, Reading

LOW_PRESSURE = 0.03
HIGH_PRESSURE = 0.07
LOW_TEMPERATURE = 5.0
HIGH_TEMPERATURE = 40.0

PressurePoint = Tuple[datetime, float]


def points_from_readings(readings: Iterable[Reading]) -> list[PressurePoint]:
    return [(reading.timestamp, reading.pressure) for reading in readings]


def classify_instant(pressure: float, temperature: float) -> Optional[str]:
    """Return the reason for the first breached threshold, if any."""
    if pressure < LOW_PRESSURE:
        return "pressure low"
    if pressure > HIGH_PRESSURE:
        return "pressure high"
    if temperature <= LOW_TEMPERATURE:
        return "temperature low"
    if temperature > HIGH_TEMPERATURE:
        return "temperature high"
    return None


class RuleEvaluator:
    """Pure rule logic; callers supply the window, never a store."""

    def __init__(self, window_size: int, delta_pressure: float) -> None:
        if window_size <= 0:
            raise ValueError("Window size must be a positive integer.")
        self.window_size = window_size
        self.delta_pressure = delta_pressure

    def evaluate_instant(self, reading: Reading) -> Optional[Alert]:
        reason = classify_instant(reading.pressure, reading.temperature)
        if reason is None:
            return None
        return Alert(
            kind=AlertKind.instant,
            device_id=reading.device_id,
            timestamp=reading.timestamp,
            reason=reason,
            pressure=reading.pressure,
            temperature=reading.temperature,
        )

    def evaluate_sustained(
        self, reading: Reading, window: Sequence[PressurePoint]
    ) -> Optional[Alert]:
        """Compare the newest and oldest pressure of a full window.

        ``window`` may arrive in any order; it is sorted by timestamp ascending
        (stable, so equal timestamps keep arrival order). Anything other than
        exactly ``window_size`` points yields no alert.
        """
        if len(window) != self.window_size:
            return None

        ordered = sorted(window, key=lambda point: point[0])
        change = ordered[-1][1] - ordered[0][1]
        if abs(change) < self.delta_pressure:
            return None

        direction = "increase" if change > 0 else "decrease"
        return Alert(
            kind=AlertKind.sustained,
            device_id=reading.device_id,
            timestamp=reading.timestamp,
            reason=f"rapid pressure {direction}",
            change=change,
        )
