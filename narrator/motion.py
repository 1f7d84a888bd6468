"""Speed estimation and movement classification from smoothed positions."""

from typing import Optional

from .config import CONFIG
from .geo import haversine_distance
from .models import SmoothedPosition, SpeedReading

STATIONARY = "stationary"
WALKING = "walking"
JOGGING = "jogging"
RUNNING = "running"
VEHICLE = "vehicle"

STATE_LABELS = {
    STATIONARY: "Stationary",
    WALKING: "Walking",
    JOGGING: "Jogging",
    RUNNING: "Running",
    VEHICLE: "In vehicle",
}


class MotionClassifier:
    """Moving-average speed over consecutive positions"""

    def __init__(self, window_size: Optional[int] = None, min_time_delta_ms: Optional[int] = None,
                 max_plausible_mps: Optional[float] = None, thresholds: Optional[dict] = None):
        self.window_size = window_size or CONFIG["motion_window_size"]
        self.min_time_delta_ms = (min_time_delta_ms if min_time_delta_ms is not None
                                  else CONFIG["motion_min_time_delta_ms"])
        self.max_plausible_mps = max_plausible_mps or CONFIG["motion_max_plausible_mps"]
        self.thresholds = dict(CONFIG["speed_thresholds"], **(thresholds or {}))
        self.readings: list[SpeedReading] = []
        self.current_speed = 0.0
        self.glitch_count = 0

    def add_reading(self, position: SmoothedPosition, timestamp_ms: int) -> Optional[float]:
        """Record a position and return the smoothed speed in m/s.

        The first reading only seeds the window (speed 0) and returns None.
        Readings that arrive too soon after the previous one, or that imply
        an implausible speed, are not recorded and the previous speed is
        returned.
        """
        if not self.readings:
            self.readings.append(SpeedReading(0.0, timestamp_ms, position))
            return None

        last = self.readings[-1]
        time_delta = timestamp_ms - last.timestamp_ms
        if time_delta < self.min_time_delta_ms:
            return self.current_speed

        distance = haversine_distance(last.position.lat, last.position.lng,
                                      position.lat, position.lng)
        speed = distance / (time_delta / 1000)

        if speed > self.max_plausible_mps:
            self.glitch_count += 1
            return self.current_speed

        self.readings.append(SpeedReading(speed, timestamp_ms, position))
        if len(self.readings) > self.window_size:
            self.readings = self.readings[-self.window_size:]

        self.current_speed = sum(r.speed_mps for r in self.readings) / len(self.readings)
        return self.current_speed

    @property
    def speed_kmh(self) -> float:
        return self.current_speed * 3.6

    def classify(self) -> str:
        """Movement state for the current speed"""
        speed = self.current_speed
        if speed < self.thresholds[STATIONARY]:
            return STATIONARY
        if speed < self.thresholds[WALKING]:
            return WALKING
        if speed < self.thresholds[JOGGING]:
            return JOGGING
        if speed < self.thresholds[RUNNING]:
            return RUNNING
        return VEHICLE

    def is_stationary(self) -> bool:
        return self.current_speed < self.thresholds[STATIONARY]

    def is_walking(self) -> bool:
        return self.thresholds[STATIONARY] <= self.current_speed < self.thresholds[WALKING]

    def is_too_fast(self) -> bool:
        """Vehicle speed: auto-play should hold off"""
        return self.current_speed >= self.thresholds[RUNNING]

    def should_continue_tour(self) -> bool:
        return not self.is_too_fast()

    def is_warmed_up(self) -> bool:
        return len(self.readings) >= self.window_size

    def format_speed(self) -> str:
        if self.is_stationary():
            return STATE_LABELS[STATIONARY]
        return f"{self.speed_kmh:.1f} km/h"

    def reset(self):
        self.readings = []
        self.current_speed = 0.0
        self.glitch_count = 0
