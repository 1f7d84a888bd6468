"""GPS noise filtering by moving average.

Raw fixes jitter even when the walker stands still, and a jittering position
produces false geofence entries and exits. The smoother keeps a short window
of accepted fixes and reports their average. A larger window is smoother but
lags the true position by a few seconds.
"""

from typing import Optional

from .config import CONFIG
from .models import PositionSample, SmoothedPosition


class PositionSmoother:
    """Simple moving average over the most recent accepted fixes"""

    def __init__(self, window_size: Optional[int] = None, max_age_ms: Optional[int] = None,
                 max_accuracy: Optional[float] = None):
        self.window_size = window_size or CONFIG["smoother_window_size"]
        self.max_age_ms = max_age_ms if max_age_ms is not None else CONFIG["smoother_max_age_ms"]
        self.max_accuracy = max_accuracy if max_accuracy is not None else CONFIG["smoother_max_accuracy"]
        self.samples: list[PositionSample] = []
        self.rejected_count = 0

    def add_sample(self, sample: PositionSample) -> Optional[SmoothedPosition]:
        """Add a fix and return the smoothed position.

        A fix whose accuracy is worse than the threshold is dropped and the
        previous smoothed position returned unchanged. Before any fix has
        been accepted there is no position to return, so the result is None.
        """
        if sample.accuracy_m is not None and sample.accuracy_m > self.max_accuracy:
            self.rejected_count += 1
            return self.current_position()

        self.samples.append(sample)
        self._evict_old(sample.timestamp_ms)

        if len(self.samples) > self.window_size:
            self.samples = self.samples[-self.window_size:]

        return self._average()

    def current_position(self) -> Optional[SmoothedPosition]:
        """Smoothed position without adding a sample"""
        if not self.samples:
            return None
        return self._average()

    def _evict_old(self, newest_ms: int):
        # Age is measured against the newest fix so replayed traces behave
        # the same as live ones
        self.samples = [s for s in self.samples if newest_ms - s.timestamp_ms <= self.max_age_ms]

    def _average(self) -> SmoothedPosition:
        n = len(self.samples)
        return SmoothedPosition(
            lat=sum(s.lat for s in self.samples) / n,
            lng=sum(s.lng for s in self.samples) / n,
        )

    @property
    def sample_count(self) -> int:
        return len(self.samples)

    def is_warmed_up(self) -> bool:
        """True once the window is full"""
        return len(self.samples) >= self.window_size

    def reset(self):
        self.samples = []
        self.rejected_count = 0


class WeightedPositionSmoother(PositionSmoother):
    """Linearly weighted average: oldest fix weight 1, newest weight n.

    Follows a moving walker more closely than the simple average while
    still damping jitter.
    """

    def _average(self) -> SmoothedPosition:
        total_weight = 0
        sum_lat = 0.0
        sum_lng = 0.0
        for i, sample in enumerate(self.samples):
            weight = i + 1
            sum_lat += sample.lat * weight
            sum_lng += sample.lng * weight
            total_weight += weight
        return SmoothedPosition(lat=sum_lat / total_weight, lng=sum_lng / total_weight)


def create_smoother(kind: str = "simple", **config) -> PositionSmoother:
    """Build a smoother by name ("simple" or "weighted")"""
    if kind == "weighted":
        return WeightedPositionSmoother(**config)
    if kind != "simple":
        raise ValueError(f"Unknown smoother type: {kind}")
    return PositionSmoother(**config)
