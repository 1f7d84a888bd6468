"""Per-POI replay cooldown.

Once a POI has been narrated it stays quiet for the cooldown period, so that
walking back and forth across its boundary (or GPS drift at the edge) does
not replay it. The last-played clock survives restarts.
"""

from typing import Callable, Iterable, Optional

from .config import CONFIG
from .logger import Logger
from .models import now_ms
from .store import COOLDOWN_TRACKER, KeyValueStore


def is_cooling_down(last_played_ms: Optional[int], now: int, period_ms: int) -> bool:
    """True while a POI played at last_played_ms is still in cooldown"""
    if last_played_ms is None:
        return False
    return now - last_played_ms < period_ms


def format_cooldown(milliseconds: int) -> str:
    """Human-readable remaining time ("1h 30m", "5m", "42s")"""
    seconds = int(milliseconds // 1000)
    minutes = seconds // 60
    hours = minutes // 60
    if hours > 0:
        remaining_minutes = minutes % 60
        return f"{hours}h {remaining_minutes}m" if remaining_minutes else f"{hours}h"
    if minutes > 0:
        return f"{minutes}m"
    return f"{seconds}s"


class CooldownStore:
    """Persistent poi_id -> last played timestamp map"""

    def __init__(self, store: KeyValueStore, period_ms: Optional[int] = None,
                 clock: Callable[[], int] = now_ms, logger: Optional[Logger] = None):
        self.store = store
        self.period_ms = period_ms if period_ms is not None else CONFIG["cooldown_period_ms"]
        self.clock = clock
        self.logger = logger or store.logger

    def snapshot(self) -> dict[str, int]:
        """Copy of the whole tracker"""
        return dict(self.store.get(COOLDOWN_TRACKER, {}) or {})

    def last_played(self, poi_id: str) -> Optional[int]:
        return self.snapshot().get(poi_id)

    def can_play(self, poi_id: str) -> bool:
        """True if never played or the cooldown has elapsed"""
        return not is_cooling_down(self.last_played(poi_id), self.clock(), self.period_ms)

    def mark_as_played(self, poi_id: str, timestamp_ms: Optional[int] = None):
        """Start (or restart) the cooldown for a POI"""
        tracker = self.snapshot()
        tracker[poi_id] = timestamp_ms if timestamp_ms is not None else self.clock()
        self.store.set(COOLDOWN_TRACKER, tracker)

    def remaining(self, poi_id: str) -> int:
        """Milliseconds left in cooldown, 0 when playable"""
        last = self.last_played(poi_id)
        if last is None:
            return 0
        return max(0, self.period_ms - (self.clock() - last))

    def time_since_last_play(self, poi_id: str) -> Optional[int]:
        last = self.last_played(poi_id)
        if last is None:
            return None
        return self.clock() - last

    def list_active(self) -> list[str]:
        """POI ids currently in cooldown"""
        now = self.clock()
        return [poi_id for poi_id, last in self.snapshot().items()
                if is_cooling_down(last, now, self.period_ms)]

    def filter_playable(self, poi_ids: Iterable[str]) -> list[str]:
        tracker = self.snapshot()
        now = self.clock()
        return [poi_id for poi_id in poi_ids
                if not is_cooling_down(tracker.get(poi_id), now, self.period_ms)]

    def clear(self, poi_id: str):
        """Allow immediate replay of one POI"""
        tracker = self.snapshot()
        if tracker.pop(poi_id, None) is not None:
            self.store.set(COOLDOWN_TRACKER, tracker)

    def clear_all(self):
        self.store.delete(COOLDOWN_TRACKER)
