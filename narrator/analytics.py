"""Analytics records for tour activity, queued for upload through SyncQueue."""

import uuid
from datetime import datetime, timezone
from typing import Optional

from .config import CONFIG
from .models import SmoothedPosition
from .sync import SyncQueue

TOUR_START = "tour_start"
TOUR_END = "tour_end"
AUTO_PLAY = "auto_play"
MANUAL_PLAY = "manual_play"
SKIP = "skip"


def round_coordinate(value: float, decimals: Optional[int] = None) -> float:
    """Coarsen a coordinate (3 decimals is roughly 111m)"""
    return round(value, decimals if decimals is not None else CONFIG["coordinate_rounding"])


class AnalyticsRecorder:
    """Builds event payloads for one tour session"""

    def __init__(self, queue: SyncQueue, session_id: Optional[str] = None,
                 language: Optional[str] = None):
        self.queue = queue
        self.session_id = session_id or str(uuid.uuid4())
        self.language = language or CONFIG["default_language"]

    def record(self, event_type: str, poi_id: Optional[str] = None,
               position: Optional[SmoothedPosition] = None, **metadata) -> dict:
        payload = {
            "event_type": event_type,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "session_id": self.session_id,
            "language": self.language,
        }
        if poi_id is not None:
            payload["poi_id"] = poi_id
        if position is not None:
            payload["rounded_lat"] = round_coordinate(position.lat)
            payload["rounded_lng"] = round_coordinate(position.lng)
        if metadata:
            payload["metadata"] = metadata
        self.queue.enqueue(payload)
        return payload

    def tour_start(self, position: Optional[SmoothedPosition] = None) -> dict:
        return self.record(TOUR_START, position=position)

    def tour_end(self, duration_s: float, pois_played: int) -> dict:
        return self.record(TOUR_END, duration_s=round(duration_s), pois_played=pois_played)

    def auto_play(self, poi_id: str, position: Optional[SmoothedPosition] = None,
                  distance_m: Optional[float] = None) -> dict:
        if distance_m is None:
            return self.record(AUTO_PLAY, poi_id, position)
        return self.record(AUTO_PLAY, poi_id, position, distance_m=round(distance_m, 1))

    def manual_play(self, poi_id: str) -> dict:
        return self.record(MANUAL_PLAY, poi_id)

    def skip(self, poi_id: str, played_s: Optional[float] = None) -> dict:
        if played_s is None:
            return self.record(SKIP, poi_id)
        return self.record(SKIP, poi_id, played_duration=round(played_s))
