"""Data classes for Narrator."""

import time
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Optional

from .config import CONFIG


def now_ms() -> int:
    """Wall-clock time in epoch milliseconds"""
    return int(time.time() * 1000)


@dataclass
class PositionSample:
    """A raw fix from the position source"""
    lat: float
    lng: float
    timestamp_ms: int
    accuracy_m: Optional[float] = None
    heading_deg: Optional[float] = None
    speed_mps: Optional[float] = None

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: dict) -> "PositionSample":
        return cls(**d)


@dataclass
class SmoothedPosition:
    lat: float
    lng: float


@dataclass
class SpeedReading:
    speed_mps: float
    timestamp_ms: int
    position: SmoothedPosition


@dataclass
class POI:
    """A narrated location. Read-only to the pipeline."""
    id: str
    lat: float
    lng: float
    radius_m: float
    priority: int
    audio_urls: dict[str, str] = field(default_factory=dict)
    image_url: Optional[str] = None
    name: str = ""
    description: str = ""

    def audio_url_for(self, language: str) -> Optional[str]:
        """Resolve requested language, then the fallback language, then nothing"""
        url = self.audio_urls.get(language)
        if url:
            return url
        return self.audio_urls.get(CONFIG["fallback_language"])

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: dict) -> "POI":
        """Build a POI from a directory record, validating it.

        Legacy flat `audio_url_<lang>` fields are folded into the
        language map so lookups never depend on string-built attribute names.
        Raises ValueError on malformed records.
        """
        poi_id = d.get("id")
        if poi_id is None or str(poi_id).strip() == "":
            raise ValueError("POI record has no id")
        poi_id = str(poi_id)

        try:
            lat = float(d["lat"])
            lng = float(d["lng"] if "lng" in d else d["lon"])
        except (KeyError, TypeError, ValueError):
            raise ValueError(f"POI {poi_id}: missing or non-numeric coordinates")
        if not (-90 <= lat <= 90 and -180 <= lng <= 180):
            raise ValueError(f"POI {poi_id}: coordinates out of range")

        try:
            radius = float(d.get("radius_m", d.get("radius", 0)) or 0)
            priority = int(d.get("priority", 0) or 0)
        except (TypeError, ValueError):
            raise ValueError(f"POI {poi_id}: radius/priority must be numeric")

        audio_urls: dict[str, str] = {}
        raw_map = d.get("audio_urls") or {}
        if not isinstance(raw_map, dict):
            raise ValueError(f"POI {poi_id}: audio_urls must be a mapping")
        for key, value in d.items():
            if key.startswith("audio_url_") and value:
                audio_urls[key[len("audio_url_"):]] = value
        audio_urls.update({k: v for k, v in raw_map.items() if v})
        for lang, url in audio_urls.items():
            if not isinstance(lang, str) or not isinstance(url, str) or not url.strip():
                raise ValueError(f"POI {poi_id}: bad audio URL for language {lang!r}")

        image_url = d.get("image_url") or None
        return cls(
            id=poi_id,
            lat=lat,
            lng=lng,
            radius_m=radius,
            priority=priority,
            audio_urls=audio_urls,
            image_url=image_url,
            name=d.get("name") or "",
            description=d.get("description") or "",
        )


class GeofenceEventKind(str, Enum):
    ENTER = "enter"
    EXIT = "exit"


@dataclass
class GeofenceEvent:
    poi_id: str
    distance_m: float
    timestamp_ms: int
    kind: GeofenceEventKind

    def to_dict(self) -> dict:
        return {
            "poi_id": self.poi_id,
            "distance": round(self.distance_m, 1),
            "ts": self.timestamp_ms,
            "kind": self.kind.value,
        }


@dataclass
class AudioQueueItem:
    poi: POI
    audio_url: str
    title: str
    description: str = ""
    language: str = CONFIG["default_language"]

    @classmethod
    def for_poi(cls, poi: POI, language: str) -> Optional["AudioQueueItem"]:
        """Queue item for a POI in the given language, None without audio"""
        url = poi.audio_url_for(language)
        if not url:
            return None
        return cls(poi=poi, audio_url=url, title=poi.name or poi.id,
                   description=poi.description, language=language)


class PlaybackState(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    PLAYING = "playing"
    PAUSED = "paused"
    ERROR = "error"


@dataclass
class PreloadStatus:
    total_pois: int = 0
    preloaded_pois: int = 0
    preloaded_audio_ids: list[str] = field(default_factory=list)
    preloaded_image_ids: list[str] = field(default_factory=list)
    last_preload_time_ms: int = 0

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: Optional[dict]) -> "PreloadStatus":
        if not d:
            return cls()
        return cls(
            total_pois=d.get("total_pois", 0),
            preloaded_pois=d.get("preloaded_pois", 0),
            preloaded_audio_ids=list(d.get("preloaded_audio_ids", [])),
            preloaded_image_ids=list(d.get("preloaded_image_ids", [])),
            last_preload_time_ms=d.get("last_preload_time_ms", 0),
        )


@dataclass
class PreloadProgress:
    total: int
    completed: int
    pending: int
    failed: int
    percent: int
    current_url: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class PreloadResult:
    success_count: int = 0
    failed_count: int = 0
    already_cached_count: int = 0
    preloaded_ids: list[str] = field(default_factory=list)
    completed_at_ms: int = 0
    cancelled: bool = False

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class QueuedAnalyticsEvent:
    id: str
    payload: dict
    enqueued_at_ms: int

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: dict) -> "QueuedAnalyticsEvent":
        return cls(id=d["id"], payload=d.get("payload", {}),
                   enqueued_at_ms=d.get("enqueued_at_ms", 0))
