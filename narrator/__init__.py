"""Narrator - GPS-triggered audio narration for walking tours."""

from .config import CONFIG
from .errors import NarratorError, SignalError, MediaError, PlaybackAborted, PreloadFetchError, SyncError
from .models import (
    PositionSample,
    SmoothedPosition,
    POI,
    GeofenceEvent,
    GeofenceEventKind,
    AudioQueueItem,
    PlaybackState,
    PreloadStatus,
    PreloadProgress,
    PreloadResult,
)
from .logger import Logger
from .store import KeyValueStore
from .geo import (
    haversine_distance,
    bearing_between,
    bearing_to_compass,
    filter_within_radius,
    find_nearest,
    retry_with_backoff,
)
from .smoothing import PositionSmoother, WeightedPositionSmoother, create_smoother
from .motion import MotionClassifier
from .cooldown import CooldownStore
from .geofence import GeofenceEngine, GeofenceTracker, InlineGeofenceBackend, ThreadGeofenceBackend
from .audio import AudioSink, ProcessAudioSink, FakeAudioSink, Speech, EspeakSpeech, FakeSpeech
from .playback import PlaybackController
from .assets import AssetStore, DiskAssetStore, MemoryAssetStore
from .preload import AssetPreloader, CancelToken, needs_preload
from .sync import SyncQueue, HttpBatchTransport
from .analytics import AnalyticsRecorder
from .directory import POIDirectory
from .gps import (
    PositionSource,
    TermuxPositionSource,
    StaticPositionSource,
    TraceRecorder,
    TracePlaybackSource,
    FakePositionSource,
)
from .event_server import EventServer, WebSocketPositionSource
from .app import TourSession
from .__main__ import main

__all__ = [
    "CONFIG",
    "NarratorError",
    "SignalError",
    "MediaError",
    "PlaybackAborted",
    "PreloadFetchError",
    "SyncError",
    "PositionSample",
    "SmoothedPosition",
    "POI",
    "GeofenceEvent",
    "GeofenceEventKind",
    "AudioQueueItem",
    "PlaybackState",
    "PreloadStatus",
    "PreloadProgress",
    "PreloadResult",
    "Logger",
    "KeyValueStore",
    "haversine_distance",
    "bearing_between",
    "bearing_to_compass",
    "filter_within_radius",
    "find_nearest",
    "retry_with_backoff",
    "PositionSmoother",
    "WeightedPositionSmoother",
    "create_smoother",
    "MotionClassifier",
    "CooldownStore",
    "GeofenceEngine",
    "GeofenceTracker",
    "InlineGeofenceBackend",
    "ThreadGeofenceBackend",
    "AudioSink",
    "ProcessAudioSink",
    "FakeAudioSink",
    "Speech",
    "EspeakSpeech",
    "FakeSpeech",
    "PlaybackController",
    "AssetStore",
    "DiskAssetStore",
    "MemoryAssetStore",
    "AssetPreloader",
    "CancelToken",
    "needs_preload",
    "SyncQueue",
    "HttpBatchTransport",
    "AnalyticsRecorder",
    "POIDirectory",
    "PositionSource",
    "TermuxPositionSource",
    "StaticPositionSource",
    "TraceRecorder",
    "TracePlaybackSource",
    "FakePositionSource",
    "EventServer",
    "WebSocketPositionSource",
    "TourSession",
    "main",
]
