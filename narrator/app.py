"""Tour session: wires position fixes through to narration playback."""

import asyncio
import time
from typing import Callable, Optional, Sequence

from .analytics import AnalyticsRecorder
from .audio import AudioSink, Speech
from .config import CONFIG
from .cooldown import CooldownStore
from .errors import SignalError
from .event_server import (GEOFENCE_ENTER, GEOFENCE_EXIT, PLAYBACK_STATE, PRELOAD_PROGRESS,
                           SIGNAL_ERROR, SYNC_STATUS, EventServer)
from .geofence import GeofenceEngine, GeofenceTracker, ProximityMatch
from .gps import PositionSource, TracePlaybackSource, TraceRecorder
from .logger import Logger
from .models import (POI, AudioQueueItem, GeofenceEvent, GeofenceEventKind, PlaybackState,
                     PositionSample, PreloadProgress, PreloadResult, SmoothedPosition, now_ms)
from .motion import MotionClassifier
from .playback import PlaybackController
from .preload import AssetPreloader, CancelToken, needs_preload
from .smoothing import PositionSmoother
from .store import KeyValueStore
from .sync import ERROR as SYNC_ERROR, SyncQueue


class TourSession:
    """One walking tour: every component is owned by the session instance"""

    def __init__(self, pois: Sequence[POI], kv: KeyValueStore, sink: AudioSink, speech: Speech,
                 language: Optional[str] = None, smoother: Optional[PositionSmoother] = None,
                 motion: Optional[MotionClassifier] = None, sync: Optional[SyncQueue] = None,
                 preloader: Optional[AssetPreloader] = None, geofence_backend=None,
                 trigger_radius: Optional[float] = None, clock: Callable[[], int] = now_ms,
                 event_server: Optional[EventServer] = None,
                 on_event: Optional[Callable[[str, dict], None]] = None,
                 connectivity_probe: Optional[Callable[[], bool]] = None,
                 connectivity_interval: Optional[float] = None,
                 logger: Optional[Logger] = None):
        self.logger = logger or Logger()
        self.pois = list(pois)
        self.kv = kv
        self.language = language or CONFIG["default_language"]
        self.clock = clock
        self.event_server = event_server
        self.on_event = on_event

        self.smoother = smoother or PositionSmoother()
        self.motion = motion or MotionClassifier()
        self.cooldowns = CooldownStore(kv, clock=clock, logger=self.logger)
        self.engine = GeofenceEngine(self.cooldowns, trigger_radius=trigger_radius,
                                     backend=geofence_backend, logger=self.logger)
        self.tracker = GeofenceTracker(clock=clock)
        self.player = PlaybackController(
            sink, speech, language=self.language, logger=self.logger,
            on_state_change=self._on_playback_state,
            on_ended=self._on_playback_ended,
        )
        self.sync = sync or SyncQueue(kv, clock=clock, logger=self.logger)
        if self.sync.on_status is None:
            self.sync.on_status = self._on_sync_status
        self.analytics = AnalyticsRecorder(self.sync, language=self.language)
        # Without a probe the queue never goes offline, so it cannot get stuck there
        self.connectivity_probe = connectivity_probe or getattr(self.sync.transport, "reachable", None)
        self.connectivity_interval = connectivity_interval or CONFIG["connectivity_check_interval"]
        self.preloader = preloader

        self.loop: Optional[asyncio.AbstractEventLoop] = None
        self.source: Optional[PositionSource] = None
        self.position: Optional[SmoothedPosition] = None
        self.nearby: list[ProximityMatch] = []
        self.events: list[GeofenceEvent] = []
        self.signal_errors: list[SignalError] = []
        self.played: list[str] = []
        self.start_time = 0.0
        self.last_log_update = 0.0
        self._tasks: set[asyncio.Task] = set()
        self._periodic_sync: Optional[asyncio.Task] = None
        self._connectivity_watch: Optional[asyncio.Task] = None
        self._closing: Optional[asyncio.Event] = None
        self._stop_requested: Optional[asyncio.Event] = None

    # Event feed

    def emit(self, msg_type: str, data: dict):
        if self.event_server:
            self.event_server.send_event(msg_type, data)
        if self.on_event:
            self.on_event(msg_type, data)

    def _on_playback_state(self, state: PlaybackState, item: Optional[AudioQueueItem]):
        self.emit(PLAYBACK_STATE, {"state": state.value, "poi": item.poi.id if item else None,
                                   "title": item.title if item else None})

    def _on_playback_ended(self, item: AudioQueueItem):
        self.played.append(item.poi.id)

    def _on_sync_status(self, status: str):
        if status == SYNC_ERROR and self.connectivity_probe is not None:
            self.sync.mark_offline()
        self.emit(SYNC_STATUS, {"status": status, "pending": self.sync.pending_count})

    def _on_preload_progress(self, progress: PreloadProgress):
        self.emit(PRELOAD_PROGRESS, progress.to_dict())

    # Position pipeline

    def handle_fix(self, sample: PositionSample):
        """Entry point for position sources; safe to call from any thread"""
        if self.loop is None:
            raise RuntimeError("Session not started")
        self.loop.call_soon_threadsafe(self._accept_fix, sample)

    def handle_signal_error(self, error: SignalError):
        """Entry point for source errors; safe to call from any thread"""
        if self.loop is None:
            raise RuntimeError("Session not started")
        self.loop.call_soon_threadsafe(self._on_signal_error, error)

    def _on_signal_error(self, error: SignalError):
        # Surfaced only: fixes simply stop arriving until the source recovers
        self.signal_errors.append(error)
        self.logger.log("Position signal error", {"kind": error.kind, "message": error.message})
        self.emit(SIGNAL_ERROR, {"kind": error.kind, "message": error.message})

    def _accept_fix(self, sample: PositionSample):
        smoothed = self.smoother.add_sample(sample)
        if smoothed is None:
            return
        self.motion.add_reading(smoothed, sample.timestamp_ms)
        self.position = smoothed
        task = self.loop.create_task(self.process_fix(smoothed))
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task):
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            self.logger.log("Fix processing failed", {"error": repr(task.exception())})

    async def process_fix(self, position: SmoothedPosition) -> list[GeofenceEvent]:
        """Geofence one smoothed position and act on the resulting events"""
        response = await self.engine.check(position, self.pois)
        if response is None:
            return []
        self.nearby = response.nearby

        events = self.tracker.update(response)
        for event in events:
            self.events.append(event)
            enter = event.kind == GeofenceEventKind.ENTER
            self.logger.log("Geofence enter" if enter else "Geofence exit",
                            {"poi": event.poi_id, "distance": round(event.distance_m, 1)})
            self.emit(GEOFENCE_ENTER if enter else GEOFENCE_EXIT, event.to_dict())

        triggered = {m.poi.id: m for m in response.triggered}
        for event in events:
            if event.kind == GeofenceEventKind.ENTER and event.poi_id in triggered:
                await self._auto_play(triggered[event.poi_id], position)
        return events

    async def _auto_play(self, match: ProximityMatch, position: SmoothedPosition):
        poi = match.poi
        if self.motion.is_too_fast():
            self.logger.log("Moving too fast, not narrating", {"poi": poi.id, "speed": self.motion.format_speed()})
            return
        if not self.cooldowns.can_play(poi.id):
            return
        item = AudioQueueItem.for_poi(poi, self.language)
        if item is None:
            self.logger.log("No audio for POI", {"poi": poi.id, "language": self.language})
            return
        self.cooldowns.mark_as_played(poi.id)
        self.analytics.auto_play(poi.id, position, match.distance_m)
        await self.player.enqueue(item)

    # User actions

    async def play_poi(self, poi_id: str) -> bool:
        """Narrate a POI on request, regardless of distance"""
        poi = next((p for p in self.pois if p.id == poi_id), None)
        item = AudioQueueItem.for_poi(poi, self.language) if poi else None
        if item is None:
            return False
        self.cooldowns.mark_as_played(poi.id)
        self.analytics.manual_play(poi.id)
        await self.player.enqueue(item)
        return True

    async def skip(self):
        item = self.player.current_item or self.player.fallback_item
        if item:
            self.analytics.skip(item.poi.id)
        await self.player.skip()

    async def preload_assets(self, preload_all: bool = False, force: bool = False,
                             cancel: Optional[CancelToken] = None) -> Optional[PreloadResult]:
        """Fill the asset cache on a worker thread; None when already up to date"""
        if self.preloader is None:
            return None
        status = self.preloader.load_status()
        if not force and not needs_preload(status, len(self.pois), self.clock()):
            self.logger.log("Preload up to date", {"audio": len(status.preloaded_audio_ids)})
            return None
        loop = asyncio.get_running_loop()
        result = await loop.run_in_executor(None, lambda: self.preloader.preload(
            self.pois, self.language, current_position=self.position, preload_all=preload_all,
            on_progress=self._on_preload_progress, cancel=cancel))
        await loop.run_in_executor(None, lambda: self.preloader.preload_images(
            self.pois, on_progress=self._on_preload_progress, cancel=cancel))
        return result

    # Lifecycle

    def get_state(self) -> dict:
        """Get current state as dict for logging"""
        item = self.player.current_item
        state = {
            "speed": self.motion.format_speed(),
            "motion": self.motion.classify(),
            "playback": self.player.state.value,
            "current_poi": item.poi.id if item else None,
            "queued": self.player.queue_length,
            "nearby": [m.poi.id for m in self.nearby],
            "inside": sorted(self.tracker.active_ids),
            "played": len(self.played),
            "pending_analytics": self.sync.pending_count,
            "gps_status": self.source.get_status() if self.source else "none",
        }
        if self.position:
            state["location"] = {"lat": self.position.lat, "lng": self.position.lng}
        return state

    def periodic_update(self):
        """Handle periodic status updates"""
        now = time.time()
        if now - self.last_log_update >= CONFIG["log_interval"]:
            self.logger.log("STATE", self.get_state())
            self.last_log_update = now

    async def start(self, source: Optional[PositionSource] = None, sync_interval: Optional[float] = None):
        self.loop = asyncio.get_running_loop()
        self._stop_requested = asyncio.Event()
        self.start_time = time.time()
        self.logger.log("Tour started", {"pois": len(self.pois), "language": self.language})
        self.analytics.tour_start(self.position)
        if self.sync.transport is not None:
            self._periodic_sync = self.loop.create_task(self.sync.run_periodic(sync_interval))
            if self.connectivity_probe is not None:
                self._closing = asyncio.Event()
                self._connectivity_watch = self.loop.create_task(self._watch_connectivity())
        if source is not None:
            self.source = source
            source.subscribe(self.handle_fix, self.handle_signal_error)

    async def _watch_connectivity(self):
        """While the sync endpoint is unreachable, re-check it every interval"""
        while not self._closing.is_set():
            try:
                await asyncio.wait_for(self._closing.wait(), timeout=self.connectivity_interval)
                break
            except asyncio.TimeoutError:
                pass
            if self.sync.status == SYNC_ERROR:
                self.sync.mark_offline()
            if self.sync.online:
                continue
            reachable = await self.loop.run_in_executor(None, self.connectivity_probe)
            if reachable and not self._closing.is_set():
                await self.sync.set_online(True)

    def request_stop(self):
        if self._stop_requested is not None:
            self._stop_requested.set()

    async def stop(self):
        if self.source is not None:
            self.source.unsubscribe()
        if self._tasks:
            await asyncio.wait(set(self._tasks), timeout=5)
        await self.player.stop()
        self.engine.close()
        if self.preloader is not None:
            self.preloader.close()

        duration = time.time() - self.start_time if self.start_time else 0
        self.analytics.tour_end(duration, len(set(self.played)))
        self.sync.stop()
        if self._periodic_sync is not None:
            await self._periodic_sync
            self._periodic_sync = None
        if self._connectivity_watch is not None:
            self._closing.set()
            await self._connectivity_watch
            self._connectivity_watch = None
        if self.sync.transport is not None:
            await self.sync.sync_now(force=True)

        if isinstance(self.source, TraceRecorder):
            self.source.save()
        self.logger.log("Tour summary", {
            "duration": round(duration),
            "pois_played": len(set(self.played)),
            "geofence_events": len(self.events),
            "signal_errors": len(self.signal_errors),
        })

    async def _wait_for_position(self, timeout: float):
        # Nearby preloading needs a first fix; without one everything is preloaded
        deadline = time.monotonic() + timeout
        while self.position is None and time.monotonic() < deadline:
            await asyncio.sleep(0.2)

    def _source_finished(self) -> bool:
        source = self.source.source if isinstance(self.source, TraceRecorder) else self.source
        return isinstance(source, TracePlaybackSource) and source.finished.is_set()

    async def run(self, source: PositionSource, preload: bool = False, preload_all: bool = False):
        """Run until request_stop(), cancellation, or the end of a replayed trace"""
        await self.start(source)
        try:
            if preload and not preload_all:
                await self._wait_for_position(CONFIG["gps_timeout"])
            if preload or preload_all:
                await self.preload_assets(preload_all=preload_all)
            while not self._stop_requested.is_set():
                self.periodic_update()
                if self._source_finished() and not self._tasks and self.player.state in (
                        PlaybackState.IDLE, PlaybackState.ERROR) and not self.player.queue:
                    self.logger.log("Playback finished")
                    break
                try:
                    await asyncio.wait_for(self._stop_requested.wait(), timeout=0.5)
                except asyncio.TimeoutError:
                    pass
        finally:
            await self.stop()
