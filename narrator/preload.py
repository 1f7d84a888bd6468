"""Offline preloading of narration audio and POI images.

URLs are fetched into an AssetStore before they are needed. The fetch loop
normally runs on a PreloadWorker thread that reports per-URL outcomes over a
queue; if the worker goes quiet for longer than the worker timeout the
remaining URLs are assumed fetched, and without a worker the loop runs
directly on the caller's thread.
"""

import queue
import threading
import time
from typing import Callable, Iterable, Optional, Sequence

import requests

from .assets import CACHED, FAILED, STORED, AssetStore, fetch_and_store
from .config import CONFIG
from .geo import filter_within_radius
from .logger import Logger
from .models import POI, PreloadProgress, PreloadResult, PreloadStatus, SmoothedPosition, now_ms
from .store import PRELOAD_STATUS, KeyValueStore

ProgressCallback = Callable[[PreloadProgress], None]


class CancelToken:
    """Stops a preload from issuing new fetches; fetched assets stay cached"""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self):
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


class PreloadWorker:
    """Background fetch thread.

    Jobs are (urls, store, cancel, reply) tuples. For every URL the worker
    puts ("progress", url, outcome) on the reply queue and finishes the job
    with ("complete", None, None).
    """

    def __init__(self, session=None, timeout: Optional[float] = None,
                 logger: Optional[Logger] = None):
        self.session = session
        self.timeout = timeout or CONFIG["asset_fetch_timeout"]
        self.logger = logger
        self._jobs: queue.Queue = queue.Queue()
        self._thread: Optional[threading.Thread] = None

    def start(self):
        if self.is_alive():
            return
        self._thread = threading.Thread(target=self._run, name="preload-worker", daemon=True)
        self._thread.start()

    def is_alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def submit(self, urls: Sequence[str], store: AssetStore, cancel: CancelToken,
               reply: queue.Queue):
        self._jobs.put((list(urls), store, cancel, reply))

    def _run(self):
        while True:
            job = self._jobs.get()
            if job is None:
                break
            urls, store, cancel, reply = job
            for url in urls:
                if cancel.cancelled:
                    break
                outcome = fetch_and_store(url, store, self.session, self.timeout, self.logger)
                reply.put(("progress", url, outcome))
            reply.put(("complete", None, None))

    def close(self):
        if self.is_alive():
            self._jobs.put(None)
            self._thread.join(timeout=2)
        self._thread = None


class _Tally:
    """Per-URL outcomes for one preload run, with progress reporting"""

    def __init__(self, urls: Sequence[str], on_progress: Optional[ProgressCallback]):
        self.urls = list(urls)
        self.outcomes: dict[str, str] = {}
        self.on_progress = on_progress

    def record(self, url: str, outcome: str):
        self.outcomes[url] = outcome
        self.report(url)

    def report(self, current_url: Optional[str] = None):
        if not self.on_progress:
            return
        total = len(self.urls)
        completed = len(self.outcomes)
        failed = sum(1 for o in self.outcomes.values() if o == FAILED)
        self.on_progress(PreloadProgress(
            total=total,
            completed=completed,
            pending=total - completed,
            failed=failed,
            percent=round(completed / total * 100) if total else 100,
            current_url=current_url,
        ))

    def count(self, outcome: str) -> int:
        return sum(1 for o in self.outcomes.values() if o == outcome)

    def ok(self, url: str) -> bool:
        return self.outcomes.get(url) in (CACHED, STORED)


def unique_urls(urls: Iterable[Optional[str]]) -> list[str]:
    """Drop empties and duplicates, keeping first-seen order"""
    seen = set()
    result = []
    for url in urls:
        if url and url not in seen:
            seen.add(url)
            result.append(url)
    return result


def needs_preload(status: PreloadStatus, poi_count: int, now: Optional[int] = None,
                  max_age_ms: Optional[int] = None) -> bool:
    """Re-preload policy: never preloaded, stale, or the POI set changed size"""
    now = now if now is not None else now_ms()
    max_age_ms = max_age_ms if max_age_ms is not None else CONFIG["preload_max_age_ms"]
    if not status.last_preload_time_ms:
        return True
    if now - status.last_preload_time_ms > max_age_ms:
        return True
    return status.total_pois != poi_count


def _merge(existing: list[str], new: Iterable[str]) -> list[str]:
    merged = list(existing)
    for item in new:
        if item not in merged:
            merged.append(item)
    return merged


class AssetPreloader:
    """Fills an AssetStore for offline narration and tracks PreloadStatus"""

    def __init__(self, store: AssetStore, kv: KeyValueStore, image_store: Optional[AssetStore] = None,
                 session=None, use_worker: bool = True, worker_timeout: Optional[float] = None,
                 logger: Optional[Logger] = None):
        self.store = store
        self.image_store = image_store or store
        self.kv = kv
        self.session = session or requests.Session()
        self.worker_timeout = worker_timeout if worker_timeout is not None else CONFIG["preload_worker_timeout"]
        self.logger = logger or Logger()
        self.worker = PreloadWorker(self.session, logger=self.logger) if use_worker else None
        self._busy = threading.Lock()

    # Status

    def load_status(self) -> PreloadStatus:
        return PreloadStatus.from_dict(self.kv.get(PRELOAD_STATUS))

    def _save_status(self, status: PreloadStatus):
        self.kv.set(PRELOAD_STATUS, status.to_dict())

    # Fetch loop

    def _fetch(self, urls: list[str], store: AssetStore, on_progress: Optional[ProgressCallback],
               cancel: CancelToken) -> _Tally:
        tally = _Tally(urls, on_progress)
        tally.report()
        if not urls:
            return tally
        if self.worker is not None:
            self.worker.start()
        if self.worker is not None and self.worker.is_alive():
            self._fetch_via_worker(tally, store, cancel)
        else:
            self._fetch_directly(tally, store, cancel)
        return tally

    def _fetch_via_worker(self, tally: _Tally, store: AssetStore, cancel: CancelToken):
        reply: queue.Queue = queue.Queue()
        self.worker.submit(tally.urls, store, cancel, reply)
        while True:
            try:
                kind, url, outcome = reply.get(timeout=self.worker_timeout)
            except queue.Empty:
                pending = [u for u in tally.urls if u not in tally.outcomes]
                self.logger.log("Preload worker timed out, assuming fetched", {"pending": len(pending)})
                for url in pending:
                    tally.record(url, STORED)
                return
            if kind == "complete":
                return
            tally.record(url, outcome)

    def _fetch_directly(self, tally: _Tally, store: AssetStore, cancel: CancelToken):
        for url in tally.urls:
            if cancel.cancelled:
                break
            tally.record(url, fetch_and_store(url, store, self.session, logger=self.logger))

    def _begin(self):
        if not self._busy.acquire(blocking=False):
            raise RuntimeError("Preload already in progress")

    # Public passes

    def preload(self, pois: Sequence[POI], language: str,
                current_position: Optional[SmoothedPosition] = None,
                radius: Optional[float] = None, preload_all: bool = False,
                on_progress: Optional[ProgressCallback] = None,
                cancel: Optional[CancelToken] = None) -> PreloadResult:
        """Fetch one audio file per selected POI in the given language.

        With a current position (and preload_all off) only POIs within radius
        are selected. POIs are processed highest priority first; URLs shared
        by several POIs are fetched once.
        """
        self._begin()
        try:
            cancel = cancel or CancelToken()
            radius = radius or CONFIG["preload_radius"]
            selected = list(pois)
            if current_position is not None and not preload_all:
                selected = [poi for poi, _ in filter_within_radius(
                    current_position.lat, current_position.lng, selected, radius)]
            selected.sort(key=lambda poi: -poi.priority)

            poi_urls = {poi.id: poi.audio_url_for(language) for poi in selected}
            urls = unique_urls(poi_urls[poi.id] for poi in selected)
            self.logger.log("Preloading audio", {
                "language": language, "pois": len(selected), "urls": len(urls),
            })

            tally = self._fetch(urls, self.store, on_progress, cancel)
            preloaded_ids = [poi.id for poi in selected if poi_urls[poi.id] and tally.ok(poi_urls[poi.id])]
            result = self._result(tally, preloaded_ids, cancel)

            status = self.load_status()
            status.preloaded_audio_ids = _merge(status.preloaded_audio_ids, preloaded_ids)
            status.total_pois = len(pois)
            status.preloaded_pois = len(status.preloaded_audio_ids)
            status.last_preload_time_ms = result.completed_at_ms
            self._save_status(status)
            return result
        finally:
            self._busy.release()

    def preload_all_languages(self, pois: Sequence[POI], on_progress: Optional[ProgressCallback] = None,
                              cancel: Optional[CancelToken] = None) -> PreloadResult:
        """Fetch every language's audio for every POI"""
        self._begin()
        try:
            cancel = cancel or CancelToken()
            urls = unique_urls(url for poi in pois for url in poi.audio_urls.values())
            self.logger.log("Preloading all audio", {"pois": len(pois), "urls": len(urls)})

            tally = self._fetch(urls, self.store, on_progress, cancel)
            preloaded_ids = [poi.id for poi in pois
                             if poi.audio_urls and all(tally.ok(u) for u in poi.audio_urls.values())]
            result = self._result(tally, preloaded_ids, cancel)

            status = self.load_status()
            status.preloaded_audio_ids = _merge(status.preloaded_audio_ids, preloaded_ids)
            status.total_pois = len(pois)
            status.preloaded_pois = len(status.preloaded_audio_ids)
            status.last_preload_time_ms = result.completed_at_ms
            self._save_status(status)
            return result
        finally:
            self._busy.release()

    def preload_images(self, pois: Sequence[POI], on_progress: Optional[ProgressCallback] = None,
                       cancel: Optional[CancelToken] = None) -> PreloadResult:
        """Separate pass for POI images; only the image ids in the status change"""
        self._begin()
        try:
            cancel = cancel or CancelToken()
            with_images = [poi for poi in pois if poi.image_url]
            urls = unique_urls(poi.image_url for poi in with_images)

            tally = self._fetch(urls, self.image_store, on_progress, cancel)
            preloaded_ids = [poi.id for poi in with_images if tally.ok(poi.image_url)]
            result = self._result(tally, preloaded_ids, cancel)

            status = self.load_status()
            status.preloaded_image_ids = _merge(status.preloaded_image_ids, preloaded_ids)
            if not status.total_pois:
                status.total_pois = len(pois)
            status.last_preload_time_ms = result.completed_at_ms
            self._save_status(status)
            return result
        finally:
            self._busy.release()

    def _result(self, tally: _Tally, preloaded_ids: list[str], cancel: CancelToken) -> PreloadResult:
        result = PreloadResult(
            success_count=tally.count(STORED),
            failed_count=tally.count(FAILED),
            already_cached_count=tally.count(CACHED),
            preloaded_ids=preloaded_ids,
            completed_at_ms=now_ms(),
            cancelled=cancel.cancelled,
        )
        self.logger.log("Preload finished", result.to_dict())
        return result

    # Playback support

    def resolve_path(self, url: str) -> Optional[str]:
        """Local file for url, fetching it into the store on a miss"""
        path = self.store.path_for(url)
        if path:
            return path
        if fetch_and_store(url, self.store, self.session, logger=self.logger) == FAILED:
            return None
        return self.store.path_for(url)

    def clear(self):
        clear_preloaded(self.store, self.kv)
        if self.image_store is not self.store:
            self.image_store.clear()

    def close(self):
        if self.worker is not None:
            self.worker.close()


def clear_preloaded(store: AssetStore, kv: KeyValueStore):
    """Delete cached assets and forget the preload status"""
    store.clear()
    kv.delete(PRELOAD_STATUS)
