"""Offline analytics queue with batched, all-or-nothing upload."""

import asyncio
import uuid
from typing import Callable, Optional

import requests

from .config import CONFIG
from .errors import SyncError
from .logger import Logger
from .models import QueuedAnalyticsEvent, now_ms
from .store import ANALYTICS_QUEUE, LAST_SYNC, KeyValueStore

IDLE = "idle"
SYNCING = "syncing"
SUCCESS = "success"
ERROR = "error"


class HttpBatchTransport:
    """POSTs a batch as {"events": [...]} and raises SyncError unless 2xx"""

    def __init__(self, url: str, session=None, timeout: Optional[float] = None):
        self.url = url
        self.session = session or requests.Session()
        self.timeout = timeout or CONFIG["sync_timeout"]

    def __call__(self, events: list[dict]):
        try:
            response = self.session.post(self.url, json={"events": events}, timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            raise SyncError(f"Batch upload failed: {e}")

    def reachable(self) -> bool:
        """True if the endpoint answers at all (any HTTP status)"""
        try:
            self.session.head(self.url, timeout=self.timeout)
        except requests.RequestException:
            return False
        return True


class SyncQueue:
    """Persistent queue of analytics payloads drained in one batch.

    A sync sends every queued event in a single transport call. Only when
    the call succeeds are exactly those events removed; on failure the queue
    is left as it was for a later attempt.
    """

    def __init__(self, kv: KeyValueStore, transport: Optional[Callable[[list[dict]], None]] = None,
                 throttle_ms: Optional[int] = None, clock: Callable[[], int] = now_ms,
                 online: bool = True, on_status: Optional[Callable[[str], None]] = None,
                 logger: Optional[Logger] = None):
        self.kv = kv
        self.transport = transport
        self.throttle_ms = throttle_ms if throttle_ms is not None else CONFIG["sync_throttle_ms"]
        self.clock = clock
        self.online = online
        self.on_status = on_status
        self.logger = logger or kv.logger
        self.status = IDLE
        self.syncing = False
        self.last_attempt_ms: Optional[int] = None
        self._stop_event = asyncio.Event()

    def _load(self) -> list[QueuedAnalyticsEvent]:
        return [QueuedAnalyticsEvent.from_dict(d) for d in self.kv.get(ANALYTICS_QUEUE, []) or []]

    def _save(self, events: list[QueuedAnalyticsEvent]):
        self.kv.set(ANALYTICS_QUEUE, [e.to_dict() for e in events])

    def _set_status(self, status: str):
        self.status = status
        if self.on_status:
            self.on_status(status)

    def enqueue(self, payload: dict) -> str:
        """Append a payload; returns its queue id"""
        event = QueuedAnalyticsEvent(id=uuid.uuid4().hex, payload=payload, enqueued_at_ms=self.clock())
        events = self._load()
        events.append(event)
        self._save(events)
        return event.id

    def pending(self) -> list[QueuedAnalyticsEvent]:
        return self._load()

    @property
    def pending_count(self) -> int:
        return len(self._load())

    @property
    def last_sync_ms(self) -> Optional[int]:
        return self.kv.get(LAST_SYNC)

    async def sync_now(self, force: bool = False) -> Optional[int]:
        """Upload the whole queue. Returns the number sent, None if skipped or failed.

        force skips the throttle (used for the shutdown flush).
        """
        now = self.clock()
        if (not force and self.last_attempt_ms is not None
                and now - self.last_attempt_ms < self.throttle_ms):
            self.logger.log("Sync throttled, skipping")
            return None
        if self.syncing:
            self.logger.log("Sync already in progress, skipping")
            return None
        if not self.online:
            self.logger.log("Offline, skipping sync")
            return None

        self.last_attempt_ms = now
        self.syncing = True
        self._set_status(SYNCING)
        try:
            batch = self._load()
            if batch and self.transport is None:
                raise SyncError("No sync endpoint configured")
            if batch:
                loop = asyncio.get_running_loop()
                await loop.run_in_executor(None, self.transport, [e.payload for e in batch])
                sent = {e.id for e in batch}
                # Events queued while the upload was in flight stay queued
                self._save([e for e in self._load() if e.id not in sent])
            self.kv.set(LAST_SYNC, now)
            self.logger.log("Analytics synced", {"count": len(batch), "pending": self.pending_count})
            self._set_status(SUCCESS)
            return len(batch)
        except SyncError as e:
            self.logger.log("Sync failed", {"error": str(e), "pending": self.pending_count})
            self._set_status(ERROR)
            return None
        finally:
            self.syncing = False

    def mark_offline(self):
        if self.online:
            self.online = False
            self.logger.log("Sync endpoint unreachable, queueing offline", {"pending": self.pending_count})

    async def set_online(self, online: bool):
        """Record connectivity; coming back online triggers a sync"""
        was_online = self.online
        self.online = online
        if online and not was_online:
            self.logger.log("Back online, syncing")
            await self.sync_now()

    async def run_periodic(self, interval: Optional[float] = None):
        """Sync every interval seconds until stop() is called"""
        interval = interval or CONFIG["sync_interval"]
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                await self.sync_now()

    def stop(self):
        self._stop_event.set()
