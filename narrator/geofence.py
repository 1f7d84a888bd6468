"""Geofence evaluation off the event loop.

Every fix needs a distance check against every POI. The computation runs on a
worker thread and talks to the caller through request/response messages. Fixes
can arrive faster than the worker answers, so only the response to the most
recent request is honored; older ones resolve to None.
"""

import asyncio
import queue
import threading
from dataclasses import dataclass, field
from typing import Optional, Sequence

from .config import CONFIG
from .cooldown import CooldownStore, is_cooling_down
from .geo import haversine_distance
from .logger import Logger
from .models import POI, GeofenceEvent, GeofenceEventKind, SmoothedPosition, now_ms


@dataclass
class GeofenceRequest:
    request_id: int
    lat: float
    lng: float
    pois: Sequence[POI]
    trigger_radius: float
    nearby_multiplier: float
    cooldown_tracker: dict[str, int]
    cooldown_period_ms: int
    now_ms: int


@dataclass
class ProximityMatch:
    poi: POI
    distance_m: float


@dataclass
class GeofenceResponse:
    request_id: int
    nearby: list[ProximityMatch] = field(default_factory=list)     # display radius
    inside: list[ProximityMatch] = field(default_factory=list)     # trigger radius, any cooldown
    triggered: list[ProximityMatch] = field(default_factory=list)  # inside and playable, best first
    skipped: list[str] = field(default_factory=list)               # malformed POI ids

    @property
    def triggered_ids(self) -> list[str]:
        return [m.poi.id for m in self.triggered]


def compute_geofence(request: GeofenceRequest, logger: Optional[Logger] = None) -> GeofenceResponse:
    """Classify POIs as nearby, inside and triggered for one position"""
    response = GeofenceResponse(request_id=request.request_id)
    nearby_radius = request.trigger_radius * request.nearby_multiplier

    for poi in request.pois:
        try:
            poi_id = poi.id
            distance = haversine_distance(request.lat, request.lng, float(poi.lat), float(poi.lng))
            trigger_distance = max(float(poi.radius_m or 0), request.trigger_radius)
            if not isinstance(poi.priority, int):
                raise TypeError(f"priority {poi.priority!r} is not an int")
        except (AttributeError, TypeError, ValueError) as e:
            poi_id = str(getattr(poi, "id", "?"))
            response.skipped.append(poi_id)
            if logger:
                logger.log("Skipping malformed POI", {"poi": poi_id, "error": str(e)})
            continue

        match = ProximityMatch(poi, distance)
        if distance <= nearby_radius:
            response.nearby.append(match)
        if distance <= trigger_distance:
            response.inside.append(match)
            last_played = request.cooldown_tracker.get(poi_id)
            if not is_cooling_down(last_played, request.now_ms, request.cooldown_period_ms):
                response.triggered.append(match)

    response.nearby.sort(key=lambda m: m.distance_m)
    response.inside.sort(key=lambda m: m.distance_m)
    response.triggered.sort(key=lambda m: (-m.poi.priority, m.distance_m))
    return response


class InlineGeofenceBackend:
    """Computes on the caller's thread; fine for small POI sets"""

    def __init__(self, logger: Optional[Logger] = None):
        self.logger = logger

    async def submit(self, request: GeofenceRequest) -> Optional[GeofenceResponse]:
        return compute_geofence(request, self.logger)

    def close(self):
        pass


class ThreadGeofenceBackend:
    """Worker thread fed through a request queue.

    When several requests are waiting, the worker only computes the newest
    and resolves the older ones with None.
    """

    def __init__(self, logger: Optional[Logger] = None):
        self.logger = logger
        self._requests: queue.Queue = queue.Queue()
        self._thread: Optional[threading.Thread] = None
        self._running = False

    def start(self):
        if self._thread and self._thread.is_alive():
            return
        self._running = True
        self._thread = threading.Thread(target=self._run, name="geofence-worker", daemon=True)
        self._thread.start()

    def _run(self):
        while self._running:
            item = self._requests.get()
            if item is None:
                break
            # Keep only the newest waiting request
            stale = []
            stop = False
            while True:
                try:
                    newer = self._requests.get_nowait()
                except queue.Empty:
                    break
                if newer is None:
                    stop = True
                    break
                stale.append(item)
                item = newer
            for request, loop, future in stale:
                _reply(loop, future, None, None)

            request, loop, future = item
            try:
                response = compute_geofence(request, self.logger)
                _reply(loop, future, response, None)
            except Exception as e:
                _reply(loop, future, None, e)
            if stop:
                break

    async def submit(self, request: GeofenceRequest) -> Optional[GeofenceResponse]:
        self.start()
        loop = asyncio.get_running_loop()
        future = loop.create_future()
        self._requests.put((request, loop, future))
        return await future

    def close(self):
        self._running = False
        if self._thread and self._thread.is_alive():
            self._requests.put(None)
            self._thread.join(timeout=2)
        self._thread = None


def _reply(loop: asyncio.AbstractEventLoop, future: asyncio.Future, result,
           error: Optional[BaseException]):
    """Hand a result back to the requesting loop from the worker thread"""
    try:
        loop.call_soon_threadsafe(_resolve, future, result, error)
    except RuntimeError:
        pass  # requesting loop already closed


def _resolve(future: asyncio.Future, result, error: Optional[BaseException]):
    if future.done():
        return
    if error is not None:
        future.set_exception(error)
    else:
        future.set_result(result)


class GeofenceEngine:
    """Async request/response front end over a geofence backend"""

    def __init__(self, cooldowns: CooldownStore, trigger_radius: Optional[float] = None,
                 nearby_multiplier: Optional[float] = None, backend=None,
                 logger: Optional[Logger] = None):
        self.cooldowns = cooldowns
        self.trigger_radius = trigger_radius or CONFIG["trigger_radius"]
        self.nearby_multiplier = nearby_multiplier or CONFIG["nearby_radius_multiplier"]
        self.logger = logger or Logger()
        self.backend = backend or ThreadGeofenceBackend(self.logger)
        self._latest_id = 0
        self.superseded_count = 0

    def build_request(self, position: SmoothedPosition, pois: Sequence[POI]) -> GeofenceRequest:
        self._latest_id += 1
        return GeofenceRequest(
            request_id=self._latest_id,
            lat=position.lat,
            lng=position.lng,
            pois=tuple(pois),
            trigger_radius=self.trigger_radius,
            nearby_multiplier=self.nearby_multiplier,
            cooldown_tracker=self.cooldowns.snapshot(),
            cooldown_period_ms=self.cooldowns.period_ms,
            now_ms=self.cooldowns.clock(),
        )

    async def check(self, position: SmoothedPosition, pois: Sequence[POI]) -> Optional[GeofenceResponse]:
        """Evaluate a position; None if a newer check was issued meanwhile"""
        request = self.build_request(position, pois)
        response = await self.backend.submit(request)
        if response is None or request.request_id != self._latest_id:
            self.superseded_count += 1
            return None
        return response

    def close(self):
        self.backend.close()


class GeofenceTracker:
    """Turns successive responses into Enter/Exit events.

    Holds the set of POIs the walker was inside on the previous response;
    each POI gets exactly one ENTER per arrival and one EXIT per departure.
    """

    def __init__(self, clock=None):
        self.clock = clock or now_ms
        self.active: dict[str, float] = {}

    def update(self, response: GeofenceResponse) -> list[GeofenceEvent]:
        now = self.clock()
        current = {m.poi.id: m.distance_m for m in response.inside}
        nearby = {m.poi.id: m.distance_m for m in response.nearby}
        events = []

        for poi_id, last_distance in self.active.items():
            if poi_id not in current:
                distance = nearby.get(poi_id, last_distance)
                events.append(GeofenceEvent(poi_id, distance, now, GeofenceEventKind.EXIT))

        for match in sorted(response.inside, key=lambda m: (-m.poi.priority, m.distance_m)):
            if match.poi.id not in self.active:
                events.append(GeofenceEvent(match.poi.id, match.distance_m, now, GeofenceEventKind.ENTER))

        self.active = current
        return events

    @property
    def active_ids(self) -> set[str]:
        return set(self.active)

    def reset(self) -> list[GeofenceEvent]:
        """Forget the active set, emitting EXIT for everything still active"""
        now = self.clock()
        events = [GeofenceEvent(poi_id, distance, now, GeofenceEventKind.EXIT)
                  for poi_id, distance in self.active.items()]
        self.active = {}
        return events
