"""Geofence computation, request superseding and Enter/Exit tracking."""

import asyncio
import math

from narrator.cooldown import CooldownStore
from narrator.geo import EARTH_RADIUS_M
from narrator.geofence import (
    GeofenceEngine,
    GeofenceRequest,
    GeofenceTracker,
    InlineGeofenceBackend,
    ThreadGeofenceBackend,
    compute_geofence,
)
from narrator.models import GeofenceEventKind, SmoothedPosition

ORIGIN = SmoothedPosition(10.759, 106.705)
METERS_PER_DEG_LAT = EARTH_RADIUS_M * math.pi / 180


def lat_at(meters: float) -> float:
    return ORIGIN.lat + meters / METERS_PER_DEG_LAT


def request(pois, trigger_radius=25, multiplier=2.0, tracker=None, now=0, period=30 * 60 * 1000,
            position=ORIGIN):
    return GeofenceRequest(
        request_id=1, lat=position.lat, lng=position.lng, pois=pois,
        trigger_radius=trigger_radius, nearby_multiplier=multiplier,
        cooldown_tracker=tracker or {}, cooldown_period_ms=period, now_ms=now,
    )


def test_nearby_and_triggered_radii(make_poi):
    near = make_poi("near", lat_at(10), ORIGIN.lng)
    mid = make_poi("mid", lat_at(30), ORIGIN.lng)
    response = compute_geofence(request([near, mid]))
    assert response.triggered_ids == ["near"]
    assert [m.poi.id for m in response.nearby] == ["near", "mid"]


def test_poi_radius_extends_trigger_distance(make_poi):
    big = make_poi("big", lat_at(40), ORIGIN.lng, radius=50)
    response = compute_geofence(request([big]))
    assert response.triggered_ids == ["big"]


def test_cooldown_excludes_from_triggered_but_not_inside(make_poi):
    poi = make_poi("a", lat_at(5), ORIGIN.lng)
    response = compute_geofence(request([poi], tracker={"a": 1000}, now=2000))
    assert response.triggered == []
    assert [m.poi.id for m in response.inside] == ["a"]


def test_triggered_sorted_by_priority_then_distance(make_poi):
    pois = [
        make_poi("low_close", lat_at(2), ORIGIN.lng, priority=1),
        make_poi("high_far", lat_at(20), ORIGIN.lng, priority=5),
        make_poi("high_close", lat_at(8), ORIGIN.lng, priority=5),
    ]
    response = compute_geofence(request(pois))
    assert response.triggered_ids == ["high_close", "high_far", "low_close"]


def test_malformed_poi_is_skipped(make_poi, logger):
    good = make_poi("good", lat_at(5), ORIGIN.lng)
    bad_coords = make_poi("bad", lat_at(5), ORIGIN.lng)
    bad_coords.lat = "north-ish"
    bad_priority = make_poi("bad_priority", lat_at(5), ORIGIN.lng)
    bad_priority.priority = None
    response = compute_geofence(request([bad_coords, good, bad_priority, object()]), logger)
    assert response.triggered_ids == ["good"]
    assert response.skipped == ["bad", "bad_priority", "?"]


class GatedBackend(InlineGeofenceBackend):
    """Holds the first request until released"""

    def __init__(self):
        super().__init__()
        self.gate = asyncio.Event()
        self.calls = 0

    async def submit(self, req):
        self.calls += 1
        if self.calls == 1:
            await self.gate.wait()
        return await super().submit(req)


def test_stale_response_is_superseded(kv, clock, make_poi):
    async def scenario():
        backend = GatedBackend()
        engine = GeofenceEngine(CooldownStore(kv, clock=clock), trigger_radius=25, backend=backend)
        pois = [make_poi("a", lat_at(5), ORIGIN.lng)]
        first = asyncio.ensure_future(engine.check(ORIGIN, pois))
        await asyncio.sleep(0)
        second = await engine.check(ORIGIN, pois)
        backend.gate.set()
        return await first, second, engine.superseded_count

    first, second, superseded = asyncio.run(scenario())
    assert first is None
    assert second.triggered_ids == ["a"]
    assert superseded == 1


def test_thread_backend_round_trip(kv, clock, make_poi):
    async def scenario():
        engine = GeofenceEngine(CooldownStore(kv, clock=clock), trigger_radius=25,
                                backend=ThreadGeofenceBackend())
        try:
            pois = [make_poi("a", lat_at(5), ORIGIN.lng), make_poi("b", lat_at(500), ORIGIN.lng)]
            return await engine.check(ORIGIN, pois)
        finally:
            engine.close()

    response = asyncio.run(scenario())
    assert response.triggered_ids == ["a"]
    assert [m.poi.id for m in response.nearby] == ["a"]


def test_thread_backend_resolves_waiting_requests(kv, clock, make_poi):
    async def scenario():
        engine = GeofenceEngine(CooldownStore(kv, clock=clock), trigger_radius=25,
                                backend=ThreadGeofenceBackend())
        try:
            pois = [make_poi("a", lat_at(5), ORIGIN.lng)]
            return await asyncio.gather(*[engine.check(ORIGIN, pois) for _ in range(5)])
        finally:
            engine.close()

    results = asyncio.run(scenario())
    # Only the newest request is honored
    assert results[-1].triggered_ids == ["a"]
    assert all(r is None for r in results[:-1])


def walk(tracker, clock, cooldowns, pois, distances):
    """Feed positions at the given distances north of ORIGIN, returning all events"""
    events = []
    for meters in distances:
        position = SmoothedPosition(lat_at(meters), ORIGIN.lng)
        req = request(pois, trigger_radius=18, tracker=cooldowns.snapshot(), now=clock(),
                      position=position)
        response = compute_geofence(req)
        new_events = tracker.update(response)
        for event in new_events:
            if event.kind == GeofenceEventKind.ENTER and event.poi_id in response.triggered_ids:
                cooldowns.mark_as_played(event.poi_id)
        events.extend(new_events)
        clock.advance(5000)
    return events


def test_walk_in_out_in_after_cooldown(kv, clock, make_poi):
    cooldowns = CooldownStore(kv, clock=clock)
    tracker = GeofenceTracker(clock=clock)
    pois = [make_poi("A", ORIGIN.lat, ORIGIN.lng)]

    events = walk(tracker, clock, cooldowns, pois, [100, 5, 100])
    clock.advance(cooldowns.period_ms)
    events += walk(tracker, clock, cooldowns, pois, [5, 100])

    assert [(e.kind, e.poi_id) for e in events] == [
        (GeofenceEventKind.ENTER, "A"),
        (GeofenceEventKind.EXIT, "A"),
        (GeofenceEventKind.ENTER, "A"),
        (GeofenceEventKind.EXIT, "A"),
    ]


def test_staying_inside_emits_nothing_more(kv, clock, make_poi):
    tracker = GeofenceTracker(clock=clock)
    cooldowns = CooldownStore(kv, clock=clock)
    pois = [make_poi("A", ORIGIN.lat, ORIGIN.lng)]
    events = walk(tracker, clock, cooldowns, pois, [5, 6, 4, 7])
    assert len(events) == 1
    assert tracker.active_ids == {"A"}


def test_reset_exits_everything(clock, make_poi):
    tracker = GeofenceTracker(clock=clock)
    response = compute_geofence(request([make_poi("A", lat_at(5), ORIGIN.lng)]))
    tracker.update(response)
    events = tracker.reset()
    assert [(e.kind, e.poi_id) for e in events] == [(GeofenceEventKind.EXIT, "A")]
    assert tracker.active_ids == set()
