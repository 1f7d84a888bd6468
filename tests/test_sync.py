"""Analytics queue, batch upload and analytics payloads."""

import asyncio

import pytest
import requests

from narrator.analytics import AUTO_PLAY, TOUR_END, AnalyticsRecorder, round_coordinate
from narrator.errors import SyncError
from narrator.models import SmoothedPosition
from narrator.store import LAST_SYNC
from narrator.sync import ERROR, SUCCESS, SYNCING, HttpBatchTransport, SyncQueue


class RecordingTransport:
    def __init__(self, fail=False):
        self.fail = fail
        self.batches = []

    def __call__(self, events):
        self.batches.append(list(events))
        if self.fail:
            raise SyncError("server said no")


def queue(kv, clock, transport=None, throttle_ms=0, **kwargs):
    statuses = []
    q = SyncQueue(kv, transport, throttle_ms=throttle_ms, clock=clock,
                  on_status=statuses.append, **kwargs)
    return q, statuses


def test_success_clears_queue(kv, clock):
    transport = RecordingTransport()
    q, statuses = queue(kv, clock, transport)
    for i in range(3):
        q.enqueue({"n": i})

    sent = asyncio.run(q.sync_now())

    assert sent == 3
    assert transport.batches == [[{"n": 0}, {"n": 1}, {"n": 2}]]
    assert q.pending_count == 0
    assert q.last_sync_ms == clock()
    assert statuses == [SYNCING, SUCCESS]


def test_failure_leaves_queue_intact(kv, clock):
    q, statuses = queue(kv, clock, RecordingTransport(fail=True))
    ids = [q.enqueue({"n": i}) for i in range(3)]

    assert asyncio.run(q.sync_now()) is None

    assert [e.id for e in q.pending()] == ids
    assert kv.get(LAST_SYNC) is None
    assert statuses == [SYNCING, ERROR]


def test_missing_endpoint_is_an_error(kv, clock):
    q, statuses = queue(kv, clock, transport=None)
    q.enqueue({"n": 1})
    assert asyncio.run(q.sync_now()) is None
    assert q.pending_count == 1
    assert statuses[-1] == ERROR


def test_empty_queue_syncs_trivially(kv, clock):
    q, statuses = queue(kv, clock, transport=None)
    assert asyncio.run(q.sync_now()) == 0
    assert statuses[-1] == SUCCESS


def test_events_queued_during_upload_survive(kv, clock):
    q, _ = queue(kv, clock)

    def transport(events):
        q.enqueue({"late": True})

    q.transport = transport
    q.enqueue({"early": True})
    asyncio.run(q.sync_now())
    assert [e.payload for e in q.pending()] == [{"late": True}]


def test_throttle(kv, clock):
    transport = RecordingTransport()
    q, _ = queue(kv, clock, transport, throttle_ms=5000)
    q.enqueue({"n": 1})

    async def scenario():
        first = await q.sync_now()
        q.enqueue({"n": 2})
        clock.advance(4999)
        second = await q.sync_now()
        clock.advance(1)
        third = await q.sync_now()
        return first, second, third

    assert asyncio.run(scenario()) == (1, None, 1)
    assert len(transport.batches) == 2


def test_forced_sync_ignores_throttle(kv, clock):
    transport = RecordingTransport()
    q, _ = queue(kv, clock, transport, throttle_ms=5000)
    q.enqueue({"n": 1})

    async def scenario():
        await q.sync_now()
        q.enqueue({"n": 2})
        clock.advance(10)
        throttled = await q.sync_now()
        forced = await q.sync_now(force=True)
        return throttled, forced

    assert asyncio.run(scenario()) == (None, 1)
    assert transport.batches == [[{"n": 1}], [{"n": 2}]]
    assert q.pending_count == 0


def test_single_flight(kv, clock):
    release = None

    async def scenario():
        nonlocal release
        release = asyncio.Event()
        loop = asyncio.get_running_loop()

        def transport(events):
            asyncio.run_coroutine_threadsafe(release.wait(), loop).result()

        q, _ = queue(kv, clock, transport)
        q.enqueue({"n": 1})
        first = asyncio.ensure_future(q.sync_now())
        await asyncio.sleep(0.01)
        second = await q.sync_now()
        release.set()
        return await first, second

    assert asyncio.run(scenario()) == (1, None)


def test_offline_skips_and_reconnect_syncs(kv, clock):
    transport = RecordingTransport()
    q, _ = queue(kv, clock, transport, online=False)
    q.enqueue({"n": 1})

    async def scenario():
        skipped = await q.sync_now()
        await q.set_online(True)
        return skipped

    assert asyncio.run(scenario()) is None
    assert len(transport.batches) == 1
    assert q.pending_count == 0


def test_mark_offline_holds_events_until_reconnect(kv, clock):
    transport = RecordingTransport()
    q, _ = queue(kv, clock, transport)
    q.enqueue({"n": 1})
    q.mark_offline()

    async def scenario():
        skipped = await q.sync_now()
        await q.set_online(True)
        return skipped

    assert asyncio.run(scenario()) is None
    assert transport.batches == [[{"n": 1}]]
    assert q.online


def test_periodic_sync_stops(kv, clock):
    transport = RecordingTransport()
    q, _ = queue(kv, clock, transport)
    q.enqueue({"n": 1})

    async def scenario():
        task = asyncio.ensure_future(q.run_periodic(0.01))
        await asyncio.sleep(0.05)
        q.stop()
        await asyncio.wait_for(task, 1)

    asyncio.run(scenario())
    assert transport.batches[0] == [{"n": 1}]


class FakeResponse:
    def __init__(self, status_code):
        self.status_code = status_code

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")


class FakeSession:
    def __init__(self, status_code=200, down=False):
        self.status_code = status_code
        self.down = down
        self.posts = []

    def post(self, url, json=None, timeout=None):
        self.posts.append((url, json))
        return FakeResponse(self.status_code)

    def head(self, url, timeout=None):
        if self.down:
            raise requests.ConnectionError("no route to host")
        return FakeResponse(self.status_code)


def test_http_transport_posts_batch():
    session = FakeSession()
    HttpBatchTransport("https://api.example/events", session)([{"a": 1}])
    assert session.posts == [("https://api.example/events", {"events": [{"a": 1}]})]


def test_http_transport_raises_on_non_2xx():
    with pytest.raises(SyncError):
        HttpBatchTransport("https://api.example/events", FakeSession(503))([{"a": 1}])


def test_http_transport_reachability():
    transport = HttpBatchTransport("https://api.example/events", FakeSession(503))
    # Any HTTP answer means the endpoint is reachable
    assert transport.reachable()
    assert not HttpBatchTransport("https://api.example/events", FakeSession(down=True)).reachable()


def test_round_coordinate():
    assert round_coordinate(10.75912) == 10.759
    assert round_coordinate(106.70561) == 106.706
    assert round_coordinate(1.23456, 1) == 1.2


def test_analytics_payloads(kv, clock):
    q, _ = queue(kv, clock)
    recorder = AnalyticsRecorder(q, session_id="s-1", language="vi")
    payload = recorder.auto_play("a", SmoothedPosition(10.75912, 106.70561), distance_m=12.345)
    recorder.tour_end(duration_s=61.4, pois_played=2)

    assert payload["event_type"] == AUTO_PLAY
    assert payload["session_id"] == "s-1"
    assert payload["language"] == "vi"
    assert payload["poi_id"] == "a"
    assert (payload["rounded_lat"], payload["rounded_lng"]) == (10.759, 106.706)
    assert payload["metadata"] == {"distance_m": 12.3}
    assert payload["timestamp"].endswith("+00:00")

    queued = [e.payload for e in q.pending()]
    assert queued[0] == payload
    assert queued[1]["event_type"] == TOUR_END
    assert queued[1]["metadata"] == {"duration_s": 61, "pois_played": 2}
    assert "poi_id" not in queued[1]


def test_session_id_generated():
    a = AnalyticsRecorder(queue=None)
    b = AnalyticsRecorder(queue=None)
    assert a.session_id != b.session_id
