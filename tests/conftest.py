"""Test fixtures: in-memory key/value store, quiet logger, controllable clock."""

import pytest

from narrator.logger import Logger
from narrator.models import POI
from narrator.store import KeyValueStore


class FakeClock:
    """Millisecond clock that only moves when told to"""

    def __init__(self, start_ms: int = 1_700_000_000_000):
        self.now = start_ms

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int):
        self.now += ms


@pytest.fixture
def logger():
    return Logger(echo=False)


@pytest.fixture
def kv(logger):
    store = KeyValueStore(":memory:", logger=logger)
    yield store
    store.close()


@pytest.fixture
def clock():
    return FakeClock()


def make_poi(poi_id: str, lat: float, lng: float, radius: float = 0, priority: int = 0,
             audio: dict | None = None, **kwargs) -> POI:
    if audio is None:
        audio = {"vi": f"https://cdn.example/{poi_id}_vi.mp3", "en": f"https://cdn.example/{poi_id}_en.mp3"}
    return POI(id=poi_id, lat=lat, lng=lng, radius_m=radius, priority=priority,
               audio_urls=audio, name=kwargs.pop("name", f"POI {poi_id}"), **kwargs)


@pytest.fixture(name="make_poi")
def make_poi_fixture():
    return make_poi
