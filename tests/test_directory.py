"""POI directory loading and record validation."""

import json

import pytest
import requests

from narrator.directory import POIDirectory, parse_pois
from narrator.models import POI

RECORDS = [
    {"id": "a", "lat": 10.759, "lng": 106.705, "radius_m": 20, "priority": 2,
     "audio_urls": {"vi": "https://cdn.example/a_vi.mp3"}, "name": "Ben Thanh"},
    {"id": "b", "lat": "10.760", "lon": "106.706", "audio_url_en": "https://cdn.example/b_en.mp3",
     "audio_url_vi": "https://cdn.example/b_vi.mp3"},
]


class FakeResponse:
    def __init__(self, payload, status_code=200):
        self.payload = payload
        self.status_code = status_code

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")

    def json(self):
        return self.payload


class FakeSession:
    def __init__(self, payload=None, status_code=200):
        self.payload = payload
        self.status_code = status_code
        self.calls = 0

    def get(self, url, timeout=None):
        self.calls += 1
        return FakeResponse(self.payload, self.status_code)


def test_from_dict_normalizes_fields():
    poi = POI.from_dict(RECORDS[1])
    assert (poi.lat, poi.lng) == (10.76, 106.706)
    assert poi.audio_urls == {"en": "https://cdn.example/b_en.mp3", "vi": "https://cdn.example/b_vi.mp3"}
    assert poi.radius_m == 0
    assert poi.priority == 0


def test_audio_map_wins_over_flat_fields():
    poi = POI.from_dict({"id": 1, "lat": 0, "lng": 0, "audio_url_vi": "https://old",
                         "audio_urls": {"vi": "https://new"}})
    assert poi.id == "1"
    assert poi.audio_urls == {"vi": "https://new"}


@pytest.mark.parametrize("record", [
    {"lat": 1, "lng": 2},
    {"id": "x", "lat": "abc", "lng": 2},
    {"id": "x", "lat": 91, "lng": 2},
    {"id": "x", "lat": 1, "lng": 2, "priority": "high"},
    {"id": "x", "lat": 1, "lng": 2, "audio_urls": ["https://a"]},
])
def test_invalid_records_raise(record):
    with pytest.raises(ValueError):
        POI.from_dict(record)


def test_parse_pois_skips_bad_and_duplicate_records(logger):
    records = RECORDS + [{"id": "a", "lat": 0, "lng": 0}, {"id": "bad"}, "not a record"]
    assert [p.id for p in parse_pois(records, logger)] == ["a", "b"]


def test_load_from_file(tmp_path, logger):
    path = tmp_path / "pois.json"
    path.write_text(json.dumps({"pois": RECORDS}))
    directory = POIDirectory(cache_path=str(tmp_path / "cache.json"), logger=logger)
    pois = directory.load(str(path))
    assert [p.id for p in pois] == ["a", "b"]
    assert directory.get("a").name == "Ben Thanh"
    assert directory.get("zzz") is None


def test_load_from_url_writes_cache(tmp_path, logger):
    cache = tmp_path / "cache" / "pois.json"
    session = FakeSession({"data": RECORDS})
    directory = POIDirectory(cache_path=str(cache), session=session, retry_time=0, logger=logger)
    pois = directory.load("https://api.example/pois")
    assert [p.id for p in pois] == ["a", "b"]
    cached = json.loads(cache.read_text())
    assert cached["_cache_meta"]["url"] == "https://api.example/pois"
    assert cached["pois"] == RECORDS


def test_empty_list_is_a_successful_fetch(tmp_path, logger):
    cache = tmp_path / "pois.json"
    cache.write_text(json.dumps({"pois": RECORDS}))
    session = FakeSession({"pois": []})
    directory = POIDirectory(cache_path=str(cache), session=session, retry_time=30, logger=logger)
    assert directory.load("https://api.example/pois") == []
    assert session.calls == 1
    assert json.loads(cache.read_text())["pois"] == []


def test_failed_fetch_falls_back_to_cache(tmp_path, logger):
    cache = tmp_path / "pois.json"
    cache.write_text(json.dumps({"pois": RECORDS[:1]}))
    directory = POIDirectory(cache_path=str(cache), session=FakeSession(status_code=500),
                             retry_time=0, logger=logger)
    assert [p.id for p in directory.load("https://api.example/pois")] == ["a"]


def test_failed_fetch_without_cache_raises(tmp_path, logger):
    directory = POIDirectory(cache_path=str(tmp_path / "none.json"), session=FakeSession(status_code=500),
                             retry_time=0, logger=logger)
    with pytest.raises(ValueError):
        directory.load("https://api.example/pois")
