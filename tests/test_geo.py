"""Distance primitives."""

import pytest

from narrator.geo import (
    bearing_between,
    bearing_to_compass,
    filter_within_radius,
    find_nearest,
    format_distance,
    haversine_distance,
    retry_with_backoff,
)


def test_haversine_reference_distance():
    d = haversine_distance(10.759, 106.705, 10.760, 106.706)
    assert abs(d - 152) <= 5


def test_haversine_zero_and_symmetric():
    assert haversine_distance(10.0, 106.0, 10.0, 106.0) == 0
    a = haversine_distance(10.759, 106.705, 10.770, 106.690)
    b = haversine_distance(10.770, 106.690, 10.759, 106.705)
    assert a == pytest.approx(b)


def test_bearing_and_compass():
    assert bearing_between(0, 0, 1, 0) == pytest.approx(0, abs=1e-6)
    assert bearing_between(0, 0, 0, 1) == pytest.approx(90, abs=1e-6)
    assert bearing_to_compass(0) == "north"
    assert bearing_to_compass(90) == "east"


def test_filter_within_radius_sorted_nearest_first(make_poi):
    far = make_poi("far", 10.7610, 106.7050)
    near = make_poi("near", 10.7592, 106.7050)
    outside = make_poi("out", 10.7700, 106.7050)
    result = filter_within_radius(10.759, 106.705, [far, near, outside], 500)
    assert [poi.id for poi, _ in result] == ["near", "far"]
    assert result[0][1] < result[1][1]


def test_find_nearest(make_poi):
    pois = [make_poi("a", 10.7610, 106.7050), make_poi("b", 10.7591, 106.7050)]
    poi, distance = find_nearest(10.759, 106.705, pois)
    assert poi.id == "b"
    assert distance < 20
    assert find_nearest(10.759, 106.705, []) is None


def test_format_distance():
    assert format_distance(42) == "42 m"
    assert format_distance(1500) == "1.5 km"


def test_retry_with_backoff_retries_until_success():
    attempts = []
    sleeps = []

    def flaky():
        attempts.append(1)
        return "ok" if len(attempts) == 3 else None

    assert retry_with_backoff(flaky, max_time=60, sleep=sleeps.append) == "ok"
    assert len(attempts) == 3
    assert sleeps == [1.0, 2.0]
