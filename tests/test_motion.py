"""Speed estimation and movement states."""

import math

import pytest

from narrator.geo import EARTH_RADIUS_M
from narrator import motion
from narrator.models import SmoothedPosition
from narrator.motion import MotionClassifier

METERS_PER_DEG_LAT = EARTH_RADIUS_M * math.pi / 180


def north_of(origin: SmoothedPosition, meters: float) -> SmoothedPosition:
    return SmoothedPosition(origin.lat + meters / METERS_PER_DEG_LAT, origin.lng)


START = SmoothedPosition(10.759, 106.705)


def test_first_reading_returns_none():
    classifier = MotionClassifier()
    assert classifier.add_reading(START, 0) is None
    assert classifier.classify() == motion.STATIONARY


def test_150m_in_60s_is_walking():
    classifier = MotionClassifier()
    classifier.add_reading(START, 0)
    speed = classifier.add_reading(north_of(START, 150), 60_000)
    assert speed is not None
    assert speed < classifier.thresholds[motion.JOGGING]
    assert classifier.classify() == motion.WALKING
    assert classifier.should_continue_tour()


def test_too_soon_reading_returns_previous_speed_unrecorded():
    classifier = MotionClassifier()
    classifier.add_reading(START, 0)
    first = classifier.add_reading(north_of(START, 10), 10_000)
    again = classifier.add_reading(north_of(START, 500), 10_500)
    assert again == first
    assert len(classifier.readings) == 2


def test_glitch_is_discarded():
    classifier = MotionClassifier()
    classifier.add_reading(START, 0)
    first = classifier.add_reading(north_of(START, 10), 10_000)
    # 2 km in 10 s
    glitch = classifier.add_reading(north_of(START, 2010), 20_000)
    assert glitch == first
    assert classifier.glitch_count == 1
    assert len(classifier.readings) == 2


def test_window_average():
    classifier = MotionClassifier(window_size=3)
    position = START
    classifier.add_reading(position, 0)
    for i in range(1, 4):
        position = north_of(position, 30)
        speed = classifier.add_reading(position, i * 10_000)
    # Window holds three 3 m/s readings
    assert speed == pytest.approx(3.0, rel=1e-3)
    assert classifier.classify() == motion.JOGGING
    assert classifier.is_warmed_up()


def test_vehicle_speed_is_too_fast():
    classifier = MotionClassifier(window_size=1)
    classifier.add_reading(START, 0)
    classifier.add_reading(north_of(START, 100), 10_000)
    assert classifier.classify() == motion.VEHICLE
    assert classifier.is_too_fast()
    assert not classifier.should_continue_tour()
    assert classifier.format_speed() == "36.0 km/h"


def test_reset():
    classifier = MotionClassifier()
    classifier.add_reading(START, 0)
    classifier.add_reading(north_of(START, 20), 10_000)
    classifier.reset()
    assert classifier.current_speed == 0
    assert classifier.is_stationary()
    assert classifier.format_speed() == "Stationary"
