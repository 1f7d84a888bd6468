"""Position smoothing."""

import random

import pytest

from narrator.models import PositionSample
from narrator.smoothing import PositionSmoother, WeightedPositionSmoother, create_smoother


def sample(lat, lng, ts, accuracy=5.0):
    return PositionSample(lat=lat, lng=lng, timestamp_ms=ts, accuracy_m=accuracy)


def test_first_sample_is_returned_as_is():
    smoother = PositionSmoother()
    result = smoother.add_sample(sample(10.759, 106.705, 0))
    assert result.lat == pytest.approx(10.759)
    assert result.lng == pytest.approx(106.705)


def test_mean_over_window():
    smoother = PositionSmoother(window_size=3)
    for i, lat in enumerate([1.0, 2.0, 3.0, 4.0]):
        result = smoother.add_sample(sample(lat, 0.0, i * 1000))
    # Window holds 2, 3, 4
    assert result.lat == pytest.approx(3.0)
    assert smoother.sample_count == 3
    assert smoother.is_warmed_up()


@pytest.mark.parametrize("kind", ["simple", "weighted"])
def test_result_within_bounding_box_of_recent_samples(kind):
    rng = random.Random(7)
    smoother = create_smoother(kind, window_size=5)
    accepted = []
    for i in range(40):
        s = sample(10.759 + rng.uniform(-0.001, 0.001), 106.705 + rng.uniform(-0.001, 0.001), i * 1000)
        accepted.append(s)
        result = smoother.add_sample(s)
        recent = accepted[-min(len(accepted), 5):]
        assert min(r.lat for r in recent) - 1e-12 <= result.lat <= max(r.lat for r in recent) + 1e-12
        assert min(r.lng for r in recent) - 1e-12 <= result.lng <= max(r.lng for r in recent) + 1e-12


def test_inaccurate_sample_leaves_position_unchanged():
    smoother = PositionSmoother(max_accuracy=50)
    smoother.add_sample(sample(1.0, 1.0, 0))
    before = smoother.add_sample(sample(1.0002, 1.0002, 1000))
    after = smoother.add_sample(sample(5.0, 5.0, 2000, accuracy=120))
    assert after == before
    assert smoother.sample_count == 2
    assert smoother.rejected_count == 1


def test_inaccurate_sample_before_any_history_gives_nothing():
    smoother = PositionSmoother(max_accuracy=50)
    assert smoother.add_sample(sample(1.0, 1.0, 0, accuracy=80)) is None
    assert smoother.current_position() is None


def test_sample_without_accuracy_is_accepted():
    smoother = PositionSmoother()
    result = smoother.add_sample(PositionSample(lat=1.0, lng=2.0, timestamp_ms=0))
    assert result is not None


def test_old_samples_are_evicted():
    smoother = PositionSmoother(window_size=5, max_age_ms=30000)
    smoother.add_sample(sample(1.0, 1.0, 0))
    result = smoother.add_sample(sample(3.0, 3.0, 31000))
    assert smoother.sample_count == 1
    assert result.lat == pytest.approx(3.0)


def test_weighted_favors_recent():
    simple = PositionSmoother(window_size=3)
    weighted = WeightedPositionSmoother(window_size=3)
    for i, lat in enumerate([0.0, 0.0, 3.0]):
        s = sample(lat, 0.0, i * 1000)
        plain = simple.add_sample(s)
        recent = weighted.add_sample(s)
    assert plain.lat == pytest.approx(1.0)
    # weights 1, 2, 3 -> 9 / 6
    assert recent.lat == pytest.approx(1.5)


def test_reset():
    smoother = PositionSmoother()
    smoother.add_sample(sample(1.0, 1.0, 0))
    smoother.reset()
    assert smoother.current_position() is None


def test_unknown_smoother_kind():
    with pytest.raises(ValueError):
        create_smoother("kalman")
