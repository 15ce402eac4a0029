import pytest

from patrol_tracker.tracking import HeadingTracker, PositionSmoother, heading_from_magnetometer
from patrol_tracker.tracking.smoother import linear_weights

from conftest import make_fix


def test_linear_weights_sum_to_one_and_favour_recent():
    weights = linear_weights(3)
    assert weights == pytest.approx([1 / 6, 2 / 6, 3 / 6])
    assert sum(weights) == pytest.approx(1.0)
    assert linear_weights(0) == []


def test_smoother_single_point_is_plain_mean():
    smoother = PositionSmoother()
    assert smoother.position() is None
    assert smoother.add(make_fix(1.0, 2.0)) == (1.0, 2.0)


def test_smoother_weights_most_recent_heaviest():
    smoother = PositionSmoother(window_size=3, min_points=2)
    smoother.add(make_fix(0.0, 0.0, 0))
    smoother.add(make_fix(0.0, 3.0, 1))
    lat, lon = smoother.add(make_fix(0.0, 6.0, 2))
    # (0*1 + 3*2 + 6*3) / 6
    assert lon == pytest.approx(4.0)
    assert lat == pytest.approx(0.0)


def test_smoother_window_is_bounded():
    smoother = PositionSmoother(window_size=3)
    for i in range(10):
        smoother.add(make_fix(0.0, float(i), i))
    assert len(smoother) == 3
    assert smoother.latest().longitude == 9.0
    # window holds 7, 8, 9
    assert smoother.position()[1] == pytest.approx((7 * 1 + 8 * 2 + 9 * 3) / 6)
    smoother.reset()
    assert smoother.position() is None


def test_smoother_rejects_empty_window():
    with pytest.raises(ValueError):
        PositionSmoother(window_size=0)


def test_heading_first_sample_adopted():
    tracker = HeadingTracker()
    assert tracker.current is None
    assert tracker.cardinal == "--"
    assert tracker.smooth(370.0) == pytest.approx(10.0)


def test_heading_wraps_through_north():
    tracker = HeadingTracker(smoothing_factor=0.15)
    tracker.smooth(359.0)
    # shortest path to 1 deg is +2 deg, 15% of that is 0.3 deg
    assert tracker.smooth(1.0) == pytest.approx(359.3)
    tracker.reset()
    tracker.smooth(1.0)
    assert tracker.smooth(359.0) == pytest.approx(0.7)


def test_heading_converges_and_ignores_bad_samples():
    tracker = HeadingTracker(smoothing_factor=0.5)
    tracker.smooth(0.0)
    for _ in range(20):
        tracker.smooth(90.0)
    assert tracker.current == pytest.approx(90.0, abs=1e-3)
    assert tracker.cardinal == "E"
    assert tracker.smooth(float("nan")) == pytest.approx(90.0, abs=1e-3)
    assert tracker.smooth(None) == pytest.approx(90.0, abs=1e-3)


@pytest.mark.parametrize("factor", [0.0, -0.1, 1.5])
def test_heading_factor_validated(factor):
    with pytest.raises(ValueError):
        HeadingTracker(smoothing_factor=factor)


def test_heading_from_magnetometer():
    assert heading_from_magnetometer(1.0, 0.0) == pytest.approx(0.0)
    assert heading_from_magnetometer(0.0, 1.0) == pytest.approx(90.0)
    assert heading_from_magnetometer(1.0, 0.0, axis_offset_deg=90.0) == pytest.approx(90.0)
    assert heading_from_magnetometer(1.0, 0.0, declination_deg=-21.0) == pytest.approx(339.0)
    assert heading_from_magnetometer(0.0, 0.0) is None
    assert heading_from_magnetometer(None, 1.0) is None
