import logging

import pytest

from patrol_tracker.geo import haversine_m
from patrol_tracker.models import ValidatedFix
from patrol_tracker.tracking import Reason, TrajectoryAccumulator

from conftest import east_of, make_fix


def _vf(fix, display_only=False):
    return ValidatedFix(fix, fix.captured_at, 1.0, Reason.OK, display_only=display_only)


def test_seed_then_append():
    trajectory = TrajectoryAccumulator()
    trajectory.seed(make_fix())
    assert len(trajectory) == 1
    assert trajectory.append(_vf(make_fix(lon=east_of(0, 2), seconds=1)))
    assert len(trajectory) == 2
    assert trajectory.total_distance_m == pytest.approx(2.0, abs=1e-6)


def test_seed_twice_is_an_error():
    trajectory = TrajectoryAccumulator()
    trajectory.seed(make_fix())
    with pytest.raises(ValueError):
        trajectory.seed(make_fix(seconds=1))


def test_sub_threshold_moves_position_only():
    trajectory = TrajectoryAccumulator(min_record_distance_m=1.0)
    trajectory.seed(make_fix())
    fix = make_fix(lon=east_of(0, 0.5), seconds=1)
    assert not trajectory.append(_vf(fix))
    assert len(trajectory) == 1
    assert trajectory.total_distance_m == 0.0
    assert trajectory.current_position == fix.latlon


def test_drift_accumulates_against_last_recorded_point():
    trajectory = TrajectoryAccumulator(min_record_distance_m=1.0)
    trajectory.seed(make_fix())
    assert not trajectory.append(_vf(make_fix(lon=east_of(0, 0.6), seconds=1)))
    # 1.2 m from the recorded seed even though only 0.6 m from the previous fix
    assert trajectory.append(_vf(make_fix(lon=east_of(0, 1.2), seconds=2)))
    assert trajectory.total_distance_m == pytest.approx(1.2, abs=1e-6)


def test_display_only_is_ignored():
    trajectory = TrajectoryAccumulator()
    trajectory.seed(make_fix())
    fix = make_fix(lon=east_of(0, 50), seconds=5)
    assert not trajectory.append(_vf(fix, display_only=True))
    assert len(trajectory) == 1
    assert trajectory.current_position == (0.0, 0.0)


def test_refuses_points_back_in_time():
    trajectory = TrajectoryAccumulator()
    trajectory.seed(make_fix(seconds=10))
    assert not trajectory.append(_vf(make_fix(lon=east_of(0, 5), seconds=9)))
    assert len(trajectory) == 1


def test_refuses_segments_longer_than_max_jump(caplog):
    trajectory = TrajectoryAccumulator(max_jump_m=150.0)
    trajectory.seed(make_fix())
    with caplog.at_level(logging.WARNING):
        assert not trajectory.append(_vf(make_fix(lon=east_of(0, 151), seconds=60)))
    assert "Skipping trajectory jump" in caplog.text
    assert trajectory.total_distance_m == 0.0


def test_total_matches_recomputed_distance():
    trajectory = TrajectoryAccumulator()
    trajectory.seed(make_fix())
    for i in range(1, 30):
        trajectory.append(_vf(make_fix(lat=0.00001 * (i % 3), lon=east_of(0, 1.7 * i), seconds=i)))
    points = [p.latlon for p in trajectory.points]
    expected = sum(haversine_m(a, b) for a, b in zip(points, points[1:]))
    assert trajectory.total_distance_m == pytest.approx(expected, rel=1e-9)
    assert trajectory.recompute_distance() == pytest.approx(expected, rel=1e-9)
    times = [p.captured_at for p in trajectory.points]
    assert times == sorted(times)


def test_reset_clears_everything():
    trajectory = TrajectoryAccumulator()
    trajectory.seed(make_fix())
    trajectory.append(_vf(make_fix(lon=east_of(0, 3), seconds=1)))
    trajectory.reset()
    assert len(trajectory) == 0
    assert trajectory.total_distance_m == 0.0
    assert trajectory.current_position is None


def test_jump_is_measured_from_last_validated_position():
    trajectory = TrajectoryAccumulator(min_record_distance_m=1.0, max_jump_m=150.0)
    trajectory.seed(make_fix())
    assert not trajectory.append(_vf(make_fix(lon=east_of(0, 0.9), seconds=1)))
    # 150.4 m from the recorded head but 149.5 m from the last validated fix
    assert trajectory.append(_vf(make_fix(lon=east_of(0, 150.4), seconds=9)))
    assert trajectory.append(_vf(make_fix(lon=east_of(0, 166.4), seconds=17)))
    assert len(trajectory) == 3
    assert trajectory.total_distance_m == pytest.approx(166.4, abs=1e-3)
