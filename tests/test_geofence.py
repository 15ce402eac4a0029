from datetime import timedelta

import pytest

from patrol_tracker.errors import (
    CheckpointAlreadyVisitedError,
    OutOfRangeError,
    TooSoonError,
    UnknownCheckpointError,
)
from patrol_tracker.geofence import GeofenceConfig, GeofenceEngine
from patrol_tracker.models import Checkpoint

from conftest import T0, east_of


@pytest.fixture
def engine(clock):
    return GeofenceEngine(clock=clock)


def test_confirm_at_sixteen_metres(engine):
    catalog = [Checkpoint(1, 0.0, 0.0, radius_m=30)]
    visit = engine.confirm(1, (0.0, 0.00015), catalog, captured_at=T0)
    assert visit.checkpoint_id == 1
    assert visit.distance_m == pytest.approx(16.7, abs=0.1)
    assert visit.sequence_number == 1
    assert visit.captured_at == T0
    assert visit.seconds_since_previous is None


def test_evaluate_returns_none_outside_every_radius(engine, checkpoints):
    assert engine.evaluate((0.0, east_of(0, 50)), checkpoints) is None


def test_evaluate_picks_nearest_in_range(engine):
    catalog = [
        Checkpoint(1, 0.0, 0.0, radius_m=30),
        Checkpoint(2, 0.0, east_of(0, 20), radius_m=30),
    ]
    candidate = engine.evaluate((0.0, east_of(0, 15)), catalog)
    assert candidate.checkpoint.id == 2
    assert candidate.distance_m == pytest.approx(5.0, abs=0.01)
    assert not candidate.too_soon


def test_evaluate_tie_breaks_on_lowest_id(engine):
    # Equidistant north and south of the guard, ids listed out of order.
    catalog = [
        Checkpoint(7, 0.0001, 0.0, radius_m=30),
        Checkpoint(3, -0.0001, 0.0, radius_m=30),
    ]
    for _ in range(5):
        assert engine.evaluate((0.0, 0.0), catalog).checkpoint.id == 3
        assert engine.evaluate((0.0, 0.0), list(reversed(catalog))).checkpoint.id == 3


def test_evaluate_skips_visited(engine, checkpoints):
    assert engine.evaluate((0.0, 0.0), checkpoints, visited={1}) is None


def test_evaluate_flags_too_soon_with_remaining_wait(engine, clock, checkpoints):
    last_visit = clock()
    clock.advance(12.4)
    candidate = engine.evaluate((0.0, east_of(0, 100)), checkpoints, {1}, last_visit)
    assert candidate.checkpoint.id == 2
    assert candidate.too_soon
    assert candidate.remaining_wait_s == 18


def test_confirm_errors_carry_detail(engine, clock, checkpoints):
    with pytest.raises(UnknownCheckpointError):
        engine.confirm(99, (0.0, 0.0), checkpoints)
    with pytest.raises(CheckpointAlreadyVisitedError):
        engine.confirm(1, (0.0, 0.0), checkpoints, visited={1})
    with pytest.raises(OutOfRangeError) as out:
        engine.confirm(1, (0.0, east_of(0, 45)), checkpoints)
    assert out.value.distance_m == pytest.approx(45.0, abs=0.01)
    assert out.value.radius_m == 30
    assert out.value.to_dict()["code"] == "OUT_OF_RANGE"

    last_visit = clock()
    clock.advance(10)
    with pytest.raises(TooSoonError) as soon:
        engine.confirm(2, (0.0, east_of(0, 100)), checkpoints, {1}, last_visit)
    assert soon.value.remaining_seconds == 20
    assert soon.value.to_dict()["remaining_seconds"] == 20


def test_confirm_after_spacing_records_interval(engine, clock, checkpoints):
    last_visit = clock()
    clock.advance(30)
    visit = engine.confirm(
        2,
        (0.0, east_of(0, 100)),
        checkpoints,
        {1},
        last_visit,
        sequence_number=2,
        meters_since_previous=101.5,
    )
    assert visit.sequence_number == 2
    assert visit.seconds_since_previous == pytest.approx(30.0)
    assert visit.meters_since_previous == 101.5
    assert visit.confirmed_at == clock()
    assert visit.description == ""
    assert visit.to_record()["sequence"] == 2


def test_spacing_is_configurable(clock, checkpoints):
    engine = GeofenceEngine(GeofenceConfig(min_spacing_s=5), clock=clock)
    last_visit = clock()
    clock.advance(5)
    assert engine.remaining_wait_s(last_visit) == 0
    assert engine.remaining_wait_s(last_visit, clock() - timedelta(seconds=0.5)) == 1


def test_in_range_and_nearest(engine, checkpoints):
    position = (0.0, east_of(0, 110))
    assert [cp.id for cp, _ in engine.in_range(position, checkpoints)] == [2]
    nearest, distance = engine.nearest((0.0, east_of(0, 60)), checkpoints, visited={1})
    assert nearest.id == 2
    assert distance == pytest.approx(40.0, abs=0.01)
    assert engine.nearest((0.0, 0.0), checkpoints, visited={1, 2, 3}) is None


def test_radius_is_clamped():
    assert Checkpoint(1, 0.0, 0.0, radius_m=5).radius_m == 10
    assert Checkpoint(1, 0.0, 0.0, radius_m=500).radius_m == 100
    assert Checkpoint(1, 0.0, 0.0, radius_m=None).radius_m == 30
