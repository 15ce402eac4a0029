import json

import pytest

from patrol_tracker.errors import PersistenceError
from patrol_tracker.models import CheckpointVisit, PatrolSummary, SessionState, TrajectoryPoint
from patrol_tracker.persistence import JsonFilePersistenceSink, NullPersistenceSink

from conftest import T0, make_fix


def _visit(checkpoint_id, sequence=1):
    return CheckpointVisit(checkpoint_id, 4.2, T0, sequence)


def _summary(session_id, status=SessionState.FINISHED):
    return PatrolSummary(
        session_id=session_id,
        guard_id="guard-1",
        status=status,
        started_at=T0,
        finished_at=T0,
        total_distance_m=12.5,
        elapsed_seconds=60.0,
        visit_count=1,
        mandatory_total=2,
        mandatory_visited=1,
        trajectory=[TrajectoryPoint(0.0, 0.0, T0)],
        visits=[_visit(1)],
    )


def test_null_sink_generates_ids():
    sink = NullPersistenceSink()
    first = sink.start_session("g", make_fix())
    assert len(first) == 32
    assert first != sink.start_session("g", make_fix())


def test_json_sink_lifecycle(tmp_path):
    sink = JsonFilePersistenceSink(tmp_path)
    session_id = sink.start_session("guard-1", make_fix(1.5, 2.5))
    record = sink.load(session_id)
    assert record["status"] == "in_progress"
    assert record["trajectory"] == [{"lat": 1.5, "lng": 2.5, "t": T0.isoformat()}]

    sink.append_visit(session_id, _visit(1))
    sink.append_visit(session_id, _visit(1))
    sink.append_visit(session_id, _visit("north-gate", 2))
    assert [v["checkpointId"] for v in sink.load(session_id)["visits"]] == [1, "north-gate"]

    sink.finish(session_id, _summary(session_id))
    on_disk = json.loads(sink.path_for(session_id).read_text(encoding="utf-8"))
    assert on_disk["status"] == "finished"
    assert on_disk["totalDistanceMeters"] == 12.5
    assert not list(tmp_path.glob("*.tmp"))


def test_json_sink_cancel_without_summary_keeps_record(tmp_path):
    sink = JsonFilePersistenceSink(tmp_path)
    session_id = sink.start_session("guard-1", make_fix())
    sink.append_visit(session_id, _visit(3))
    sink.cancel(session_id, "radio failure")
    record = sink.load(session_id)
    assert record["status"] == "cancelled"
    assert record["cancelReason"] == "radio failure"
    assert record["visits"][0]["checkpointId"] == 3


def test_json_sink_refuses_to_reopen_without_overwrite(tmp_path):
    sink = JsonFilePersistenceSink(tmp_path, overwrite=False)
    session_id = sink.start_session("guard-1", make_fix())
    sink.finish(session_id, _summary(session_id))
    with pytest.raises(PersistenceError):
        sink.cancel(session_id, "late")


def test_json_sink_unknown_session(tmp_path):
    sink = JsonFilePersistenceSink(tmp_path)
    with pytest.raises(PersistenceError):
        sink.append_visit("missing", _visit(1))

