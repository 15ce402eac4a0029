"""PatrolService registry, worker ordering and collaborator degradation."""

import logging
import threading

import pytest

from patrol_tracker.broadcast import Broadcaster
from patrol_tracker.collaborators import StaticCatalog
from patrol_tracker.errors import (
    AlreadyActiveError,
    CatalogError,
    InvalidFixError,
    PersistenceError,
    SessionNotActiveError,
    SessionNotFoundError,
    TooSoonError,
)
from patrol_tracker.events import EventKind, EventRecorder
from patrol_tracker.models import SessionState
from patrol_tracker.service import PatrolService

from conftest import RecordingTransport, east_of, make_fix, wait_until, walk_east


class RecordingSink:
    """Persistence sink that records calls and can fail selected operations."""

    def __init__(self, fail=()):
        self.fail = set(fail)
        self.calls = []
        self.finished = threading.Event()
        self.cancelled = threading.Event()
        self._lock = threading.Lock()
        self._next = 0

    def _record(self, op, *args):
        with self._lock:
            self.calls.append((op,) + args)
        if op in self.fail:
            raise PersistenceError(f"{op} unavailable")

    def start_session(self, guard_id, initial_fix):
        self._record("start_session", guard_id)
        with self._lock:
            self._next += 1
            return f"sess-{self._next}"

    def append_visit(self, session_id, visit):
        self._record("append_visit", session_id, visit.checkpoint_id)

    def finish(self, session_id, summary):
        try:
            self._record("finish", session_id, summary.status)
        finally:
            self.finished.set()

    def cancel(self, session_id, reason, summary=None):
        try:
            self._record("cancel", session_id, reason)
        finally:
            self.cancelled.set()

    def ops(self):
        with self._lock:
            return [call[0] for call in self.calls]


class FailingCatalog:
    def __init__(self):
        self.calls = 0

    def load(self, area_id=None):
        self.calls += 1
        raise CatalogError("catalog offline")


class FailureLog:
    def __init__(self):
        self.items = []
        self.event = threading.Event()

    def __call__(self, kind, session_id, exc):
        self.items.append((kind, session_id, exc))
        self.event.set()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def failures():
    return FailureLog()


@pytest.fixture
def service(checkpoints, sink, clock, fast_backoff, failures):
    svc = PatrolService(
        StaticCatalog(checkpoints),
        sink,
        Broadcaster(tick_seconds=0, backoff=fast_backoff),
        clock=clock,
        backoff=fast_backoff,
        on_collaborator_failure=failures,
        command_timeout=5.0,
    )
    yield svc
    svc.shutdown(timeout=2.0)


def test_start_registers_active_session(service, sink):
    session_id = service.start_patrol("guard-1", make_fix())
    assert session_id == "sess-1"
    assert service.active_session_for("guard-1") == session_id
    assert service.active_sessions() == [session_id]
    snapshot = service.get_session_snapshot(session_id)
    assert snapshot["status"] == SessionState.IN_PROGRESS
    assert snapshot["mandatoryTotal"] == 2
    assert sink.ops() == ["start_session"]


def test_second_start_for_same_guard_is_rejected(service):
    session_id = service.start_patrol("guard-1", make_fix())
    with pytest.raises(AlreadyActiveError) as exc:
        service.start_patrol("guard-1", make_fix(seconds=5))
    assert exc.value.to_dict()["session_id"] == session_id
    assert service.active_sessions() == [session_id]
    # other guards are unaffected
    assert service.start_patrol("guard-2", make_fix()) != session_id


def test_start_rejects_unusable_initial_fix(service):
    with pytest.raises(InvalidFixError):
        service.start_patrol("guard-1", make_fix(lat=float("nan")))
    assert service.active_session_for("guard-1") is None


def test_fixes_are_processed_in_submission_order(service):
    recorder = EventRecorder()
    session_id = service.start_patrol("guard-1", make_fix(), listeners=[recorder])
    futures = [service.submit_fix(session_id, fix) for fix in walk_east(20, step_m=2.0)]
    results = [future.result(timeout=5) for future in futures]
    assert all(result.accepted for result in results)
    summary = service.finish_patrol(session_id)
    assert len(summary.trajectory) == 21
    assert summary.total_distance_m == pytest.approx(40.0, abs=1e-3)
    sequences = [event.sequence for event in recorder.events]
    assert sequences == sorted(sequences)
    assert recorder.kinds()[0] == EventKind.SESSION_STARTED
    assert recorder.kinds()[-1] == EventKind.SESSION_FINISHED


def test_commands_after_finish_fail_fast(service, sink):
    session_id = service.start_patrol("guard-1", make_fix())
    summary = service.finish_patrol(session_id, notes="done")
    assert summary.status == SessionState.FINISHED
    with pytest.raises(SessionNotActiveError):
        service.submit_fix(session_id, make_fix(seconds=10))
    with pytest.raises(SessionNotActiveError):
        service.cancel_patrol(session_id, "late")
    assert service.active_session_for("guard-1") is None
    assert service.get_summary(session_id).notes == "done"
    assert service.get_session_snapshot(session_id)["status"] == SessionState.FINISHED
    assert sink.finished.wait(2.0)
    # the guard can start again straight away
    assert service.start_patrol("guard-1", make_fix(seconds=20)) != session_id


def test_unknown_session(service):
    with pytest.raises(SessionNotFoundError):
        service.submit_fix("missing", make_fix())
    with pytest.raises(SessionNotFoundError):
        service.subscribe("missing", RecordingTransport())


def test_confirm_checkpoint_through_service(service, sink, clock):
    session_id = service.start_patrol("guard-1", make_fix())
    visit = service.confirm_checkpoint(session_id, 1, make_fix(seconds=1))
    assert visit.sequence_number == 1
    with pytest.raises(TooSoonError):
        service.confirm_checkpoint(session_id, 2, make_fix(lon=east_of(0, 100), seconds=2))
    service.cancel_patrol(session_id, "shift change")
    with pytest.raises(SessionNotActiveError):
        service.submit_fix(session_id, make_fix(seconds=3))
    assert sink.cancelled.wait(2.0)
    assert ("append_visit", session_id, 1) in sink.calls
    assert ("cancel", session_id, "shift change") in sink.calls
    summary = service.get_summary(session_id)
    assert summary.status == SessionState.CANCELLED
    assert [v.checkpoint_id for v in summary.visits] == [1]


def test_catalog_failure_degrades_to_empty(checkpoints, sink, clock, fast_backoff, failures):
    catalog = FailingCatalog()
    service = PatrolService(
        catalog, sink, clock=clock, backoff=fast_backoff, on_collaborator_failure=failures
    )
    try:
        session_id = service.start_patrol("guard-1", make_fix())
        assert catalog.calls == fast_backoff.max_attempts
        assert [item[0] for item in failures.items] == ["catalog"]
        assert failures.items[0][1] == session_id
        assert service.get_session_snapshot(session_id)["mandatoryTotal"] == 0
        assert service.submit_fix(session_id, walk_east(1)[0]).result(5).accepted
    finally:
        service.shutdown(timeout=2.0)


def test_start_record_failure_uses_local_id(checkpoints, clock, fast_backoff, failures):
    sink = RecordingSink(fail={"start_session"})
    service = PatrolService(
        StaticCatalog(checkpoints),
        sink,
        clock=clock,
        backoff=fast_backoff,
        on_collaborator_failure=failures,
    )
    try:
        session_id = service.start_patrol("guard-1", make_fix())
        assert len(session_id) == 32
        assert sink.ops().count("start_session") == fast_backoff.max_attempts
        assert failures.items[0][0] == "persistence"
        assert service.active_session_for("guard-1") == session_id
    finally:
        service.shutdown(timeout=2.0)


def test_async_persistence_failure_does_not_block_tracking(
    checkpoints, clock, fast_backoff, failures
):
    sink = RecordingSink(fail={"append_visit"})
    service = PatrolService(
        StaticCatalog(checkpoints),
        sink,
        clock=clock,
        backoff=fast_backoff,
        on_collaborator_failure=failures,
    )
    try:
        session_id = service.start_patrol("guard-1", make_fix())
        service.confirm_checkpoint(session_id, 1, make_fix(seconds=1))
        results = [service.submit_fix(session_id, fix) for fix in walk_east(3, start_s=2)]
        assert all(future.result(5).accepted for future in results)
        assert failures.event.wait(2.0)
        kind, failed_id, exc = failures.items[0]
        assert (kind, failed_id) == ("persistence", session_id)
        assert isinstance(exc, PersistenceError)
        assert len(service.get_summary(session_id).visits) == 1
    finally:
        service.shutdown(timeout=2.0)


def test_subscriber_receives_room_events(service):
    transport = RecordingTransport()
    session_id = service.start_patrol("guard-1", make_fix())
    service.subscribe(session_id, transport)
    service.confirm_checkpoint(session_id, 1, make_fix(seconds=1))
    service.finish_patrol(session_id)
    room = f"ronda:{session_id}"
    assert wait_until(lambda: ("leave", room) in transport.calls)
    assert ("join", room) in transport.calls
    assert transport.kinds()[-2:] == [
        EventKind.CHECKPOINT_VISITED,
        EventKind.SESSION_FINISHED,
    ]
    assert transport.calls[-1] == ("leave", room)
    # already closed channel: unsubscribe is a no-op
    service.unsubscribe(session_id, transport)


def test_submit_heading(service):
    session_id = service.start_patrol("guard-1", make_fix())
    assert service.submit_heading(session_id, 90.0).result(5) == pytest.approx(90.0)
    assert service.get_session_snapshot(session_id)["direction"] == "E"


def test_shutdown_refuses_new_sessions(service):
    service.shutdown(timeout=2.0)
    with pytest.raises(SessionNotActiveError):
        service.start_patrol("guard-1", make_fix())


def test_archived_snapshot_keeps_live_schema(service):
    session_id = service.start_patrol("guard-1", make_fix())
    service.confirm_checkpoint(session_id, 1, make_fix(seconds=1), "door checked")
    live = service.get_session_snapshot(session_id)
    service.finish_patrol(session_id)
    archived = service.get_session_snapshot(session_id)
    assert set(archived) == set(live)
    assert archived["status"] == SessionState.FINISHED
    assert archived["finishedAt"] is not None
    assert archived["visits"][0]["description"] == "door checked"


def test_failing_listener_does_not_fail_command(service, caplog):
    def explode(event):
        if event.kind == EventKind.CHECKPOINT_VISITED:
            raise ValueError("listener bug")

    recorder = EventRecorder()
    session_id = service.start_patrol(
        "guard-1", make_fix(), listeners=[explode, recorder]
    )
    with caplog.at_level(logging.ERROR):
        visit = service.confirm_checkpoint(session_id, 1, make_fix(seconds=1))
    assert visit.checkpoint_id == 1
    assert "listener bug" in caplog.text
    assert EventKind.CHECKPOINT_VISITED in recorder.kinds()
    assert [v.checkpoint_id for v in service.get_summary(session_id).visits] == [1]
