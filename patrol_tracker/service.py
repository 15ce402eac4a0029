"""Patrol service: registry of active sessions and the engine's public API."""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from cachetools import TTLCache

from .broadcast.backoff import BackoffPolicy
from .broadcast.broadcaster import Broadcaster
from .broadcast.transport import Transport
from .collaborators import CheckpointCatalog, PersistenceSink, StaticCatalog
from .config import ARCHIVE_MAX_SESSIONS, ARCHIVE_TTL_SECONDS, COMMAND_TIMEOUT_SECONDS
from .errors import (
    AlreadyActiveError,
    InvalidFixError,
    SessionNotActiveError,
    SessionNotFoundError,
)
from .events import EventCallback
from .geo import is_valid_coordinate
from .geofence import CheckpointCandidate, Clock, utc_now
from .models import Checkpoint, CheckpointVisit, Fix, PatrolSummary
from .persistence import NullPersistenceSink, new_session_id
from .session import PatrolSession, TrackingConfig
from .tracking import ValidationResult
from .worker import FailureHook, SessionWorker

_PENDING = "<starting>"


@dataclass(slots=True)
class _Archived:
    summary: PatrolSummary
    snapshot: Dict[str, Any]


class PatrolService:
    """Entry point used by other subsystems.

    Holds one ``SessionWorker`` per active session and an index of active
    sessions by guard. Finished and cancelled sessions move to a bounded
    archive so late callers get ``SessionNotActiveError`` (and audit lookups
    still work) instead of ``SessionNotFoundError``.
    """

    def __init__(
        self,
        catalog: CheckpointCatalog | None = None,
        persistence: PersistenceSink | None = None,
        broadcaster: Broadcaster | None = None,
        *,
        config: TrackingConfig | None = None,
        clock: Clock = utc_now,
        backoff: BackoffPolicy | None = None,
        on_collaborator_failure: FailureHook | None = None,
        command_timeout: float | None = COMMAND_TIMEOUT_SECONDS,
        archive_size: int = ARCHIVE_MAX_SESSIONS,
        archive_ttl: float = ARCHIVE_TTL_SECONDS,
    ) -> None:
        self._log = logging.getLogger(self.__class__.__name__)
        self.catalog = catalog or StaticCatalog()
        self.persistence = persistence or NullPersistenceSink()
        self.broadcaster = broadcaster or Broadcaster(backoff=backoff)
        self.config = config or TrackingConfig()
        self._clock = clock
        self.backoff = backoff or BackoffPolicy()
        self._on_failure = on_collaborator_failure
        self.command_timeout = command_timeout
        self._lock = threading.RLock()
        self._workers: Dict[str, SessionWorker] = {}
        self._by_guard: Dict[str, str] = {}
        self._archive: TTLCache[str, _Archived] = TTLCache(
            maxsize=max(1, archive_size), ttl=archive_ttl
        )
        # Terminal workers still flushing persistence and broadcasts.
        self._retired: List[SessionWorker] = []
        self._closed = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def start_patrol(
        self,
        guard_id: str,
        initial_fix: Fix,
        area_id: Optional[str] = None,
        *,
        listeners: Optional[List[EventCallback]] = None,
    ) -> str:
        """Create and start a session for ``guard_id``; return its id.

        Raises ``AlreadyActiveError`` when the guard already patrols and
        ``InvalidFixError`` when the initial fix has no usable coordinates.
        Catalog and persistence failures degrade to an empty catalog and a
        locally generated session id.
        """

        if initial_fix is None or not is_valid_coordinate(
            initial_fix.latitude, initial_fix.longitude
        ):
            raise InvalidFixError("initial fix has no usable coordinates", guard_id=guard_id)
        with self._lock:
            if self._closed:
                raise SessionNotActiveError("patrol service is shut down")
            active = self._by_guard.get(guard_id)
            if active is not None:
                raise AlreadyActiveError(
                    f"guard {guard_id} already has an active patrol",
                    guard_id=guard_id,
                    session_id=None if active == _PENDING else active,
                )
            self._by_guard[guard_id] = _PENDING

        session_id: Optional[str] = None
        try:
            session_id = self._start_record(guard_id, initial_fix)
            checkpoints = self._load_catalog(session_id, area_id)
            session = PatrolSession(
                session_id,
                guard_id,
                checkpoints,
                config=self.config,
                clock=self._clock,
            )
            worker = SessionWorker(
                session,
                persistence=self.persistence,
                broadcaster=self.broadcaster,
                backoff=self.backoff,
                on_collaborator_failure=self._on_failure,
                on_terminal=self._retire,
            )
            for listener in listeners or ():
                worker.add_listener(listener)
            self.broadcaster.open_session(session_id)
            session.start(initial_fix)
        except Exception:
            with self._lock:
                if self._by_guard.get(guard_id) == _PENDING:
                    del self._by_guard[guard_id]
            if session_id is not None:
                self.broadcaster.close_session(session_id, 0)
            raise

        with self._lock:
            self._workers[session_id] = worker
            self._by_guard[guard_id] = session_id
        worker.start()
        return session_id

    def _start_record(self, guard_id: str, initial_fix: Fix) -> str:
        try:
            return self.backoff.run(
                lambda: self.persistence.start_session(guard_id, initial_fix),
                context=f"persistence.start_session guard={guard_id}",
            )
        except Exception as exc:
            session_id = new_session_id()
            self._log.error(
                "Could not create session record for guard %s; using local id %s: %s",
                guard_id,
                session_id,
                exc,
            )
            self._report("persistence", session_id, exc)
            return session_id

    def _load_catalog(self, session_id: str, area_id: Optional[str]) -> List[Checkpoint]:
        try:
            return list(
                self.backoff.run(
                    lambda: self.catalog.load(area_id),
                    context=f"catalog.load area={area_id or '-'}",
                )
            )
        except Exception as exc:
            self._log.error(
                "Checkpoint catalog unavailable for session %s; continuing without checkpoints: %s",
                session_id,
                exc,
            )
            self._report("catalog", session_id, exc)
            return []

    def _report(self, kind: str, session_id: Optional[str], exc: Exception) -> None:
        if self._on_failure is not None:
            self._on_failure(kind, session_id, exc)

    def _retire(self, worker: SessionWorker) -> None:
        session = worker.session
        with self._lock:
            self._workers.pop(session.session_id, None)
            if self._by_guard.get(session.guard_id) == session.session_id:
                del self._by_guard[session.guard_id]
            self._archive[session.session_id] = _Archived(
                session.summary(), session.snapshot()
            )
            self._retired = [w for w in self._retired if not w.closed]
            self._retired.append(worker)

    def _worker(self, session_id: str) -> SessionWorker:
        with self._lock:
            worker = self._workers.get(session_id)
            if worker is not None:
                return worker
            archived = self._archive.get(session_id)
        if archived is not None:
            status = archived.summary.status
            raise SessionNotActiveError(
                f"session {session_id} is {status}",
                session_id=session_id,
                state=status,
            )
        raise SessionNotFoundError(f"unknown session {session_id}", session_id=session_id)

    def _call(self, session_id: str, command) -> Any:
        return self._worker(session_id).call(command, self.command_timeout)

    # ------------------------------------------------------------------
    # Session commands
    # ------------------------------------------------------------------
    def submit_fix(self, session_id: str, fix: Fix) -> "Future[ValidationResult]":
        """Queue ``fix`` for the session worker and return its pending result."""

        return self._worker(session_id).submit(lambda session: session.ingest(fix))

    def submit_heading(
        self, session_id: str, heading_deg: float
    ) -> "Future[Optional[float]]":
        return self._worker(session_id).submit(
            lambda session: session.update_heading(heading_deg)
        )

    def confirm_checkpoint(
        self, session_id: str, checkpoint_id: Any, fix: Fix, description: str = ""
    ) -> CheckpointVisit:
        return self._call(
            session_id,
            lambda session: session.confirm_checkpoint(checkpoint_id, fix, description),
        )

    def finish_patrol(
        self, session_id: str, final_fix: Fix | None = None, notes: str = ""
    ) -> PatrolSummary:
        return self._call(session_id, lambda session: session.finish(final_fix, notes))

    def cancel_patrol(self, session_id: str, reason: str = "") -> None:
        self._call(session_id, lambda session: session.cancel(reason))

    # ------------------------------------------------------------------
    # Observers
    # ------------------------------------------------------------------
    def subscribe(self, session_id: str, transport: Transport) -> None:
        self._worker(session_id)
        self.broadcaster.subscribe(session_id, transport)

    def unsubscribe(self, session_id: str, transport: Transport) -> None:
        if not self.broadcaster.is_open(session_id):
            return
        self.broadcaster.unsubscribe(session_id, transport)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def active_session_for(self, guard_id: str) -> Optional[str]:
        with self._lock:
            session_id = self._by_guard.get(guard_id)
        if session_id == _PENDING:
            return None
        return session_id

    def active_sessions(self) -> List[str]:
        with self._lock:
            return list(self._workers)

    def get_session_snapshot(self, session_id: str) -> Dict[str, Any]:
        """Live state of ``session_id``; finished sessions keep their final snapshot."""

        with self._lock:
            archived = self._archive.get(session_id)
        if archived is not None:
            return dict(archived.snapshot)
        return self._call(session_id, lambda session: session.snapshot())

    def get_summary(self, session_id: str) -> PatrolSummary:
        with self._lock:
            archived = self._archive.get(session_id)
        if archived is not None:
            return archived.summary
        return self._call(session_id, lambda session: session.summary())

    def nearby_checkpoint(self, session_id: str) -> Optional[CheckpointCandidate]:
        return self._call(session_id, lambda session: session.nearby_checkpoint)

    def shutdown(self, timeout: float | None = None) -> None:
        """Stop every worker and broadcaster thread; active sessions stay in progress."""

        with self._lock:
            self._closed = True
            workers = list(self._workers.values())
            retired = list(self._retired)
            self._retired = []
        for worker in workers:
            worker.stop(timeout)
        for worker in retired:
            if not worker.wait_closed(timeout):
                self._log.warning("Worker for session %s still closing", worker.session_id)
        self.broadcaster.shutdown()
        self._log.info("Patrol service stopped (%d active sessions left open)", len(workers))


__all__ = ["PatrolService"]
