"""Patrol session state machine.

A ``PatrolSession`` owns every per-patrol accumulator (fix filter, smoother,
trajectory, heading, visits) and is driven by exactly one writer, the
session worker. It never performs I/O: observers and collaborators are reached
through the ``on_event`` callback.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .config import (
    FILTER_LOG_SIZE,
    FORCE_ACCEPT_AFTER_REJECTIONS,
    HEADING_SMOOTHING_FACTOR,
    MIN_RECORD_DISTANCE_METERS,
    SMOOTHING_MIN_POINTS,
    SMOOTHING_WINDOW_SIZE,
)
from .errors import AlreadyActiveError, InvalidFixError, SessionNotActiveError
from .events import (
    CheckpointVisited,
    EventCallback,
    PatrolEvent,
    PositionUpdated,
    SessionCancelled,
    SessionFinished,
    SessionStarted,
)
from .geo import LatLon, is_valid_coordinate
from .geofence import CheckpointCandidate, Clock, GeofenceConfig, GeofenceEngine, utc_now
from .models import (
    Checkpoint,
    CheckpointVisit,
    Fix,
    PatrolSummary,
    SessionState,
    TrajectoryPoint,
    ValidatedFix,
    ensure_utc,
)
from .tracking import (
    FixFilter,
    HeadingTracker,
    PositionSmoother,
    PositionValidator,
    Reason,
    TrajectoryAccumulator,
    ValidationResult,
    ValidatorConfig,
)

_LOG = logging.getLogger(__name__)


@dataclass(slots=True)
class TrackingConfig:
    """Per-deployment tuning for every component a session owns."""

    validator: ValidatorConfig = field(default_factory=ValidatorConfig)
    geofence: GeofenceConfig = field(default_factory=GeofenceConfig)
    force_accept_after: int = FORCE_ACCEPT_AFTER_REJECTIONS
    filter_log_size: int = FILTER_LOG_SIZE
    min_record_distance_m: float = MIN_RECORD_DISTANCE_METERS
    smoothing_window: int = SMOOTHING_WINDOW_SIZE
    smoothing_min_points: int = SMOOTHING_MIN_POINTS
    heading_smoothing: float = HEADING_SMOOTHING_FACTOR


class PatrolSession:
    def __init__(
        self,
        session_id: str,
        guard_id: str,
        catalog: Sequence[Checkpoint] = (),
        *,
        config: TrackingConfig | None = None,
        clock: Clock = utc_now,
        on_event: EventCallback | None = None,
    ) -> None:
        self.session_id = session_id
        self.guard_id = guard_id
        self.catalog: Tuple[Checkpoint, ...] = tuple(catalog)
        self.config = config or TrackingConfig()
        self._clock = clock
        self.on_event = on_event

        cfg = self.config
        self.filter = FixFilter(
            PositionValidator(cfg.validator),
            force_accept_after=cfg.force_accept_after,
            log_size=cfg.filter_log_size,
        )
        self.smoother = PositionSmoother(cfg.smoothing_window, cfg.smoothing_min_points)
        self.trajectory = TrajectoryAccumulator(
            cfg.min_record_distance_m, cfg.validator.max_jump_m
        )
        self.heading = HeadingTracker(cfg.heading_smoothing)
        self.geofence = GeofenceEngine(cfg.geofence, clock=clock)

        self.state = SessionState.NOT_STARTED
        self.started_at: Optional[datetime] = None
        self.finished_at: Optional[datetime] = None
        self.notes = ""
        self.cancel_reason: Optional[str] = None
        self._visits: List[CheckpointVisit] = []
        self._visited: set = set()
        self._last_visit_at: Optional[datetime] = None
        self._distance_at_last_visit = 0.0
        self._nearby: Optional[CheckpointCandidate] = None
        self._sequence = 0

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------
    @property
    def is_active(self) -> bool:
        return self.state == SessionState.IN_PROGRESS

    @property
    def is_terminal(self) -> bool:
        return self.state in SessionState.TERMINAL

    @property
    def visits(self) -> List[CheckpointVisit]:
        return list(self._visits)

    @property
    def total_distance_m(self) -> float:
        return self.trajectory.total_distance_m

    @property
    def nearby_checkpoint(self) -> Optional[CheckpointCandidate]:
        return self._nearby

    @property
    def last_visit_at(self) -> Optional[datetime]:
        return self._last_visit_at

    def current_position(self) -> Optional[LatLon]:
        """Smoothed display position, falling back to the trajectory head."""

        position = self.smoother.position()
        if position is None:
            return self.trajectory.current_position
        return position

    def elapsed_seconds(self, now: datetime | None = None) -> float:
        if self.started_at is None:
            return 0.0
        end = self.finished_at or (ensure_utc(now) if now else self._clock())
        return max(0.0, (end - self.started_at).total_seconds())

    def mandatory_progress(self) -> Tuple[int, int]:
        """Return ``(visited, total)`` for mandatory checkpoints."""

        mandatory = {cp.id for cp in self.catalog if cp.mandatory}
        return len(mandatory & self._visited), len(mandatory)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------
    def start(self, initial_fix: Fix) -> SessionStarted:
        if self.state == SessionState.IN_PROGRESS:
            raise AlreadyActiveError(
                f"session {self.session_id} is already in progress",
                session_id=self.session_id,
                guard_id=self.guard_id,
            )
        if self.state != SessionState.NOT_STARTED:
            raise SessionNotActiveError(
                f"session {self.session_id} is {self.state}",
                session_id=self.session_id,
                state=self.state,
            )
        if initial_fix is None or not is_valid_coordinate(
            initial_fix.latitude, initial_fix.longitude
        ):
            raise InvalidFixError(
                "initial fix has no usable coordinates", session_id=self.session_id
            )

        self.started_at = self._clock()
        self.trajectory.seed(initial_fix)
        self.smoother.add(initial_fix)
        self.filter.prime(
            ValidatedFix(initial_fix, self.started_at, 0.0, Reason.FIRST_POINT)
        )
        self.state = SessionState.IN_PROGRESS
        _LOG.info(
            "Patrol %s started for guard %s with %d checkpoints",
            self.session_id,
            self.guard_id,
            len(self.catalog),
        )
        event = SessionStarted(
            self.session_id,
            self.started_at,
            guard_id=self.guard_id,
            position=initial_fix.latlon,
            checkpoint_count=len(self.catalog),
        )
        self._emit(event)
        return event

    def ingest(self, fix: Fix) -> ValidationResult:
        """Validate ``fix`` and fold it into the session; never raises on bad input."""

        self._require_active("ingest")
        return self._ingest(fix)

    def update_heading(self, heading_deg: float) -> Optional[float]:
        self._require_active("update heading")
        return self.heading.smooth(heading_deg)

    def confirm_checkpoint(
        self, checkpoint_id: Any, fix: Fix, description: str = ""
    ) -> CheckpointVisit:
        """Record a guard-confirmed visit; failures leave the session untouched.

        ``description`` is the guard's free-text note for the checkpoint. The
        visit keeps the accuracy of ``fix`` for later audit.
        """

        self._require_active("confirm checkpoint")
        if fix is None or not is_valid_coordinate(fix.latitude, fix.longitude):
            raise InvalidFixError(
                "confirmation fix has no usable coordinates",
                session_id=self.session_id,
                checkpoint_id=checkpoint_id,
            )
        now = self._clock()
        visit = self.geofence.confirm(
            checkpoint_id,
            fix.latlon,
            self.catalog,
            self._visited,
            self._last_visit_at,
            sequence_number=len(self._visits) + 1,
            captured_at=fix.captured_at,
            now=now,
            meters_since_previous=self.total_distance_m - self._distance_at_last_visit,
            description=(description or "").strip(),
            accuracy_m=fix.accuracy_m,
        )
        self._visits.append(visit)
        self._visited.add(visit.checkpoint_id)
        self._last_visit_at = visit.spacing_reference
        self._distance_at_last_visit = self.total_distance_m
        if self._nearby is not None and self._nearby.checkpoint.id == visit.checkpoint_id:
            self._nearby = None
        visited, total = self.mandatory_progress()
        _LOG.info(
            "Patrol %s checkpoint %s visited (#%d, %.1fm from centre)",
            self.session_id,
            visit.checkpoint_id,
            visit.sequence_number,
            visit.distance_m,
        )
        self._emit(
            CheckpointVisited(
                self.session_id,
                now,
                visit=visit,
                mandatory_visited=visited,
                mandatory_total=total,
            )
        )
        return visit

    def finish(self, final_fix: Fix | None = None, notes: str = "") -> PatrolSummary:
        self._require_active("finish")
        if final_fix is not None:
            self._ingest(final_fix)
        if notes:
            self.notes = f"{self.notes}\n{notes}".strip() if self.notes else notes
        self.finished_at = self._clock()
        self.state = SessionState.FINISHED
        summary = self.summary()
        _LOG.info(
            "Patrol %s finished: %.1fm in %.0fs, %d visits",
            self.session_id,
            summary.total_distance_m,
            summary.elapsed_seconds,
            summary.visit_count,
        )
        self._emit(
            SessionFinished(
                self.session_id, self.finished_at, summary=summary
            )
        )
        return summary

    def cancel(self, reason: str = "") -> PatrolSummary:
        """Stop the patrol; trajectory and visits stay available for audit."""

        self._require_active("cancel")
        self.cancel_reason = reason or ""
        self.finished_at = self._clock()
        self.state = SessionState.CANCELLED
        _LOG.info("Patrol %s cancelled: %s", self.session_id, self.cancel_reason or "-")
        self._emit(
            SessionCancelled(
                self.session_id,
                self.finished_at,
                reason=self.cancel_reason,
                visit_count=len(self._visits),
            )
        )
        return self.summary()

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------
    def summary(self) -> PatrolSummary:
        visited, total = self.mandatory_progress()
        return PatrolSummary(
            session_id=self.session_id,
            guard_id=self.guard_id,
            status=self.state,
            started_at=self.started_at or self._clock(),
            finished_at=self.finished_at,
            total_distance_m=self.total_distance_m,
            elapsed_seconds=self.elapsed_seconds(),
            visit_count=len(self._visits),
            mandatory_total=total,
            mandatory_visited=visited,
            trajectory=self.trajectory.points,
            visits=list(self._visits),
            notes=self.notes,
            cancel_reason=self.cancel_reason,
        )

    def snapshot(self) -> Dict[str, Any]:
        """JSON-friendly view of the live session state."""

        position = self.current_position()
        visited, total = self.mandatory_progress()
        return {
            "sessionId": self.session_id,
            "guardId": self.guard_id,
            "status": self.state,
            "startedAt": self.started_at.isoformat() if self.started_at else None,
            "finishedAt": self.finished_at.isoformat() if self.finished_at else None,
            "elapsedSeconds": round(self.elapsed_seconds(), 3),
            "position": list(position) if position else None,
            "heading": self.heading.current,
            "direction": self.heading.cardinal,
            "totalDistanceMeters": round(self.total_distance_m, 2),
            "trajectoryLength": len(self.trajectory),
            "visits": [visit.to_record() for visit in self._visits],
            "mandatoryVisited": visited,
            "mandatoryTotal": total,
            "nearbyCheckpoint": self._nearby.to_dict() if self._nearby else None,
            "filter": self.filter.stats(),
        }

    @classmethod
    def resume(
        cls,
        session_id: str,
        guard_id: str,
        catalog: Sequence[Checkpoint],
        *,
        started_at: datetime,
        trajectory: Sequence[TrajectoryPoint],
        visits: Sequence[CheckpointVisit] = (),
        notes: str = "",
        config: TrackingConfig | None = None,
        clock: Clock = utc_now,
        on_event: EventCallback | None = None,
    ) -> "PatrolSession":
        """Rebuild an in-progress session from previously recorded state.

        Points are replayed through the trajectory rules, so the restored
        distance always matches the restored points. No start event is emitted.
        """

        if not trajectory:
            raise InvalidFixError(
                "cannot resume a session without trajectory points",
                session_id=session_id,
            )
        session = cls(
            session_id, guard_id, catalog, config=config, clock=clock, on_event=on_event
        )
        session.started_at = ensure_utc(started_at)
        session.notes = notes
        first, *rest = trajectory
        session.trajectory.seed(Fix(first.latitude, first.longitude, first.captured_at))
        last = ValidatedFix(
            Fix(first.latitude, first.longitude, first.captured_at),
            first.captured_at,
            0.0,
            Reason.FIRST_POINT,
        )
        for point in rest:
            last = ValidatedFix(
                Fix(point.latitude, point.longitude, point.captured_at),
                point.captured_at,
                0.0,
                Reason.OK,
            )
            session.trajectory.append(last)
        session.filter.prime(last)
        session.smoother.add(last.fix)

        ordered = sorted(visits, key=lambda visit: visit.sequence_number)
        for visit in ordered:
            if visit.checkpoint_id in session._visited:
                continue
            session._visits.append(visit)
            session._visited.add(visit.checkpoint_id)
        if session._visits:
            session._last_visit_at = session._visits[-1].spacing_reference
            session._distance_at_last_visit = session.total_distance_m
        session.state = SessionState.IN_PROGRESS
        _LOG.info(
            "Patrol %s resumed with %d points and %d visits",
            session_id,
            len(session.trajectory),
            len(session._visits),
        )
        return session

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _require_active(self, action: str) -> None:
        if self.state != SessionState.IN_PROGRESS:
            raise SessionNotActiveError(
                f"cannot {action}: session {self.session_id} is {self.state}",
                session_id=self.session_id,
                state=self.state,
            )

    def _ingest(self, fix: Fix) -> ValidationResult:
        now = self._clock()
        result = self.filter.process(fix, now=now)
        validated = result.validated
        if validated is not None:
            # Display-only fixes move the marker but never the trajectory.
            self.smoother.add(validated.fix)
            if result.accepted:
                self.trajectory.append(validated)
                self._nearby = self.geofence.evaluate(
                    validated.latlon,
                    self.catalog,
                    self._visited,
                    self._last_visit_at,
                    now=now,
                )

        self._emit(
            PositionUpdated(
                self.session_id,
                now,
                position=self.current_position(),
                raw_fix=fix,
                accepted=result.accepted,
                reason=result.reason,
                display_only=bool(validated and validated.display_only),
                heading_deg=self.heading.current,
                velocity_mps=result.details.get("velocity_mps"),
                total_distance_m=self.total_distance_m,
                trajectory_length=len(self.trajectory),
                nearby=self._nearby.to_dict() if self._nearby else None,
            )
        )
        return result

    def _emit(self, event: PatrolEvent) -> None:
        self._sequence += 1
        event.sequence = self._sequence
        if self.on_event is not None:
            self.on_event(event)


__all__ = ["PatrolSession", "TrackingConfig"]
