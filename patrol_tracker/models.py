"""Domain records shared by the tracking, geofence and session layers."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from .config import (
    CHECKPOINT_RADIUS_DEFAULT_METERS,
    CHECKPOINT_RADIUS_MAX_METERS,
    CHECKPOINT_RADIUS_MIN_METERS,
    MISSING_ACCURACY_METERS,
)
from .geo import LatLon


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""

    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def clamp_radius(radius_m: float | None) -> float:
    if radius_m is None or radius_m <= 0:
        radius_m = CHECKPOINT_RADIUS_DEFAULT_METERS
    return float(
        min(max(radius_m, CHECKPOINT_RADIUS_MIN_METERS), CHECKPOINT_RADIUS_MAX_METERS)
    )


class SessionState:
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    FINISHED = "finished"
    CANCELLED = "cancelled"

    TERMINAL = frozenset({FINISHED, CANCELLED})


@dataclass(frozen=True, slots=True)
class Fix:
    latitude: float
    longitude: float
    captured_at: datetime
    accuracy_m: float | None = None
    altitude_m: float | None = None
    speed_mps: float | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "captured_at", ensure_utc(self.captured_at))

    @property
    def latlon(self) -> LatLon:
        return (self.latitude, self.longitude)

    @property
    def effective_accuracy_m(self) -> float:
        if self.accuracy_m is None:
            return MISSING_ACCURACY_METERS
        return float(self.accuracy_m)


@dataclass(frozen=True, slots=True)
class ValidatedFix:
    fix: Fix
    accepted_at: datetime
    velocity_mps: float
    reason: str
    # Force-accepted after a rejection streak: shown, never measured.
    display_only: bool = False

    @property
    def latlon(self) -> LatLon:
        return self.fix.latlon

    @property
    def captured_at(self) -> datetime:
        return self.fix.captured_at


@dataclass(frozen=True, slots=True)
class TrajectoryPoint:
    latitude: float
    longitude: float
    captured_at: datetime

    @property
    def latlon(self) -> LatLon:
        return (self.latitude, self.longitude)

    def to_record(self) -> Dict[str, Any]:
        return {
            "lat": self.latitude,
            "lng": self.longitude,
            "t": self.captured_at.isoformat(),
        }


@dataclass(frozen=True, slots=True)
class Checkpoint:
    id: int | str
    latitude: float
    longitude: float
    radius_m: float = CHECKPOINT_RADIUS_DEFAULT_METERS
    mandatory: bool = False
    label: str = ""
    active: bool = True

    def __post_init__(self) -> None:
        object.__setattr__(self, "radius_m", clamp_radius(self.radius_m))

    @property
    def latlon(self) -> LatLon:
        return (self.latitude, self.longitude)


@dataclass(frozen=True, slots=True)
class CheckpointVisit:
    checkpoint_id: int | str
    distance_m: float
    captured_at: datetime
    sequence_number: int
    latitude: float | None = None
    longitude: float | None = None
    seconds_since_previous: float | None = None
    meters_since_previous: float | None = None
    # Guard-entered note and the accuracy of the confirming fix.
    description: str = ""
    accuracy_m: float | None = None
    # Clock time the confirmation was accepted; spacing is measured from it.
    confirmed_at: datetime | None = None

    @property
    def spacing_reference(self) -> datetime:
        return self.confirmed_at or self.captured_at

    def to_record(self) -> Dict[str, Any]:
        return {
            "checkpointId": self.checkpoint_id,
            "distance": round(self.distance_m, 2),
            "t": self.captured_at.isoformat(),
            "confirmedAt": self.confirmed_at.isoformat() if self.confirmed_at else None,
            "sequence": self.sequence_number,
            "description": self.description,
            "accuracy": self.accuracy_m,
        }


@dataclass(slots=True)
class PatrolSummary:
    session_id: str
    guard_id: str
    status: str
    started_at: datetime
    finished_at: Optional[datetime]
    total_distance_m: float
    elapsed_seconds: float
    visit_count: int
    mandatory_total: int
    mandatory_visited: int
    trajectory: List[TrajectoryPoint] = field(default_factory=list)
    visits: List[CheckpointVisit] = field(default_factory=list)
    notes: str = ""
    cancel_reason: str | None = None

    @property
    def mandatory_completion_ratio(self) -> float:
        if self.mandatory_total <= 0:
            return 1.0
        return self.mandatory_visited / self.mandatory_total

    def to_record(self) -> Dict[str, Any]:
        """JSON-shaped session record handed to persistence collaborators."""

        return {
            "sessionId": self.session_id,
            "guardId": self.guard_id,
            "status": self.status,
            "startedAt": self.started_at.isoformat(),
            "finishedAt": self.finished_at.isoformat() if self.finished_at else None,
            "totalDistanceMeters": round(self.total_distance_m, 2),
            "elapsedSeconds": round(self.elapsed_seconds, 3),
            "visitCount": self.visit_count,
            "mandatoryTotal": self.mandatory_total,
            "mandatoryVisited": self.mandatory_visited,
            "mandatoryCompletionRatio": round(self.mandatory_completion_ratio, 4),
            "trajectory": [point.to_record() for point in self.trajectory],
            "visits": [visit.to_record() for visit in self.visits],
            "notes": self.notes,
            "cancelReason": self.cancel_reason,
        }


@dataclass(frozen=True, slots=True)
class HeadingSample:
    heading_deg: float
    captured_at: datetime

    def __post_init__(self) -> None:
        object.__setattr__(self, "captured_at", ensure_utc(self.captured_at))
