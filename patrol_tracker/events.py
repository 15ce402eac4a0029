"""Events emitted by a patrol session and forwarded to observers."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, ClassVar, Dict, Optional

from .geo import LatLon, cardinal_direction
from .models import CheckpointVisit, Fix, PatrolSummary


class EventKind:
    SESSION_STARTED = "session_started"
    POSITION_UPDATED = "position_updated"
    POSITION_TICK = "position_tick"
    CHECKPOINT_VISITED = "checkpoint_visited"
    SESSION_FINISHED = "session_finished"
    SESSION_CANCELLED = "session_cancelled"

    # Only the newest undelivered one of these matters to an observer.
    COALESCABLE = frozenset({POSITION_UPDATED, POSITION_TICK})
    TERMINAL = frozenset({SESSION_FINISHED, SESSION_CANCELLED})

    # Names used on the observer wire.
    WIRE_NAMES = {
        SESSION_STARTED: "ronda:iniciada",
        POSITION_UPDATED: "ronda:posicao",
        POSITION_TICK: "ronda:posicao",
        CHECKPOINT_VISITED: "ronda:checkpoint",
        SESSION_FINISHED: "ronda:finalizada",
        SESSION_CANCELLED: "ronda:cancelada",
    }


@dataclass(slots=True)
class PatrolEvent:
    kind: ClassVar[str] = ""

    session_id: str
    occurred_at: datetime
    sequence: int = 0

    @property
    def coalescable(self) -> bool:
        return self.kind in EventKind.COALESCABLE

    @property
    def wire_name(self) -> str:
        return EventKind.WIRE_NAMES.get(self.kind, self.kind)

    def body(self) -> Dict[str, Any]:
        return {}

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "event": self.wire_name,
            "kind": self.kind,
            "sessionId": self.session_id,
            "sequence": self.sequence,
            "timestamp": self.occurred_at.isoformat(),
        }
        payload.update(self.body())
        return payload


def _position_body(position: Optional[LatLon]) -> Dict[str, Any]:
    if position is None:
        return {"latitude": None, "longitude": None}
    return {"latitude": position[0], "longitude": position[1]}


@dataclass(slots=True)
class SessionStarted(PatrolEvent):
    kind: ClassVar[str] = EventKind.SESSION_STARTED

    guard_id: str = ""
    position: Optional[LatLon] = None
    checkpoint_count: int = 0

    def body(self) -> Dict[str, Any]:
        body = {"guardId": self.guard_id, "checkpointCount": self.checkpoint_count}
        body.update(_position_body(self.position))
        return body


@dataclass(slots=True)
class PositionUpdated(PatrolEvent):
    """Emitted for every ingested fix, accepted or not."""

    kind: ClassVar[str] = EventKind.POSITION_UPDATED

    position: Optional[LatLon] = None
    raw_fix: Optional[Fix] = None
    accepted: bool = False
    reason: str = ""
    display_only: bool = False
    heading_deg: Optional[float] = None
    velocity_mps: Optional[float] = None
    total_distance_m: float = 0.0
    trajectory_length: int = 0
    nearby: Optional[Dict[str, Any]] = None

    def body(self) -> Dict[str, Any]:
        body = _position_body(self.position)
        raw = None
        if self.raw_fix is not None:
            raw = {
                "latitude": self.raw_fix.latitude,
                "longitude": self.raw_fix.longitude,
                "accuracy": self.raw_fix.accuracy_m,
                "capturedAt": self.raw_fix.captured_at.isoformat(),
            }
        body.update(
            {
                "raw": raw,
                "accepted": self.accepted,
                "reason": self.reason,
                "displayOnly": self.display_only,
                "heading": self.heading_deg,
                "direction": cardinal_direction(self.heading_deg),
                "velocity": self.velocity_mps,
                "totalDistanceMeters": round(self.total_distance_m, 2),
                "trajectoryLength": self.trajectory_length,
                "nearbyCheckpoint": self.nearby,
            }
        )
        return body


@dataclass(slots=True)
class PositionTick(PatrolEvent):
    """Liveness re-send of the latest smoothed position."""

    kind: ClassVar[str] = EventKind.POSITION_TICK

    position: Optional[LatLon] = None

    def body(self) -> Dict[str, Any]:
        body = _position_body(self.position)
        body["tick"] = True
        return body


@dataclass(slots=True)
class CheckpointVisited(PatrolEvent):
    kind: ClassVar[str] = EventKind.CHECKPOINT_VISITED

    visit: Optional[CheckpointVisit] = None
    mandatory_visited: int = 0
    mandatory_total: int = 0

    def body(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "mandatoryVisited": self.mandatory_visited,
            "mandatoryTotal": self.mandatory_total,
        }
        if self.visit is not None:
            body.update(self.visit.to_record())
        return body


@dataclass(slots=True)
class SessionFinished(PatrolEvent):
    kind: ClassVar[str] = EventKind.SESSION_FINISHED

    summary: Optional[PatrolSummary] = None

    def body(self) -> Dict[str, Any]:
        if self.summary is None:
            return {}
        record = self.summary.to_record()
        # Observers get totals only; the full trajectory goes to persistence.
        record.pop("trajectory", None)
        return {"summary": record}


@dataclass(slots=True)
class SessionCancelled(PatrolEvent):
    kind: ClassVar[str] = EventKind.SESSION_CANCELLED

    reason: str = ""
    visit_count: int = 0

    def body(self) -> Dict[str, Any]:
        return {"reason": self.reason, "visitCount": self.visit_count}


EventCallback = Callable[[PatrolEvent], None]


@dataclass(slots=True)
class EventRecorder:
    """Callable event sink that keeps everything it receives."""

    events: list = field(default_factory=list)

    def __call__(self, event: PatrolEvent) -> None:
        self.events.append(event)

    def kinds(self) -> list:
        return [event.kind for event in self.events]

    def of_kind(self, kind: str) -> list:
        return [event for event in self.events if event.kind == kind]


__all__ = [
    "EventKind",
    "PatrolEvent",
    "SessionStarted",
    "PositionUpdated",
    "PositionTick",
    "CheckpointVisited",
    "SessionFinished",
    "SessionCancelled",
    "EventCallback",
    "EventRecorder",
]
