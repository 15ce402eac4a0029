"""Central error types used across the engine.

Every error carries a stable ``code`` so presentation layers can localise the
message; ``to_dict`` exposes the structured detail (distance, radius,
remaining seconds) alongside it.
"""

from __future__ import annotations

from typing import Any, Dict


class PatrolError(RuntimeError):
    """Base error for the patrol engine."""

    code = "PATROL_ERROR"

    def __init__(self, message: str = "", **detail: Any) -> None:
        super().__init__(message or self.code)
        self.detail: Dict[str, Any] = detail

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": str(self), **self.detail}


class InvalidFixError(PatrolError):
    """Raised when a fix that must be usable (e.g. a session seed) is not."""

    code = "INVALID_FIX"


class SessionStateError(PatrolError):
    """Base error for operations not allowed in the current session state."""


class AlreadyActiveError(SessionStateError):
    """Raised when a guard already has a patrol in progress."""

    code = "ALREADY_ACTIVE"


class SessionNotActiveError(SessionStateError):
    """Raised when mutating a session that is finished, cancelled or not started."""

    code = "SESSION_NOT_ACTIVE"


class SessionNotFoundError(PatrolError):
    """Raised when a session id is unknown to the service."""

    code = "SESSION_NOT_FOUND"


class GeofenceError(PatrolError):
    """Base error for checkpoint confirmation failures."""


class CheckpointAlreadyVisitedError(GeofenceError):
    """Raised when the checkpoint was already confirmed in this session."""

    code = "CHECKPOINT_ALREADY_VISITED"


class OutOfRangeError(GeofenceError):
    """Raised when the guard is outside the checkpoint radius."""

    code = "OUT_OF_RANGE"

    def __init__(self, checkpoint_id: Any, distance_m: float, radius_m: float) -> None:
        super().__init__(
            f"checkpoint {checkpoint_id} is {distance_m:.1f}m away (radius {radius_m:.0f}m)",
            checkpoint_id=checkpoint_id,
            distance_m=round(distance_m, 2),
            radius_m=radius_m,
        )
        self.distance_m = distance_m
        self.radius_m = radius_m


class TooSoonError(GeofenceError):
    """Raised when checkpoints are confirmed faster than the anti-fraud spacing."""

    code = "TOO_SOON"

    def __init__(self, checkpoint_id: Any, remaining_seconds: int) -> None:
        super().__init__(
            f"wait {remaining_seconds}s before confirming checkpoint {checkpoint_id}",
            checkpoint_id=checkpoint_id,
            remaining_seconds=remaining_seconds,
        )
        self.remaining_seconds = remaining_seconds


class UnknownCheckpointError(GeofenceError):
    """Raised when the checkpoint id is not part of the session catalog."""

    code = "UNKNOWN_CHECKPOINT"


class CollaboratorError(PatrolError):
    """Base error for catalog, persistence and transport failures."""

    code = "COLLABORATOR_FAILURE"


class CatalogError(CollaboratorError):
    """Raised when the checkpoint catalog cannot be loaded."""

    code = "CATALOG_FAILURE"


class PersistenceError(CollaboratorError):
    """Raised when a persistence sink call fails."""

    code = "PERSISTENCE_FAILURE"


class TransportError(CollaboratorError):
    """Raised when a broadcast transport cannot deliver."""

    code = "TRANSPORT_FAILURE"


__all__ = [
    "PatrolError",
    "InvalidFixError",
    "SessionStateError",
    "AlreadyActiveError",
    "SessionNotActiveError",
    "SessionNotFoundError",
    "GeofenceError",
    "CheckpointAlreadyVisitedError",
    "OutOfRangeError",
    "TooSoonError",
    "UnknownCheckpointError",
    "CollaboratorError",
    "CatalogError",
    "PersistenceError",
    "TransportError",
]
