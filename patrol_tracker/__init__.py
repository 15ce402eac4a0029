"""Guard patrol tracking engine."""

from .main import main
from .models import Checkpoint, CheckpointVisit, Fix, PatrolSummary, SessionState
from .errors import PatrolError, SessionNotActiveError, AlreadyActiveError
from .service import PatrolService
from .session import PatrolSession, TrackingConfig

__all__ = [
    "main",
    "Checkpoint",
    "CheckpointVisit",
    "Fix",
    "PatrolSummary",
    "SessionState",
    "PatrolError",
    "SessionNotActiveError",
    "AlreadyActiveError",
    "PatrolService",
    "PatrolSession",
    "TrackingConfig",
]
