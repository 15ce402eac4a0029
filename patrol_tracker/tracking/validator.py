"""Per-fix acceptance rules (precision, interval, teleport, acceleration)."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

from ..config import (
    MAX_ACCELERATION_MS2,
    MAX_EXTREME_VELOCITY_MPS,
    MAX_JUMP_METERS,
    MAX_PRECISION_METERS,
    MIN_INTERVAL_MS,
)
from ..geo import haversine_m, is_valid_coordinate
from ..models import Fix, ValidatedFix


class Reason:
    """Reason codes reported for every validation decision."""

    FIRST_POINT = "FIRST_POINT"
    OK = "OK"
    FORCED_DISPLAY_ONLY = "FORCED_DISPLAY_ONLY"
    INVALID_COORDINATES = "INVALID_COORDINATES"
    PRECISION_TOO_LOW = "PRECISION_TOO_LOW"
    INTERVAL_TOO_SHORT = "INTERVAL_TOO_SHORT"
    TELEPORT_DISTANCE = "TELEPORT_DISTANCE"
    TELEPORT_VELOCITY = "TELEPORT_VELOCITY"
    IMPOSSIBLE_ACCELERATION = "IMPOSSIBLE_ACCELERATION"

    # Low-quality input, dropped quietly.
    INPUT = frozenset({INVALID_COORDINATES, PRECISION_TOO_LOW, INTERVAL_TOO_SHORT})
    # Physically implausible movement, kept for anti-fraud review.
    ANOMALY = frozenset({TELEPORT_DISTANCE, TELEPORT_VELOCITY, IMPOSSIBLE_ACCELERATION})


@dataclass(slots=True)
class ValidatorConfig:
    max_precision_m: float = MAX_PRECISION_METERS
    min_interval_ms: float = MIN_INTERVAL_MS
    max_jump_m: float = MAX_JUMP_METERS
    max_extreme_velocity_mps: float = MAX_EXTREME_VELOCITY_MPS
    max_acceleration_ms2: float = MAX_ACCELERATION_MS2


@dataclass(slots=True)
class ValidationResult:
    accepted: bool
    reason: str
    validated: Optional[ValidatedFix] = None
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def rejected(self) -> bool:
        return not self.accepted

    @property
    def is_anomaly(self) -> bool:
        return self.reason in Reason.ANOMALY


class PositionValidator:
    """Accept or reject a raw fix against the last accepted one.

    Rules run in order and the first failure wins:

    1. latitude/longitude must be finite and in range;
    2. accuracy (999 m when unknown) must not exceed ``max_precision_m``;
    3. with no previous fix the candidate is accepted as ``FIRST_POINT``;
    4. the interval to the previous fix must be at least ``min_interval_ms``;
    5. displacement must not exceed ``max_jump_m``;
    6. implied speed must not exceed ``max_extreme_velocity_mps``;
    7. the change of speed per second must not exceed ``max_acceleration_ms2``.

    The validator holds no state; callers own the previous fix and velocity.
    """

    def __init__(self, config: ValidatorConfig | None = None) -> None:
        self.config = config or ValidatorConfig()

    def validate(
        self,
        candidate: Fix,
        last_accepted: ValidatedFix | None,
        last_velocity_mps: float = 0.0,
        *,
        now: datetime | None = None,
    ) -> ValidationResult:
        cfg = self.config
        details: Dict[str, Any] = {}

        if candidate is None or not is_valid_coordinate(
            candidate.latitude, candidate.longitude
        ):
            return ValidationResult(False, Reason.INVALID_COORDINATES, details=details)

        accuracy = candidate.effective_accuracy_m
        details["accuracy_m"] = accuracy
        if accuracy > cfg.max_precision_m:
            return ValidationResult(False, Reason.PRECISION_TOO_LOW, details=details)

        accepted_at = now or candidate.captured_at
        if last_accepted is None:
            details["velocity_mps"] = 0.0
            return ValidationResult(
                True,
                Reason.FIRST_POINT,
                ValidatedFix(candidate, accepted_at, 0.0, Reason.FIRST_POINT),
                details,
            )

        distance = haversine_m(last_accepted.latlon, candidate.latlon)
        interval_ms = (
            candidate.captured_at - last_accepted.captured_at
        ).total_seconds() * 1000.0
        details["distance_m"] = distance
        details["interval_ms"] = interval_ms

        if interval_ms < cfg.min_interval_ms:
            return ValidationResult(False, Reason.INTERVAL_TOO_SHORT, details=details)

        if distance > cfg.max_jump_m:
            return ValidationResult(False, Reason.TELEPORT_DISTANCE, details=details)

        interval_s = interval_ms / 1000.0
        velocity = distance / interval_s if interval_s > 0 else 0.0
        details["velocity_mps"] = velocity
        details["velocity_kmh"] = velocity * 3.6
        if velocity > cfg.max_extreme_velocity_mps:
            return ValidationResult(False, Reason.TELEPORT_VELOCITY, details=details)

        if interval_s > 0:
            acceleration = abs(velocity - last_velocity_mps) / interval_s
            details["acceleration_ms2"] = acceleration
            if acceleration > cfg.max_acceleration_ms2:
                return ValidationResult(
                    False, Reason.IMPOSSIBLE_ACCELERATION, details=details
                )

        return ValidationResult(
            True,
            Reason.OK,
            ValidatedFix(candidate, accepted_at, velocity, Reason.OK),
            details,
        )


__all__ = ["PositionValidator", "Reason", "ValidationResult", "ValidatorConfig"]
