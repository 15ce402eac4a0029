"""Stateful fix filter owned by one patrol session."""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Deque, Dict, List, Optional

from ..config import FILTER_LOG_SIZE, FORCE_ACCEPT_AFTER_REJECTIONS
from ..models import Fix, ValidatedFix
from .validator import PositionValidator, Reason, ValidationResult

_LOG = logging.getLogger(__name__)


@dataclass(slots=True)
class FilterDecision:
    captured_at: datetime
    accepted: bool
    reason: str
    details: Dict[str, Any]


class FixFilter:
    """Track the last accepted fix and velocity across validator calls.

    After ``force_accept_after`` consecutive rejections the next rejected
    candidate comes back as a display-only ``ValidatedFix`` so a frozen marker
    can move again. Display-only fixes never become the reference for later
    validation and never reach the trajectory.
    """

    def __init__(
        self,
        validator: PositionValidator | None = None,
        *,
        force_accept_after: int = FORCE_ACCEPT_AFTER_REJECTIONS,
        log_size: int = FILTER_LOG_SIZE,
    ) -> None:
        self.validator = validator or PositionValidator()
        self.force_accept_after = force_accept_after
        self._last_accepted: Optional[ValidatedFix] = None
        self._last_velocity = 0.0
        self._streak = 0
        self._accepted = 0
        self._rejected = 0
        self._forced = 0
        self._log: Deque[FilterDecision] = deque(maxlen=max(1, log_size))

    @property
    def last_accepted(self) -> Optional[ValidatedFix]:
        return self._last_accepted

    @property
    def last_velocity_mps(self) -> float:
        return self._last_velocity

    @property
    def rejection_streak(self) -> int:
        return self._streak

    def prime(self, validated: ValidatedFix) -> None:
        """Use ``validated`` as the reference fix (session seed or resume)."""

        self._last_accepted = validated
        self._last_velocity = validated.velocity_mps
        self._streak = 0

    def process(self, fix: Fix, *, now: datetime | None = None) -> ValidationResult:
        result = self.validator.validate(
            fix, self._last_accepted, self._last_velocity, now=now
        )
        self._log.append(
            FilterDecision(
                getattr(fix, "captured_at", None) or now,
                result.accepted,
                result.reason,
                dict(result.details),
            )
        )
        if result.accepted and result.validated is not None:
            self._last_accepted = result.validated
            self._last_velocity = result.validated.velocity_mps
            self._accepted += 1
            self._streak = 0
            return result

        self._rejected += 1
        self._streak += 1
        if result.is_anomaly:
            _LOG.warning(
                "Anomalous fix rejected reason=%s at=%s details=%s",
                result.reason,
                fix.captured_at.isoformat(),
                result.details,
            )
        else:
            _LOG.debug("Fix rejected reason=%s details=%s", result.reason, result.details)

        if (
            self.force_accept_after > 0
            and self._streak >= self.force_accept_after
            and result.reason != Reason.INVALID_COORDINATES
        ):
            _LOG.warning(
                "Force-accepting fix for display after %d consecutive rejections",
                self._streak,
            )
            self._streak = 0
            self._forced += 1
            forced = ValidatedFix(
                fix,
                now or fix.captured_at,
                float(result.details.get("velocity_mps", 0.0)),
                Reason.FORCED_DISPLAY_ONLY,
                display_only=True,
            )
            details = dict(result.details)
            details["rejected_reason"] = result.reason
            return ValidationResult(False, Reason.FORCED_DISPLAY_ONLY, forced, details)
        return result

    def stats(self) -> Dict[str, float | int]:
        total = self._accepted + self._rejected
        return {
            "accepted": self._accepted,
            "rejected": self._rejected,
            "forced": self._forced,
            "total": total,
            "acceptance_rate": (self._accepted / total * 100.0) if total else 0.0,
            "streak": self._streak,
        }

    def recent(self, count: int = 10) -> List[FilterDecision]:
        if count <= 0:
            return []
        return list(self._log)[-count:]

    def reset(self) -> None:
        self._last_accepted = None
        self._last_velocity = 0.0
        self._streak = 0
        self._accepted = 0
        self._rejected = 0
        self._forced = 0
        self._log.clear()


__all__ = ["FixFilter", "FilterDecision"]
