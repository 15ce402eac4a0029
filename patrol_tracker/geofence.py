"""Checkpoint proximity checks and confirmation rules.

``evaluate`` answers "which unvisited checkpoint am I standing in?" for the
live display, while ``confirm`` is the explicit guard action that turns a
checkpoint into a ``CheckpointVisit``. Both apply the anti-fraud spacing rule:
two confirmations must be at least ``min_spacing_s`` apart.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import AbstractSet, Callable, Iterable, List, Optional, Sequence, Tuple

from .config import MIN_CHECKPOINT_SPACING_SECONDS
from .errors import (
    CheckpointAlreadyVisitedError,
    OutOfRangeError,
    TooSoonError,
    UnknownCheckpointError,
)
from .geo import LatLon, haversine_m
from .models import Checkpoint, CheckpointVisit, ensure_utc

CheckpointId = int | str
Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class GeofenceConfig:
    min_spacing_s: float = MIN_CHECKPOINT_SPACING_SECONDS


@dataclass(frozen=True, slots=True)
class CheckpointCandidate:
    checkpoint: Checkpoint
    distance_m: float
    remaining_wait_s: int = 0

    @property
    def too_soon(self) -> bool:
        return self.remaining_wait_s > 0

    def to_dict(self) -> dict:
        return {
            "checkpointId": self.checkpoint.id,
            "label": self.checkpoint.label,
            "distance": round(self.distance_m, 2),
            "radius": self.checkpoint.radius_m,
            "mandatory": self.checkpoint.mandatory,
            "remainingWaitSeconds": self.remaining_wait_s,
        }


def _sort_key(item: Tuple[Checkpoint, float]) -> tuple:
    checkpoint, distance = item
    # Ids may mix ints and strings; compare numerically first.
    cid = checkpoint.id
    if isinstance(cid, int):
        return (distance, 0, cid, "")
    return (distance, 1, 0, str(cid))


class GeofenceEngine:
    def __init__(
        self, config: GeofenceConfig | None = None, *, clock: Clock = utc_now
    ) -> None:
        self.config = config or GeofenceConfig()
        self._clock = clock

    def remaining_wait_s(
        self, last_visit_at: Optional[datetime], now: Optional[datetime] = None
    ) -> int:
        """Whole seconds left before another confirmation is allowed."""

        if last_visit_at is None:
            return 0
        current = ensure_utc(now) if now is not None else self._clock()
        elapsed = (current - ensure_utc(last_visit_at)).total_seconds()
        remaining = self.config.min_spacing_s - elapsed
        if remaining <= 0:
            return 0
        return int(math.ceil(remaining))

    def distances(
        self,
        position: LatLon,
        catalog: Iterable[Checkpoint],
        visited: AbstractSet[CheckpointId] = frozenset(),
    ) -> List[Tuple[Checkpoint, float]]:
        """Unvisited checkpoints with their distance, nearest first."""

        pairs = [
            (checkpoint, haversine_m(position, checkpoint.latlon))
            for checkpoint in catalog
            if checkpoint.id not in visited
        ]
        pairs.sort(key=_sort_key)
        return pairs

    def in_range(
        self,
        position: LatLon,
        catalog: Iterable[Checkpoint],
        visited: AbstractSet[CheckpointId] = frozenset(),
    ) -> List[Tuple[Checkpoint, float]]:
        return [
            (checkpoint, distance)
            for checkpoint, distance in self.distances(position, catalog, visited)
            if distance <= checkpoint.radius_m
        ]

    def nearest(
        self,
        position: LatLon,
        catalog: Iterable[Checkpoint],
        visited: AbstractSet[CheckpointId] = frozenset(),
    ) -> Optional[Tuple[Checkpoint, float]]:
        """Closest unvisited checkpoint regardless of its radius."""

        pairs = self.distances(position, catalog, visited)
        return pairs[0] if pairs else None

    def evaluate(
        self,
        position: LatLon,
        catalog: Sequence[Checkpoint],
        visited: AbstractSet[CheckpointId] = frozenset(),
        last_visit_at: Optional[datetime] = None,
        *,
        now: Optional[datetime] = None,
    ) -> Optional[CheckpointCandidate]:
        """Return the nearest unvisited checkpoint whose radius contains ``position``.

        Equidistant candidates resolve to the lowest checkpoint id. A candidate
        inside the spacing window is still returned, flagged ``too_soon`` with
        the remaining wait, so the caller can decide whether to surface it.
        """

        candidates = self.in_range(position, catalog, visited)
        if not candidates:
            return None
        checkpoint, distance = candidates[0]
        return CheckpointCandidate(
            checkpoint, distance, self.remaining_wait_s(last_visit_at, now)
        )

    def confirm(
        self,
        checkpoint_id: CheckpointId,
        position: LatLon,
        catalog: Sequence[Checkpoint],
        visited: AbstractSet[CheckpointId] = frozenset(),
        last_visit_at: Optional[datetime] = None,
        *,
        sequence_number: int = 1,
        captured_at: Optional[datetime] = None,
        now: Optional[datetime] = None,
        meters_since_previous: Optional[float] = None,
        description: str = "",
        accuracy_m: Optional[float] = None,
    ) -> CheckpointVisit:
        """Validate an explicit confirmation of ``checkpoint_id``.

        Raises:
            UnknownCheckpointError: id not in the catalog.
            CheckpointAlreadyVisitedError: already confirmed in this session.
            OutOfRangeError: ``position`` is outside the checkpoint radius.
            TooSoonError: the anti-fraud spacing has not elapsed.
        """

        checkpoint = next((cp for cp in catalog if cp.id == checkpoint_id), None)
        if checkpoint is None:
            raise UnknownCheckpointError(
                f"checkpoint {checkpoint_id} is not in the catalog",
                checkpoint_id=checkpoint_id,
            )
        if checkpoint_id in visited:
            raise CheckpointAlreadyVisitedError(
                f"checkpoint {checkpoint_id} was already visited",
                checkpoint_id=checkpoint_id,
            )
        distance = haversine_m(position, checkpoint.latlon)
        if distance > checkpoint.radius_m:
            raise OutOfRangeError(checkpoint_id, distance, checkpoint.radius_m)
        current = ensure_utc(now) if now is not None else self._clock()
        remaining = self.remaining_wait_s(last_visit_at, current)
        if remaining > 0:
            raise TooSoonError(checkpoint_id, remaining)

        seconds_since_previous = None
        if last_visit_at is not None:
            seconds_since_previous = (current - ensure_utc(last_visit_at)).total_seconds()
        return CheckpointVisit(
            checkpoint_id=checkpoint.id,
            distance_m=distance,
            captured_at=ensure_utc(captured_at) if captured_at else current,
            sequence_number=sequence_number,
            latitude=position[0],
            longitude=position[1],
            seconds_since_previous=seconds_since_previous,
            meters_since_previous=meters_since_previous,
            description=description,
            accuracy_m=accuracy_m,
            confirmed_at=current,
        )


__all__ = ["CheckpointCandidate", "GeofenceConfig", "GeofenceEngine", "utc_now"]
