"""Append-only patrol trajectory with its cumulative distance."""

from __future__ import annotations

import logging
from typing import List, Optional

from ..config import MAX_JUMP_METERS, MIN_RECORD_DISTANCE_METERS
from ..geo import LatLon, haversine_m, path_length_m
from ..models import Fix, TrajectoryPoint, ValidatedFix

_LOG = logging.getLogger(__name__)


class TrajectoryAccumulator:
    """Record validated fixes as trajectory points and sum their segments.

    A fix closer than ``min_record_distance_m`` to the last point only moves
    ``current_position``; this keeps a stationary guard's GPS drift out of the
    distance total. A fix more than ``max_jump_m`` from the previous validated
    position (the reference the validator measures jumps from) or going back
    in time is never recorded; the head itself may lag that position by up to
    ``min_record_distance_m``.
    """

    def __init__(
        self,
        min_record_distance_m: float = MIN_RECORD_DISTANCE_METERS,
        max_jump_m: float = MAX_JUMP_METERS,
    ) -> None:
        self.min_record_distance_m = min_record_distance_m
        self.max_jump_m = max_jump_m
        self._points: List[TrajectoryPoint] = []
        self._total_distance_m = 0.0
        self._current: Optional[LatLon] = None

    @property
    def points(self) -> List[TrajectoryPoint]:
        return list(self._points)

    @property
    def total_distance_m(self) -> float:
        return self._total_distance_m

    @property
    def current_position(self) -> Optional[LatLon]:
        return self._current

    @property
    def last_point(self) -> Optional[TrajectoryPoint]:
        return self._points[-1] if self._points else None

    def __len__(self) -> int:
        return len(self._points)

    def seed(self, fix: Fix) -> TrajectoryPoint:
        """Start the trajectory at ``fix``; only valid while empty."""

        if self._points:
            raise ValueError("trajectory already seeded")
        point = TrajectoryPoint(fix.latitude, fix.longitude, fix.captured_at)
        self._points.append(point)
        self._current = point.latlon
        return point

    def append(self, validated: ValidatedFix) -> bool:
        """Record ``validated`` when it moved far enough; return True if stored."""

        if validated.display_only:
            return False
        previous = self._current
        self._current = validated.latlon
        last = self.last_point
        if last is None:
            self.seed(validated.fix)
            return True
        if validated.captured_at <= last.captured_at:
            return False
        jump = haversine_m(previous or last.latlon, validated.latlon)
        if jump > self.max_jump_m:
            _LOG.warning(
                "Skipping trajectory jump of %.1fm (max %.1fm) at %s",
                jump,
                self.max_jump_m,
                validated.captured_at.isoformat(),
            )
            return False
        segment = haversine_m(last.latlon, validated.latlon)
        if segment < self.min_record_distance_m:
            return False
        self._points.append(
            TrajectoryPoint(
                validated.fix.latitude, validated.fix.longitude, validated.captured_at
            )
        )
        self._total_distance_m += segment
        return True

    def recompute_distance(self) -> float:
        return path_length_m([point.latlon for point in self._points])

    def reset(self) -> None:
        self._points.clear()
        self._total_distance_m = 0.0
        self._current = None


__all__ = ["TrajectoryAccumulator"]
