"""Weighted moving average of recent fixes for the displayed position."""

from __future__ import annotations

from collections import deque
from typing import Deque, List, Optional

from ..config import SMOOTHING_MIN_POINTS, SMOOTHING_WINDOW_SIZE
from ..geo import LatLon
from ..models import Fix


def linear_weights(count: int) -> List[float]:
    """Weights 1..count normalised to sum to one (last entry heaviest)."""

    if count <= 0:
        return []
    total = count * (count + 1) / 2.0
    return [index / total for index in range(1, count + 1)]


class PositionSmoother:
    """Bounded window of accepted fixes averaged with linear recency weights.

    Only feeds what is shown or broadcast; the trajectory and the distance
    total never read from it.
    """

    def __init__(
        self,
        window_size: int = SMOOTHING_WINDOW_SIZE,
        min_points: int = SMOOTHING_MIN_POINTS,
    ) -> None:
        if window_size < 1:
            raise ValueError("window_size must be >= 1")
        self.window_size = window_size
        self.min_points = max(1, min_points)
        self._fixes: Deque[Fix] = deque(maxlen=window_size)

    def __len__(self) -> int:
        return len(self._fixes)

    def add(self, fix: Fix) -> Optional[LatLon]:
        self._fixes.append(fix)
        return self.position()

    def position(self) -> Optional[LatLon]:
        count = len(self._fixes)
        if count == 0:
            return None
        if count < self.min_points:
            lat = sum(f.latitude for f in self._fixes) / count
            lon = sum(f.longitude for f in self._fixes) / count
            return (lat, lon)
        lat = lon = 0.0
        for fix, weight in zip(self._fixes, linear_weights(count)):
            lat += fix.latitude * weight
            lon += fix.longitude * weight
        return (lat, lon)

    def latest(self) -> Optional[Fix]:
        return self._fixes[-1] if self._fixes else None

    def reset(self) -> None:
        self._fixes.clear()


__all__ = ["PositionSmoother", "linear_weights"]
