"""Compass heading smoothing along the shortest arc."""

from __future__ import annotations

import math
from typing import Optional

from ..config import HEADING_SMOOTHING_FACTOR
from ..geo import cardinal_direction, normalize_angle, shortest_delta

# Magnetometer readings weaker than this on both axes carry no direction.
_MIN_FIELD_COMPONENT = 0.001


def heading_from_magnetometer(
    x: float | None,
    y: float | None,
    *,
    declination_deg: float = 0.0,
    axis_offset_deg: float = 0.0,
) -> Optional[float]:
    """Convert a magnetometer (x, y) reading into a heading in [0, 360).

    ``axis_offset_deg`` compensates devices whose sensor axes are rotated
    relative to the screen (Android handsets report +90). Returns None for
    missing or near-zero readings so callers keep the previous heading.
    """

    if x is None or y is None:
        return None
    if abs(x) < _MIN_FIELD_COMPONENT and abs(y) < _MIN_FIELD_COMPONENT:
        return None
    angle = math.degrees(math.atan2(y, x))
    return normalize_angle(angle + axis_offset_deg + declination_deg)


class HeadingTracker:
    """Exponential smoothing of a heading that wraps through 0/360."""

    def __init__(self, smoothing_factor: float = HEADING_SMOOTHING_FACTOR) -> None:
        if not 0.0 < smoothing_factor <= 1.0:
            raise ValueError("smoothing_factor must be in (0, 1]")
        self.smoothing_factor = smoothing_factor
        self._current: Optional[float] = None

    @property
    def current(self) -> Optional[float]:
        return self._current

    @property
    def cardinal(self) -> str:
        return cardinal_direction(self._current)

    def smooth(self, heading_deg: float) -> Optional[float]:
        if heading_deg is None or not math.isfinite(heading_deg):
            return self._current
        target = normalize_angle(heading_deg)
        if self._current is None:
            self._current = target
            return self._current
        delta = shortest_delta(self._current, target)
        self._current = normalize_angle(self._current + delta * self.smoothing_factor)
        return self._current

    def reset(self) -> None:
        self._current = None


__all__ = ["HeadingTracker", "heading_from_magnetometer"]
