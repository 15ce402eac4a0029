"""Sensor-side tracking components: validation, smoothing, trajectory, heading."""

from .fix_filter import FixFilter
from .heading import HeadingTracker, heading_from_magnetometer
from .smoother import PositionSmoother
from .trajectory import TrajectoryAccumulator
from .validator import PositionValidator, Reason, ValidationResult, ValidatorConfig

__all__ = [
    "FixFilter",
    "HeadingTracker",
    "heading_from_magnetometer",
    "PositionSmoother",
    "TrajectoryAccumulator",
    "PositionValidator",
    "Reason",
    "ValidationResult",
    "ValidatorConfig",
]
