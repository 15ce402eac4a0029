"""Geodesy helpers: great-circle distance and compass angle arithmetic."""

from __future__ import annotations

import math
from typing import Sequence, Tuple

LatLon = Tuple[float, float]

_EARTH_RADIUS_M = 6_371_000.0
_CARDINALS = ("N", "NE", "E", "SE", "S", "SW", "W", "NW")


def haversine_m(first: LatLon, second: LatLon) -> float:
    """Return the great-circle distance in metres between two lat/lon pairs."""

    lat1, lon1 = first
    lat2, lon2 = second
    sin = math.sin
    cos = math.cos
    radians = math.radians
    atan2 = math.atan2
    sqrt = math.sqrt
    lat1_rad = radians(lat1)
    lat2_rad = radians(lat2)
    delta_lat = lat2_rad - lat1_rad
    delta_lon = radians(lon2 - lon1)
    sin_half_lat = sin(delta_lat / 2.0)
    sin_half_lon = sin(delta_lon / 2.0)
    a = sin_half_lat**2 + cos(lat1_rad) * cos(lat2_rad) * sin_half_lon**2
    c = 2.0 * atan2(sqrt(a), sqrt(1.0 - a))
    return _EARTH_RADIUS_M * c


def path_length_m(points: Sequence[LatLon]) -> float:
    """Sum of consecutive haversine distances along ``points``."""

    if len(points) < 2:
        return 0.0
    total = 0.0
    previous = points[0]
    for current in points[1:]:
        total += haversine_m(previous, current)
        previous = current
    return total


def normalize_angle(angle: float) -> float:
    """Wrap any angle in degrees into [0, 360)."""

    wrapped = angle % 360.0
    # -1e-15 % 360 rounds to 360.0.
    return 0.0 if wrapped >= 360.0 else wrapped


def shortest_delta(current: float, target: float) -> float:
    """Signed shortest rotation (degrees, in [-180, 180]) from current to target."""

    delta = normalize_angle(target) - normalize_angle(current)
    if delta > 180.0:
        delta -= 360.0
    elif delta < -180.0:
        delta += 360.0
    return delta


def cardinal_direction(angle: float | None) -> str:
    """Eight-point compass label for a heading; ``--`` when unknown."""

    if angle is None or not math.isfinite(angle):
        return "--"
    index = int(round(normalize_angle(angle) / 45.0)) % 8
    return _CARDINALS[index]


def is_valid_coordinate(latitude: float, longitude: float) -> bool:
    try:
        lat = float(latitude)
        lon = float(longitude)
    except (TypeError, ValueError):
        return False
    if not (math.isfinite(lat) and math.isfinite(lon)):
        return False
    return -90.0 <= lat <= 90.0 and -180.0 <= lon <= 180.0


__all__ = [
    "LatLon",
    "haversine_m",
    "path_length_m",
    "normalize_angle",
    "shortest_delta",
    "cardinal_direction",
    "is_valid_coordinate",
]
