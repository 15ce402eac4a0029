"""General utility helpers shared across modules."""

from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any


def format_duration(seconds: float) -> str:
    """Format seconds into ``Xh Ymin``, ``Ymin Zs`` or ``Zs``."""

    total = max(0, int(seconds))
    hours, rest = divmod(total, 3600)
    mins, sec = divmod(rest, 60)
    if hours:
        return f"{hours}h {mins}min"
    if mins:
        return f"{mins}min {sec}s"
    return f"{sec}s"


def format_distance(meters: float | None) -> str:
    if meters is None or meters != meters:
        return "--"
    if meters < 1000:
        return f"{round(meters)}m"
    return f"{meters / 1000:.1f}km"


def format_speed(mps: float) -> str:
    return f"{mps * 3.6:.1f} km/h"


def _normalise_value(value: Any) -> Any:
    """Convert objects to JSON-friendly representations."""

    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="ignore")
    if isinstance(value, (set, frozenset)):
        return sorted(_normalise_value(item) for item in value)
    if isinstance(value, (list, tuple)):
        return [_normalise_value(item) for item in value]
    if isinstance(value, dict):
        return {str(key): _normalise_value(val) for key, val in value.items()}
    return value


def to_jsonable(value: Any) -> Any:
    """Return ``value`` with datetimes, decimals and sets made JSON-friendly."""

    return _normalise_value(value)


def parse_timestamp(value: Any) -> datetime:
    """Parse ISO-8601 strings or epoch numbers (seconds or milliseconds) as UTC."""

    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        number = float(value)
        # Values beyond ~2286 in seconds are epoch milliseconds.
        if abs(number) > 1e10:
            number /= 1000.0
        return datetime.fromtimestamp(number, tz=timezone.utc)
    text = str(value).strip()
    if not text:
        raise ValueError("empty timestamp")
    try:
        number = float(text)
    except ValueError:
        number = None
    if number is not None:
        return parse_timestamp(number)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
