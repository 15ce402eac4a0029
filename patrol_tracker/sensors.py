"""File-backed sensor source for replaying recorded patrols.

Two formats are understood:

* CSV with a header row (``latitude,longitude,accuracy,timestamp[,heading]``);
* JSON lines, one object per sample.

Column names are matched loosely (``lat``/``lng``/``lon``, ``accuracy_m``,
``captured_at``/``time``/``t``). A row carrying only a heading becomes a
``HeadingSample``; a row with coordinates becomes a ``Fix`` and, when it also
carries a heading, is followed by a ``HeadingSample`` for the same instant.
Raw magnetometer columns (``mag_x``, ``mag_y``) are converted to a heading
when no heading column is present.
"""

from __future__ import annotations

import csv
import json
import logging
from pathlib import Path
from typing import Any, Dict, Iterator, List, Mapping, Optional

from .collaborators import SensorSample
from .models import Fix, HeadingSample
from .tracking import heading_from_magnetometer
from .utils import parse_timestamp

_LOG = logging.getLogger(__name__)

_LAT_KEYS = ("latitude", "lat")
_LON_KEYS = ("longitude", "lng", "lon")
_ACCURACY_KEYS = ("accuracy_m", "accuracy", "precisao")
_TIME_KEYS = ("captured_at", "timestamp", "time", "t")
_HEADING_KEYS = ("heading_deg", "heading", "bearing")


def _first(row: Mapping[str, Any], keys: tuple) -> Any:
    for key in keys:
        value = row.get(key)
        if value is not None and value != "":
            return value
    return None


def _optional_float(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    return float(value)


def samples_from_row(row: Mapping[str, Any]) -> List[SensorSample]:
    """Convert one raw record into zero or more sensor samples."""

    normalised: Dict[str, Any] = {str(key).strip().lower(): value for key, value in row.items()}
    raw_time = _first(normalised, _TIME_KEYS)
    if raw_time is None:
        raise ValueError("sample has no timestamp")
    captured_at = parse_timestamp(raw_time)
    samples: List[SensorSample] = []
    lat = _first(normalised, _LAT_KEYS)
    lon = _first(normalised, _LON_KEYS)
    if lat is not None and lon is not None:
        samples.append(
            Fix(
                latitude=float(lat),
                longitude=float(lon),
                captured_at=captured_at,
                accuracy_m=_optional_float(_first(normalised, _ACCURACY_KEYS)),
                altitude_m=_optional_float(normalised.get("altitude")),
                speed_mps=_optional_float(normalised.get("speed")),
            )
        )
    heading = _optional_float(_first(normalised, _HEADING_KEYS))
    if heading is None:
        heading = heading_from_magnetometer(
            _optional_float(normalised.get("mag_x")),
            _optional_float(normalised.get("mag_y")),
        )
    if heading is not None:
        samples.append(HeadingSample(heading, captured_at))
    return samples


class FileSensorSource:
    """Iterate the samples recorded in a CSV or JSON lines file.

    Malformed rows are skipped with a warning; ``skipped`` counts them.
    """

    def __init__(self, path: str | Path, *, fmt: str | None = None) -> None:
        self.path = Path(path)
        self.fmt = (fmt or self._guess_format()).lower()
        if self.fmt not in {"csv", "jsonl"}:
            raise ValueError(f"unsupported sensor log format: {self.fmt}")
        self.skipped = 0

    def _guess_format(self) -> str:
        suffix = self.path.suffix.lower()
        if suffix in {".jsonl", ".ndjson", ".json"}:
            return "jsonl"
        return "csv"

    def _rows(self) -> Iterator[tuple]:
        with self.path.open("r", encoding="utf-8", newline="") as handle:
            if self.fmt == "csv":
                reader = csv.DictReader(handle)
                for line_no, row in enumerate(reader, start=2):
                    yield line_no, row
                return
            for line_no, line in enumerate(handle, start=1):
                text = line.strip()
                if not text or text.startswith("#"):
                    continue
                try:
                    payload = json.loads(text)
                except json.JSONDecodeError as exc:
                    yield line_no, exc
                    continue
                yield line_no, payload

    def __iter__(self) -> Iterator[SensorSample]:
        self.skipped = 0
        for line_no, row in self._rows():
            if not isinstance(row, Mapping):
                self.skipped += 1
                _LOG.warning("Skipping %s line %d: %s", self.path, line_no, row)
                continue
            try:
                samples = samples_from_row(row)
            except (TypeError, ValueError) as exc:
                self.skipped += 1
                _LOG.warning("Skipping %s line %d: %s", self.path, line_no, exc)
                continue
            yield from samples


__all__ = ["FileSensorSource", "samples_from_row"]
