"""Collaborator interfaces consumed by the engine and the catalogs it ships with."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from threading import RLock
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Protocol, Sequence

from cachetools import TTLCache

from .config import CATALOG_CACHE_SIZE, CATALOG_CACHE_TTL_SECONDS
from .errors import CatalogError
from .models import Checkpoint, CheckpointVisit, Fix, HeadingSample, PatrolSummary

_LOG = logging.getLogger(__name__)

SensorSample = Fix | HeadingSample


class SensorSource(Protocol):
    """Stream of raw fixes and compass samples for one device."""

    def __iter__(self) -> Iterator[SensorSample]:  # pragma: no cover - protocol
        ...


class CheckpointCatalog(Protocol):
    def load(self, area_id: Optional[str]) -> List[Checkpoint]:  # pragma: no cover
        ...


class PersistenceSink(Protocol):
    """Durable record of sessions; called at each session transition."""

    def start_session(self, guard_id: str, initial_fix: Fix) -> str:  # pragma: no cover
        ...

    def append_visit(
        self, session_id: str, visit: CheckpointVisit
    ) -> None:  # pragma: no cover
        ...

    def finish(self, session_id: str, summary: PatrolSummary) -> None:  # pragma: no cover
        ...

    def cancel(
        self, session_id: str, reason: str, summary: PatrolSummary | None = None
    ) -> None:  # pragma: no cover
        ...


def _coerce_bool(value: Any, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "sim", "on"}
    return bool(value)


def _coerce_id(value: Any) -> int | str:
    if isinstance(value, bool):
        return str(value)
    if isinstance(value, int):
        return value
    text = str(value).strip()
    if text.isdigit():
        return int(text)
    return text


def checkpoint_from_mapping(row: Mapping[str, Any]) -> Checkpoint:
    """Build a ``Checkpoint`` from a catalog row.

    Accepts the snake_case field names as well as the short ``lat``/``lng``
    and ``raio``/``obrigatorio`` aliases used by exported catalogs.
    """

    try:
        raw_id = row["id"]
        latitude = float(row.get("latitude", row.get("lat")))
        longitude = float(row.get("longitude", row.get("lng", row.get("lon"))))
    except (KeyError, TypeError, ValueError) as exc:
        raise CatalogError(f"invalid checkpoint row: {row!r}", row=dict(row)) from exc
    radius = row.get("radius_m", row.get("radius", row.get("raio")))
    return Checkpoint(
        id=_coerce_id(raw_id),
        latitude=latitude,
        longitude=longitude,
        radius_m=float(radius) if radius is not None else None,
        mandatory=_coerce_bool(row.get("mandatory", row.get("obrigatorio")), False),
        label=str(row.get("label", row.get("nome", row.get("name", ""))) or ""),
        active=_coerce_bool(row.get("active", row.get("ativo")), True),
    )


def _active_only(checkpoints: Iterable[Checkpoint]) -> List[Checkpoint]:
    return [checkpoint for checkpoint in checkpoints if checkpoint.active]


class StaticCatalog:
    """In-memory catalog, optionally partitioned by area id."""

    def __init__(
        self,
        checkpoints: Sequence[Checkpoint] = (),
        *,
        areas: Mapping[str, Sequence[Checkpoint]] | None = None,
    ) -> None:
        self._default = list(checkpoints)
        self._areas: Dict[str, List[Checkpoint]] = {
            str(key): list(value) for key, value in (areas or {}).items()
        }

    def load(self, area_id: Optional[str] = None) -> List[Checkpoint]:
        if area_id is not None and str(area_id) in self._areas:
            return _active_only(self._areas[str(area_id)])
        return _active_only(self._default)


class JsonFileCatalog:
    """Catalog backed by a JSON document.

    The document is either a list of checkpoint rows or a mapping of area id
    to such lists. Inactive rows are dropped and radii clamped on load.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def _read(self) -> Any:
        try:
            with self.path.open("r", encoding="utf-8") as handle:
                return json.load(handle)
        except FileNotFoundError as exc:
            raise CatalogError(f"catalog file not found: {self.path}") from exc
        except (OSError, json.JSONDecodeError) as exc:
            raise CatalogError(f"failed reading catalog {self.path}: {exc}") from exc

    def load(self, area_id: Optional[str] = None) -> List[Checkpoint]:
        document = self._read()
        if isinstance(document, Mapping):
            if "checkpoints" in document:
                rows = document["checkpoints"]
            elif area_id is not None and str(area_id) in document:
                rows = document[str(area_id)]
            else:
                raise CatalogError(
                    f"area {area_id!r} not found in catalog {self.path}", area_id=area_id
                )
        else:
            rows = document
        if not isinstance(rows, list):
            raise CatalogError(f"catalog {self.path} does not contain a list")
        checkpoints = _active_only(checkpoint_from_mapping(row) for row in rows)
        _LOG.debug(
            "Loaded %d active checkpoints from %s (area=%s)",
            len(checkpoints),
            self.path,
            area_id,
        )
        return checkpoints


class CachingCatalog:
    """Share catalog loads across sessions for ``ttl`` seconds."""

    def __init__(
        self,
        inner: CheckpointCatalog,
        *,
        maxsize: int = CATALOG_CACHE_SIZE,
        ttl: float = CATALOG_CACHE_TTL_SECONDS,
    ) -> None:
        self._log = logging.getLogger(self.__class__.__name__)
        self._inner = inner
        self._cache: TTLCache[str, tuple] = TTLCache(maxsize=max(1, maxsize), ttl=ttl)
        self._lock = RLock()

    def load(self, area_id: Optional[str] = None) -> List[Checkpoint]:
        key = "" if area_id is None else str(area_id)
        with self._lock:
            cached = self._cache.get(key)
        if cached is not None:
            return list(cached)
        checkpoints = tuple(self._inner.load(area_id))
        with self._lock:
            self._cache[key] = checkpoints
        self._log.debug("Cached %d checkpoints for area=%s", len(checkpoints), key or "-")
        return list(checkpoints)

    def invalidate(self, area_id: Optional[str] = None) -> None:
        with self._lock:
            if area_id is None:
                self._cache.clear()
            else:
                self._cache.pop(str(area_id), None)


__all__ = [
    "SensorSample",
    "SensorSource",
    "CheckpointCatalog",
    "PersistenceSink",
    "checkpoint_from_mapping",
    "StaticCatalog",
    "JsonFileCatalog",
    "CachingCatalog",
]
