"""Persistence sinks for session records."""

from __future__ import annotations

import json
import logging
import threading
import uuid
from pathlib import Path
from typing import Any, Dict, List

from .config import PERSISTENCE_DIR, PERSISTENCE_OVERWRITE
from .errors import PersistenceError
from .models import CheckpointVisit, Fix, PatrolSummary
from .utils import to_jsonable

_LOG = logging.getLogger(__name__)


def new_session_id() -> str:
    return uuid.uuid4().hex


class NullPersistenceSink:
    """Accepts every call and stores nothing."""

    def start_session(self, guard_id: str, initial_fix: Fix) -> str:
        return new_session_id()

    def append_visit(self, session_id: str, visit: CheckpointVisit) -> None:
        return None

    def finish(self, session_id: str, summary: PatrolSummary) -> None:
        return None

    def cancel(
        self, session_id: str, reason: str, summary: PatrolSummary | None = None
    ) -> None:
        return None


class JsonFilePersistenceSink:
    """One JSON document per session under ``directory``.

    Records follow ``PatrolSummary.to_record``; visits are appended as they
    happen so an interrupted patrol still leaves its checkpoints on disk.
    Every write goes to a temporary file first and then replaces the record.
    """

    def __init__(
        self,
        directory: str | Path = PERSISTENCE_DIR,
        *,
        overwrite: bool = PERSISTENCE_OVERWRITE,
    ) -> None:
        self.directory = Path(directory)
        self.overwrite = overwrite
        self._lock = threading.Lock()

    def path_for(self, session_id: str) -> Path:
        return self.directory / f"{session_id}.json"

    def _read(self, session_id: str) -> Dict[str, Any]:
        path = self.path_for(session_id)
        try:
            with path.open("r", encoding="utf-8") as handle:
                return json.load(handle)
        except FileNotFoundError as exc:
            raise PersistenceError(
                f"no record for session {session_id}", session_id=session_id
            ) from exc
        except (OSError, json.JSONDecodeError) as exc:
            raise PersistenceError(
                f"failed reading {path}: {exc}", session_id=session_id
            ) from exc

    def _write(self, session_id: str, record: Dict[str, Any]) -> None:
        path = self.path_for(session_id)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            temp_path = path.with_suffix(".tmp")
            with temp_path.open("w", encoding="utf-8") as handle:
                json.dump(to_jsonable(record), handle, ensure_ascii=True, indent=2)
            temp_path.replace(path)
        except OSError as exc:
            raise PersistenceError(
                f"failed writing {path}: {exc}", session_id=session_id
            ) from exc

    def load(self, session_id: str) -> Dict[str, Any]:
        with self._lock:
            return self._read(session_id)

    def start_session(self, guard_id: str, initial_fix: Fix) -> str:
        session_id = new_session_id()
        record = {
            "sessionId": session_id,
            "guardId": guard_id,
            "status": "in_progress",
            "startedAt": initial_fix.captured_at.isoformat(),
            "finishedAt": None,
            "totalDistanceMeters": 0.0,
            "trajectory": [
                {
                    "lat": initial_fix.latitude,
                    "lng": initial_fix.longitude,
                    "t": initial_fix.captured_at.isoformat(),
                }
            ],
            "visits": [],
        }
        with self._lock:
            self._write(session_id, record)
        _LOG.info("Session record %s created for guard %s", session_id, guard_id)
        return session_id

    def append_visit(self, session_id: str, visit: CheckpointVisit) -> None:
        with self._lock:
            record = self._read(session_id)
            visits: List[Dict[str, Any]] = record.setdefault("visits", [])
            if any(item.get("checkpointId") == visit.checkpoint_id for item in visits):
                return
            visits.append(visit.to_record())
            self._write(session_id, record)

    def _close(self, session_id: str, record: Dict[str, Any]) -> None:
        with self._lock:
            path = self.path_for(session_id)
            if path.exists() and not self.overwrite:
                existing = self._read(session_id)
                if existing.get("status") in {"finished", "cancelled"}:
                    raise PersistenceError(
                        f"session {session_id} already closed", session_id=session_id
                    )
            self._write(session_id, record)

    def finish(self, session_id: str, summary: PatrolSummary) -> None:
        self._close(session_id, summary.to_record())
        _LOG.info("Session record %s finished", session_id)

    def cancel(
        self, session_id: str, reason: str, summary: PatrolSummary | None = None
    ) -> None:
        if summary is not None:
            record = summary.to_record()
        else:
            with self._lock:
                record = self._read(session_id)
            record["status"] = "cancelled"
        record["cancelReason"] = reason
        self._close(session_id, record)
        _LOG.info("Session record %s cancelled", session_id)


__all__ = [
    "JsonFilePersistenceSink",
    "NullPersistenceSink",
    "new_session_id",
]
