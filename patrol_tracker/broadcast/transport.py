"""Transports carrying session events to remote observers."""

from __future__ import annotations

import logging
import threading
from typing import Any, Dict, List, Optional, Protocol, Tuple
from urllib.parse import quote

import requests
from requests import Session
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from ..config import (
    HTTP_POOL_CONNECTIONS,
    HTTP_POOL_MAXSIZE,
    RELAY_TIMEOUT_SECONDS,
    RELAY_TOKEN,
)
from ..errors import TransportError

_LOG = logging.getLogger(__name__)


class Transport(Protocol):
    """Room-based channel to observers. Implementations raise ``TransportError``."""

    def join(self, room: str) -> None:  # pragma: no cover - protocol
        ...

    def leave(self, room: str) -> None:  # pragma: no cover - protocol
        ...

    def send(self, room: str, payload: Dict[str, Any]) -> None:  # pragma: no cover
        ...


def _build_retry() -> Retry:
    # Only connection-level retries; the broadcaster owns the backoff policy.
    return Retry(
        total=2,
        backoff_factor=0.5,
        status_forcelist=[502, 503, 504],
        allowed_methods=["POST"],
    )


def create_relay_session(token: str | None = None) -> Session:
    session = requests.Session()
    adapter = HTTPAdapter(
        pool_connections=HTTP_POOL_CONNECTIONS,
        pool_maxsize=HTTP_POOL_MAXSIZE,
        max_retries=_build_retry(),
    )
    session.mount("https://", adapter)
    session.mount("http://", adapter)
    session.headers.update(
        {
            "Accept": "application/json",
            "Content-Type": "application/json",
        }
    )
    if token:
        session.headers["Authorization"] = f"Bearer {token}"
    return session


class HttpRelayTransport:
    """Publish room events to an HTTP relay.

    The relay exposes ``POST {base}/rooms/{room}/join``, ``.../leave`` and
    ``.../events`` and fans events out to connected observers.
    """

    def __init__(
        self,
        base_url: str,
        *,
        token: str | None = None,
        session: Session | None = None,
        timeout: float = RELAY_TIMEOUT_SECONDS,
    ) -> None:
        if not base_url:
            raise ValueError("base_url is required")
        self.base_url = base_url.rstrip("/")
        self._session = session or create_relay_session(token or RELAY_TOKEN)
        self._timeout = timeout

    def _url(self, room: str, action: str) -> str:
        return f"{self.base_url}/rooms/{quote(room, safe='')}/{action}"

    def _post(self, room: str, action: str, payload: Dict[str, Any] | None) -> None:
        url = self._url(room, action)
        try:
            response = self._session.post(url, json=payload or {}, timeout=self._timeout)
        except requests.RequestException as exc:
            raise TransportError(
                f"relay {action} failed for room {room}: {exc.__class__.__name__}",
                room=room,
                action=action,
            ) from exc
        if response.status_code >= 400:
            raise TransportError(
                f"relay {action} for room {room} returned {response.status_code}",
                room=room,
                action=action,
                status=response.status_code,
            )
        _LOG.debug("relay %s room=%s status=%s", action, room, response.status_code)

    def join(self, room: str) -> None:
        self._post(room, "join", None)

    def leave(self, room: str) -> None:
        self._post(room, "leave", None)

    def send(self, room: str, payload: Dict[str, Any]) -> None:
        self._post(room, "events", payload)

    def close(self) -> None:
        self._session.close()

    def __repr__(self) -> str:
        return f"HttpRelayTransport({self.base_url!r})"


class MemoryTransport:
    """Keeps every delivered payload in memory; handy for local replays."""

    def __init__(self, name: str = "memory") -> None:
        self.name = name
        self._lock = threading.Lock()
        self.rooms: List[str] = []
        self.sent: List[Tuple[str, Dict[str, Any]]] = []
        self.left: List[str] = []

    def join(self, room: str) -> None:
        with self._lock:
            self.rooms.append(room)

    def leave(self, room: str) -> None:
        with self._lock:
            self.left.append(room)
            if room in self.rooms:
                self.rooms.remove(room)

    def send(self, room: str, payload: Dict[str, Any]) -> None:
        with self._lock:
            self.sent.append((room, dict(payload)))

    def payloads(self, room: Optional[str] = None) -> List[Dict[str, Any]]:
        with self._lock:
            return [payload for r, payload in self.sent if room is None or r == room]

    def events(self, room: Optional[str] = None) -> List[str]:
        return [str(payload.get("kind")) for payload in self.payloads(room)]

    def __repr__(self) -> str:
        return f"MemoryTransport({self.name!r})"


__all__ = ["Transport", "HttpRelayTransport", "MemoryTransport", "create_relay_session"]
