"""Single-writer worker thread for one patrol session."""

from __future__ import annotations

import logging
import queue
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, List, Optional, TypeVar

from .broadcast.backoff import BackoffPolicy
from .broadcast.broadcaster import Broadcaster
from .collaborators import PersistenceSink
from .config import BROADCAST_DRAIN_TIMEOUT_SECONDS
from .errors import SessionNotActiveError
from .events import (
    CheckpointVisited,
    EventCallback,
    PatrolEvent,
    SessionCancelled,
    SessionFinished,
)
from .session import PatrolSession

T = TypeVar("T")
Command = Callable[[PatrolSession], T]
FailureHook = Callable[[str, Optional[str], Exception], None]
TerminalHook = Callable[["SessionWorker"], None]

_STOP = object()


class SessionWorker:
    """Own one ``PatrolSession`` and run every command against it in order.

    Commands are queued from any thread and resolved through a
    ``concurrent.futures.Future``. Persistence calls triggered by session
    events run on a dedicated single-thread executor with bounded retries, so
    a slow sink never stalls fix ingestion. Once the session reaches a
    terminal state the worker refuses new commands, closes the broadcast
    channel and exits.
    """

    def __init__(
        self,
        session: PatrolSession,
        *,
        persistence: PersistenceSink,
        broadcaster: Broadcaster | None = None,
        backoff: BackoffPolicy | None = None,
        on_collaborator_failure: FailureHook | None = None,
        on_terminal: TerminalHook | None = None,
        drain_timeout: float = BROADCAST_DRAIN_TIMEOUT_SECONDS,
    ) -> None:
        self._log = logging.getLogger(self.__class__.__name__)
        self.session = session
        self.session_id = session.session_id
        self._persistence = persistence
        self._broadcaster = broadcaster
        self._backoff = backoff or BackoffPolicy()
        self._on_failure = on_collaborator_failure
        self._on_terminal = on_terminal
        self._drain_timeout = drain_timeout
        self._listeners: List[EventCallback] = []

        self._queue: "queue.Queue[object]" = queue.Queue()
        self._lock = threading.Lock()
        self._accepting = True
        self._closed = threading.Event()
        self._close_lock = threading.Lock()
        self._persist = ThreadPoolExecutor(
            max_workers=1, thread_name_prefix=f"persist-{self.session_id}"
        )
        self._thread = threading.Thread(
            target=self._run, name=f"patrol-{self.session_id}", daemon=True
        )
        session.on_event = self._handle_event

    @property
    def accepting(self) -> bool:
        with self._lock:
            return self._accepting

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def add_listener(self, listener: EventCallback) -> None:
        """Also deliver session events to ``listener`` on the worker thread."""

        self._listeners.append(listener)

    def start(self) -> None:
        self._thread.start()

    def submit(self, command: Command) -> "Future[T]":
        """Queue ``command``; fail fast once the session is no longer active."""

        future: Future = Future()
        with self._lock:
            if not self._accepting:
                raise SessionNotActiveError(
                    f"session {self.session_id} is {self.session.state}",
                    session_id=self.session_id,
                    state=self.session.state,
                )
            self._queue.put((command, future))
        return future

    def call(self, command: Command, timeout: float | None = None) -> T:
        return self.submit(command).result(timeout)

    def stop(self, timeout: float | None = None) -> None:
        """Stop accepting commands and wait for queued ones to finish."""

        with self._lock:
            if self._accepting:
                self._accepting = False
                self._queue.put(_STOP)
        if self._thread.is_alive():
            self._thread.join(timeout)
        if not self._closed.is_set():
            self._close()

    def wait_closed(self, timeout: float | None = None) -> bool:
        return self._closed.wait(timeout)

    # ------------------------------------------------------------------
    # Worker thread
    # ------------------------------------------------------------------
    def _run(self) -> None:
        while True:
            item = self._queue.get()
            if item is _STOP:
                break
            command, future = item  # type: ignore[misc]
            if not future.set_running_or_notify_cancel():
                continue
            try:
                result = command(self.session)
            except Exception as exc:
                if self.session.is_terminal:
                    self._mark_terminal()
                future.set_exception(exc)
            else:
                if self.session.is_terminal:
                    self._mark_terminal()
                future.set_result(result)
            if self.session.is_terminal:
                self._drain_rejected()
                break
        self._close()

    def _mark_terminal(self) -> None:
        with self._lock:
            if not self._accepting:
                return
            self._accepting = False
        self._log.info(
            "Session %s reached %s; worker stops accepting commands",
            self.session_id,
            self.session.state,
        )
        if self._on_terminal is not None:
            self._on_terminal(self)

    def _drain_rejected(self) -> None:
        while True:
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                return
            if item is _STOP:
                continue
            _, future = item  # type: ignore[misc]
            if future.set_running_or_notify_cancel():
                future.set_exception(
                    SessionNotActiveError(
                        f"session {self.session_id} is {self.session.state}",
                        session_id=self.session_id,
                        state=self.session.state,
                    )
                )

    def _close(self) -> None:
        with self._close_lock:
            if self._closed.is_set():
                return
            if self._broadcaster is not None:
                self._broadcaster.close_session(self.session_id, self._drain_timeout)
            self._persist.shutdown(wait=True)
            self._closed.set()
        self._log.debug("Worker for session %s closed", self.session_id)

    # ------------------------------------------------------------------
    # Event fan-out
    # ------------------------------------------------------------------
    def _handle_event(self, event: PatrolEvent) -> None:
        if self._broadcaster is not None:
            self._broadcaster.publish(event)
        session_id = self.session_id
        sink = self._persistence
        if isinstance(event, CheckpointVisited) and event.visit is not None:
            visit = event.visit
            self._persist_async(
                "append_visit", lambda: sink.append_visit(session_id, visit)
            )
        elif isinstance(event, SessionFinished) and event.summary is not None:
            summary = event.summary
            self._persist_async("finish", lambda: sink.finish(session_id, summary))
        elif isinstance(event, SessionCancelled):
            summary = self.session.summary()
            reason = event.reason
            self._persist_async(
                "cancel", lambda: sink.cancel(session_id, reason, summary)
            )
        for listener in self._listeners:
            try:
                listener(event)
            except Exception:
                self._log.exception(
                    "Listener %r failed on %s for session %s",
                    listener,
                    event.kind,
                    self.session_id,
                )

    def _persist_async(self, operation: str, call: Callable[[], object]) -> None:
        context = f"persistence.{operation} session={self.session_id}"

        def task() -> None:
            try:
                self._backoff.run(call, context=context)
            except Exception as exc:
                self._log.error(
                    "%s gave up; session continues locally: %s", context, exc
                )
                if self._on_failure is not None:
                    self._on_failure("persistence", self.session_id, exc)

        self._persist.submit(task)


__all__ = ["SessionWorker", "FailureHook"]
