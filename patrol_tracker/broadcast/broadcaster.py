"""Per-session fan-out of patrol events to remote observers.

Each open session gets one delivery thread. Every subscriber of that session
owns an ordered outbound queue, so a slow or failing observer only delays
itself. Position events are coalesced (the newest undelivered one replaces an
older one at the tail of the queue) and bounded; discrete events such as
checkpoint visits and session completion are kept until delivered or until
the session is torn down.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Deque, Dict, List, Optional

from ..config import (
    BROADCAST_DRAIN_TIMEOUT_SECONDS,
    BROADCAST_POSITION_QUEUE_SIZE,
    BROADCAST_ROOM_PREFIX,
    BROADCAST_TICK_SECONDS,
)
from ..errors import SessionNotFoundError
from ..events import PatrolEvent, PositionTick
from ..geo import LatLon
from .backoff import BackoffPolicy
from .transport import Transport

@dataclass(eq=False, slots=True)
class _Subscriber:
    transport: Transport
    queue: Deque[PatrolEvent] = field(default_factory=deque)
    joined: bool = False
    leaving: bool = False
    attempt: int = 0
    next_try_at: float = 0.0
    inflight: Optional[PatrolEvent] = None
    dropped_positions: int = 0

    def has_work(self) -> bool:
        return self.leaving or not self.joined or bool(self.queue)


@dataclass(eq=False, slots=True)
class _Channel:
    session_id: str
    room: str
    cond: threading.Condition = field(default_factory=threading.Condition)
    subscribers: List[_Subscriber] = field(default_factory=list)
    stop: threading.Event = field(default_factory=threading.Event)
    closing: bool = False
    last_position: Optional[LatLon] = None
    last_sequence: int = 0
    last_position_at: float = 0.0
    thread: Optional[threading.Thread] = None

    def pending(self) -> int:
        return sum(len(sub.queue) for sub in self.subscribers)

    def wants_service(self, sub: _Subscriber) -> bool:
        if self.closing:
            # A subscriber that never joined and has nothing queued is skipped.
            return sub.leaving or bool(sub.queue)
        return sub.has_work()


class Broadcaster:
    def __init__(
        self,
        *,
        tick_seconds: float = BROADCAST_TICK_SECONDS,
        position_queue_size: int = BROADCAST_POSITION_QUEUE_SIZE,
        backoff: BackoffPolicy | None = None,
        room_prefix: str = BROADCAST_ROOM_PREFIX,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self._log = logging.getLogger(self.__class__.__name__)
        self.tick_seconds = tick_seconds
        self.position_queue_size = max(1, position_queue_size)
        self.backoff = backoff or BackoffPolicy()
        self.room_prefix = room_prefix
        self._monotonic = monotonic
        self._lock = threading.Lock()
        self._channels: Dict[str, _Channel] = {}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def room_for(self, session_id: str) -> str:
        return f"{self.room_prefix}:{session_id}"

    def is_open(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._channels

    def open_session(self, session_id: str) -> None:
        with self._lock:
            if session_id in self._channels:
                return
            channel = _Channel(session_id, self.room_for(session_id))
            channel.last_position_at = self._monotonic()
            thread = threading.Thread(
                target=self._run,
                args=(channel,),
                name=f"broadcast-{session_id}",
                daemon=True,
            )
            channel.thread = thread
            self._channels[session_id] = channel
        thread.start()
        self._log.debug("Opened broadcast channel %s", channel.room)

    def subscribe(self, session_id: str, transport: Transport) -> None:
        channel = self._channel(session_id)
        with channel.cond:
            for sub in channel.subscribers:
                if sub.transport is transport:
                    sub.leaving = False
                    return
            channel.subscribers.append(_Subscriber(transport))
            channel.cond.notify_all()
        self._log.info("Subscriber %r joined %s", transport, channel.room)

    def unsubscribe(self, session_id: str, transport: Transport) -> None:
        channel = self._channel(session_id)
        with channel.cond:
            for sub in channel.subscribers:
                if sub.transport is transport:
                    sub.leaving = True
                    sub.next_try_at = 0.0
                    channel.cond.notify_all()
                    return

    def subscriber_count(self, session_id: str) -> int:
        channel = self._channel(session_id)
        with channel.cond:
            return sum(1 for sub in channel.subscribers if not sub.leaving)

    def publish(self, event: PatrolEvent) -> None:
        """Queue ``event`` for every subscriber of its session. Never blocks on I/O."""

        with self._lock:
            channel = self._channels.get(event.session_id)
        if channel is None:
            self._log.debug(
                "Dropping %s for closed session %s", event.kind, event.session_id
            )
            return
        with channel.cond:
            if channel.closing and event.coalescable:
                return
            channel.last_sequence = max(channel.last_sequence, event.sequence)
            position = getattr(event, "position", None)
            if event.coalescable:
                channel.last_position_at = self._monotonic()
                if position is not None:
                    channel.last_position = position
            for sub in channel.subscribers:
                if not sub.leaving:
                    self._enqueue(sub, event)
            channel.cond.notify_all()

    def wait_idle(self, session_id: str, timeout: float = 5.0) -> bool:
        """Block until every subscriber queue of ``session_id`` is empty."""

        channel = self._channel(session_id)
        deadline = self._monotonic() + timeout
        with channel.cond:
            while any(sub.has_work() for sub in channel.subscribers):
                remaining = deadline - self._monotonic()
                if remaining <= 0:
                    return False
                channel.cond.wait(min(remaining, 0.05))
        return True

    def close_session(
        self, session_id: str, drain_timeout: float = BROADCAST_DRAIN_TIMEOUT_SECONDS
    ) -> int:
        """Flush pending events, leave the room and stop the delivery thread.

        Returns the number of events still undelivered when the drain timed out.
        """

        with self._lock:
            channel = self._channels.pop(session_id, None)
        if channel is None:
            return 0
        with channel.cond:
            channel.closing = True
            channel.cond.notify_all()
        if channel.thread is not None:
            channel.thread.join(max(0.0, drain_timeout))
        with channel.cond:
            undelivered = channel.pending()
            channel.stop.set()
            channel.cond.notify_all()
        if channel.thread is not None and channel.thread.is_alive():
            channel.thread.join(1.0)
        if undelivered:
            self._log.warning(
                "Broadcast drain for %s ended with %d undelivered events",
                channel.room,
                undelivered,
            )
        self._log.debug("Closed broadcast channel %s", channel.room)
        return undelivered

    def shutdown(self, drain_timeout: float = BROADCAST_DRAIN_TIMEOUT_SECONDS) -> None:
        with self._lock:
            session_ids = list(self._channels)
        for session_id in session_ids:
            self.close_session(session_id, drain_timeout)

    # ------------------------------------------------------------------
    # Queueing
    # ------------------------------------------------------------------
    def _enqueue(self, sub: _Subscriber, event: PatrolEvent) -> None:
        queue = sub.queue
        if event.coalescable and queue:
            tail = queue[-1]
            if tail.coalescable and tail is not sub.inflight:
                queue[-1] = event
                sub.dropped_positions += 1
                return
        queue.append(event)
        if event.coalescable:
            self._bound_positions(sub)

    def _bound_positions(self, sub: _Subscriber) -> None:
        positions = [
            event
            for event in sub.queue
            if event.coalescable and event is not sub.inflight
        ]
        excess = len(positions) - self.position_queue_size
        if excess <= 0:
            return
        stale = set(map(id, positions[:excess]))
        sub.queue = deque(event for event in sub.queue if id(event) not in stale)
        sub.dropped_positions += excess

    def _drop_stale_positions(self, sub: _Subscriber) -> None:
        """Keep only the newest position; discrete events are untouched."""

        latest = None
        for event in sub.queue:
            if event.coalescable:
                latest = event
        if latest is None:
            return
        before = len(sub.queue)
        sub.queue = deque(
            event for event in sub.queue if not event.coalescable or event is latest
        )
        sub.dropped_positions += before - len(sub.queue)

    # ------------------------------------------------------------------
    # Delivery thread
    # ------------------------------------------------------------------
    def _channel(self, session_id: str) -> _Channel:
        with self._lock:
            channel = self._channels.get(session_id)
        if channel is None:
            raise SessionNotFoundError(
                f"no broadcast channel for session {session_id}", session_id=session_id
            )
        return channel

    def _next_wakeup(self, channel: _Channel, now: float) -> float:
        wake = now + max(self.tick_seconds, 0.05)
        if not channel.closing and channel.subscribers and self.tick_seconds > 0:
            wake = min(wake, channel.last_position_at + self.tick_seconds)
        for sub in channel.subscribers:
            if channel.wants_service(sub):
                wake = min(wake, sub.next_try_at)
        return max(0.0, wake - now)

    def _maybe_tick(self, channel: _Channel, now: float) -> None:
        if channel.closing or self.tick_seconds <= 0 or not channel.subscribers:
            return
        if now - channel.last_position_at < self.tick_seconds:
            return
        channel.last_position_at = now
        position = channel.last_position
        if position is None:
            return
        tick = PositionTick(
            channel.session_id,
            datetime.now(timezone.utc),
            channel.last_sequence,
            position=position,
        )
        for sub in channel.subscribers:
            if not sub.leaving:
                self._enqueue(sub, tick)

    def _run(self, channel: _Channel) -> None:
        try:
            self._deliver(channel)
        except Exception:
            # Queues are kept so close_session still reports what was lost.
            self._log.exception("Broadcast delivery for %s stopped", channel.room)
            return
        self._leave_all(channel)

    def _deliver(self, channel: _Channel) -> None:
        while True:
            with channel.cond:
                if channel.stop.is_set():
                    break
                now = self._monotonic()
                self._maybe_tick(channel, now)
                ready = [
                    sub
                    for sub in channel.subscribers
                    if channel.wants_service(sub) and sub.next_try_at <= now
                ]
                if not ready:
                    if channel.closing and not any(
                        channel.wants_service(sub) for sub in channel.subscribers
                    ):
                        break
                    channel.cond.wait(self._next_wakeup(channel, now))
                    continue
            for sub in ready:
                if channel.stop.is_set():
                    break
                self._service(channel, sub)

    def _service(self, channel: _Channel, sub: _Subscriber) -> None:
        room = channel.room
        if sub.leaving:
            try:
                sub.transport.leave(room)
            except Exception as exc:
                self._log.warning("Leave %s failed for %r: %s", room, sub.transport, exc)
            with channel.cond:
                if sub in channel.subscribers:
                    channel.subscribers.remove(sub)
                channel.cond.notify_all()
            self._log.info("Subscriber %r left %s", sub.transport, room)
            return

        if not sub.joined:
            try:
                sub.transport.join(room)
            except Exception as exc:
                self._schedule_retry(channel, sub, "join", exc)
                return
            sub.joined = True

        with channel.cond:
            if not sub.queue:
                sub.attempt = 0
                channel.cond.notify_all()
                return
            event = sub.queue[0]
            sub.inflight = event
        try:
            sub.transport.send(room, event.to_payload())
        except Exception as exc:
            with channel.cond:
                sub.inflight = None
            self._schedule_retry(channel, sub, event.kind, exc)
            return
        with channel.cond:
            if sub.queue and sub.queue[0] is event:
                sub.queue.popleft()
            sub.inflight = None
            sub.attempt = 0
            sub.next_try_at = 0.0
            channel.cond.notify_all()
        self._log.debug("Delivered %s #%d to %r", event.kind, event.sequence, sub.transport)

    def _schedule_retry(
        self, channel: _Channel, sub: _Subscriber, what: str, exc: Exception
    ) -> None:
        with channel.cond:
            sub.attempt += 1
            delay = self.backoff.delay(sub.attempt)
            sub.next_try_at = self._monotonic() + delay
            self._drop_stale_positions(sub)
            channel.cond.notify_all()
        self._log.warning(
            "Broadcast %s to %r on %s failed attempt=%d err=%s; retrying in %.1fs",
            what,
            sub.transport,
            channel.room,
            sub.attempt,
            exc,
            delay,
        )

    def _leave_all(self, channel: _Channel) -> None:
        with channel.cond:
            subscribers = list(channel.subscribers)
            channel.subscribers.clear()
            channel.cond.notify_all()
        for sub in subscribers:
            if not sub.joined:
                continue
            try:
                sub.transport.leave(channel.room)
            except Exception as exc:
                self._log.warning(
                    "Leave %s failed for %r: %s", channel.room, sub.transport, exc
                )


__all__ = ["Broadcaster"]
