"""Global pytest fixtures & helpers.

Adds project root to path and provides reusable builders for fixes,
checkpoints, a controllable clock and recording transports.
"""
from __future__ import annotations

import math
import os
import sys
import threading
import time
from datetime import datetime, timedelta, timezone

import pytest

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from patrol_tracker.broadcast.backoff import BackoffPolicy
from patrol_tracker.errors import TransportError
from patrol_tracker.models import Checkpoint, Fix

T0 = datetime(2025, 3, 1, 22, 0, 0, tzinfo=timezone.utc)
METERS_PER_DEGREE = 2 * math.pi * 6_371_000.0 / 360.0


# --- Factory helpers -------------------------------------------------
def east_of(lon: float, meters: float, lat: float = 0.0) -> float:
    """Longitude ``meters`` east of ``lon`` along latitude ``lat``."""
    return lon + meters / (METERS_PER_DEGREE * math.cos(math.radians(lat)))


def make_fix(lat=0.0, lon=0.0, seconds=0.0, accuracy=5.0, **kwargs) -> Fix:
    return Fix(
        latitude=lat,
        longitude=lon,
        captured_at=T0 + timedelta(seconds=seconds),
        accuracy_m=accuracy,
        **kwargs,
    )


def walk_east(count: int, step_m: float = 2.0, every_s: float = 1.0, start_s: float = 1.0):
    """``count`` fixes along the equator, ``step_m`` apart, after a fix at (0, 0)."""
    return [
        make_fix(0.0, east_of(0.0, step_m * i), start_s + every_s * (i - 1))
        for i in range(1, count + 1)
    ]


def wait_until(predicate, timeout: float = 2.0, interval: float = 0.01) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


class FakeClock:
    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now

    def set(self, seconds_from_t0: float) -> datetime:
        self.now = T0 + timedelta(seconds=seconds_from_t0)
        return self.now


class RecordingTransport:
    """Transport that records calls and can be told to fail N times."""

    def __init__(self, name: str = "obs", fail_times: int = 0, fail_on=("send",)) -> None:
        self.name = name
        self.fail_times = fail_times
        self.fail_on = set(fail_on)
        self.calls = []
        self.sent = []
        self.failures = 0
        self._lock = threading.Lock()

    def _maybe_fail(self, op: str) -> None:
        with self._lock:
            if op in self.fail_on and self.failures < self.fail_times:
                self.failures += 1
                raise TransportError(f"{self.name} {op} failed")

    def join(self, room: str) -> None:
        self._maybe_fail("join")
        with self._lock:
            self.calls.append(("join", room))

    def leave(self, room: str) -> None:
        self._maybe_fail("leave")
        with self._lock:
            self.calls.append(("leave", room))

    def send(self, room: str, payload) -> None:
        self._maybe_fail("send")
        with self._lock:
            self.calls.append(("send", room))
            self.sent.append(dict(payload))

    def kinds(self):
        with self._lock:
            return [payload["kind"] for payload in self.sent]

    def __repr__(self) -> str:
        return f"RecordingTransport({self.name!r})"


# --- Fixtures --------------------------------------------------------
@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fast_backoff():
    return BackoffPolicy(initial_s=0.01, factor=2.0, max_s=0.05, max_attempts=3, jitter=(0.0, 0.0))


@pytest.fixture
def checkpoints():
    return [
        Checkpoint(1, 0.0, 0.0, radius_m=30, mandatory=True, label="Gate"),
        Checkpoint(2, 0.0, east_of(0.0, 100.0), radius_m=30, mandatory=True, label="Dock"),
        Checkpoint(3, 0.0, east_of(0.0, 200.0), radius_m=20, label="Parking"),
    ]
