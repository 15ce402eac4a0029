"""Capped exponential backoff shared by transports and collaborator calls."""

from __future__ import annotations

import logging
import random
import threading
import time
from dataclasses import dataclass
from typing import Callable, Tuple, Type, TypeVar

from ..config import (
    BACKOFF_FACTOR,
    BACKOFF_INITIAL_SECONDS,
    BACKOFF_JITTER_RANGE,
    BACKOFF_MAX_SECONDS,
    COLLABORATOR_MAX_ATTEMPTS,
)

_LOG = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(slots=True)
class BackoffPolicy:
    initial_s: float = BACKOFF_INITIAL_SECONDS
    factor: float = BACKOFF_FACTOR
    max_s: float = BACKOFF_MAX_SECONDS
    max_attempts: int = COLLABORATOR_MAX_ATTEMPTS
    jitter: Tuple[float, float] = BACKOFF_JITTER_RANGE

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.initial_s < 0 or self.max_s < 0:
            raise ValueError("backoff delays must be >= 0")

    def base_delay(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (1-based), without jitter."""

        if attempt < 1:
            return 0.0
        return min(self.initial_s * (self.factor ** (attempt - 1)), self.max_s)

    def delay(self, attempt: int) -> float:
        base = self.base_delay(attempt)
        lo, hi = self.jitter
        if hi > 0 and base > 0:
            # Jitter only spreads reconnect bursts; not security sensitive.
            base += random.uniform(lo, hi)  # nosec B311
        return min(base, self.max_s) if self.max_s > 0 else base

    def wait(self, attempt: int, stop: threading.Event | None = None) -> bool:
        """Sleep before the next attempt; return False when ``stop`` fired."""

        seconds = self.delay(attempt)
        if stop is None:
            if seconds > 0:
                time.sleep(seconds)
            return True
        return not stop.wait(seconds)

    def run(
        self,
        fn: Callable[[], T],
        *,
        context: str,
        retry_on: Tuple[Type[BaseException], ...] = (Exception,),
        stop: threading.Event | None = None,
    ) -> T:
        """Call ``fn`` until it succeeds or ``max_attempts`` is reached.

        The last error is re-raised once attempts are exhausted or ``stop`` is
        set while waiting.
        """

        attempt = 0
        while True:
            attempt += 1
            try:
                return fn()
            except retry_on as exc:
                if attempt >= self.max_attempts:
                    _LOG.error(
                        "%s failed after %d attempts: %s",
                        context,
                        attempt,
                        exc,
                    )
                    raise
                delay = self.base_delay(attempt)
                _LOG.warning(
                    "%s attempt=%d err=%s; retrying in %.1fs",
                    context,
                    attempt,
                    exc.__class__.__name__,
                    delay,
                )
                if not self.wait(attempt, stop):
                    raise


__all__ = ["BackoffPolicy"]
