from __future__ import annotations

import time
from threading import Lock
from typing import Callable

from .cancellation import CancelToken, SleepFn, pause
from .config_schema import RateLimitConfig

ClockFn = Callable[[], float]


class RateLimiter:
    """
    Token bucket shared by every driver that draws on the same credential pool.

    The bucket holds `requests_per_window` tokens and refills continuously over
    `window_seconds`. reserve() takes a token under the lock and returns how long the
    caller must wait for it; the wait itself happens outside the lock, so one slow
    caller never blocks the others for longer than its own reservation.
    """

    def __init__(
        self,
        requests_per_window: int,
        window_seconds: float,
        *,
        max_wait_seconds: float = 900.0,
        clock: ClockFn | None = None,
        sleep_fn: SleepFn | None = None,
    ) -> None:
        if requests_per_window < 1:
            raise ValueError("requests_per_window must be >= 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be > 0")

        self._capacity = float(requests_per_window)
        self._rate = float(requests_per_window) / float(window_seconds)
        self._max_wait = float(max_wait_seconds)
        self._clock = clock or time.monotonic
        self._sleep_fn = sleep_fn
        self._lock = Lock()
        self._tokens = self._capacity
        self._updated = self._clock()

    @classmethod
    def from_config(
        cls,
        cfg: RateLimitConfig,
        *,
        clock: ClockFn | None = None,
        sleep_fn: SleepFn | None = None,
    ) -> "RateLimiter":
        return cls(
            cfg.requests_per_window,
            cfg.window_seconds,
            max_wait_seconds=cfg.max_wait_seconds,
            clock=clock,
            sleep_fn=sleep_fn,
        )

    def _refill(self, now: float) -> None:
        elapsed = max(0.0, now - self._updated)
        self._tokens = min(self._capacity, self._tokens + elapsed * self._rate)
        self._updated = now

    @property
    def available(self) -> float:
        with self._lock:
            self._refill(self._clock())
            return max(0.0, self._tokens)

    def reserve(self) -> float:
        """Take one token and return the seconds to wait before using it."""
        with self._lock:
            self._refill(self._clock())
            self._tokens -= 1.0
            if self._tokens >= 0:
                return 0.0
            return min(self._max_wait, -self._tokens / self._rate)

    def acquire(self, cancel: CancelToken | None = None) -> float:
        """Block until a request may be issued; returns the seconds waited."""
        wait = self.reserve()
        pause(wait, cancel, self._sleep_fn)
        return wait
