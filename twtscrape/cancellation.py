from __future__ import annotations

import threading
from typing import Callable

from .errors import RunCancelled


class CancelToken:
    """
    Run-level cancellation signal.

    Every wait in the scraper goes through sleep(), which wakes up as soon as cancel()
    is called from any thread.
    """

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise RunCancelled("run cancelled")

    def sleep(self, seconds: float) -> None:
        """Wait up to `seconds`; raise RunCancelled if cancelled before or during the wait."""
        self.raise_if_cancelled()
        if seconds <= 0:
            return
        if self._event.wait(float(seconds)):
            raise RunCancelled("run cancelled while waiting")


SleepFn = Callable[[float], None]


def pause(seconds: float, cancel: CancelToken | None = None, sleep_fn: SleepFn | None = None) -> None:
    """
    Wait for `seconds`, honoring `cancel`.

    With an injected sleep_fn (tests, simulated clocks) cancellation is checked before and
    after the sleep instead of interrupting it.
    """
    token = cancel or CancelToken()
    if sleep_fn is None:
        token.sleep(seconds)
        return
    token.raise_if_cancelled()
    if seconds > 0:
        sleep_fn(float(seconds))
    token.raise_if_cancelled()
