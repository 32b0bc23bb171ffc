from __future__ import annotations

from dataclasses import dataclass


@dataclass
class StagnationTracker:
    """
    Detects a platform that keeps handing out cursors without new results.

    push() returns True once `threshold` consecutive pages produced zero new records.
    Any page with at least one new record resets the streak.
    """

    threshold: int
    _streak: int = 0
    _pages: int = 0

    def __post_init__(self) -> None:
        if self.threshold <= 0:
            raise ValueError("threshold must be positive")

    def push(self, new_records: int) -> bool:
        self._pages += 1
        if int(new_records) > 0:
            self._streak = 0
            return False
        self._streak += 1
        return self._streak >= self.threshold

    @property
    def streak(self) -> int:
        return self._streak

    @property
    def pages(self) -> int:
        return self._pages

    def reset(self) -> None:
        self._streak = 0
