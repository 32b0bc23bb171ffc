from __future__ import annotations

import random

from .config_schema import BackoffConfig


def _compute_backoff_seconds(failure_attempt: int, cfg: BackoffConfig) -> float:
    # failure_attempt=1 => base delay.
    exponent = max(0, int(failure_attempt) - 1)
    delay = cfg.base_delay_seconds * (2**exponent)
    return min(cfg.max_delay_seconds, max(0.0, float(delay)))


def _apply_jitter(delay: float, cfg: BackoffConfig, rng: random.Random) -> float:
    d = max(0.0, float(delay))
    if d == 0.0 or cfg.jitter_ratio <= 0:
        return d
    factor = rng.uniform(1.0 - cfg.jitter_ratio, 1.0 + cfg.jitter_ratio)
    return min(cfg.max_delay_seconds, max(0.0, d * factor))


def _normalize_retry_after(value: float | None, cfg: BackoffConfig) -> float | None:
    if value is None:
        return None
    try:
        seconds = float(value)
    except (TypeError, ValueError):
        return None
    if seconds < 0:
        return None
    return min(seconds, float(cfg.retry_after_cap_seconds))


class BackoffController:
    """
    Decides how long to wait before retrying a page and when to give up.

    - Delays grow as base * 2**(attempt-1), capped at max_delay_seconds, with
      multiplicative jitter in [1-jitter, 1+jitter].
    - A platform-supplied retry-after hint replaces the computed delay outright
      (capped by retry_after_cap_seconds, no jitter).
    - A page may be retried at most max_page_retries times.
    """

    def __init__(self, config: BackoffConfig | None = None, *, rng: random.Random | None = None) -> None:
        self._cfg = config or BackoffConfig()
        self._rng = rng or random.Random()

    @property
    def config(self) -> BackoffConfig:
        return self._cfg

    @property
    def max_retries(self) -> int:
        return int(self._cfg.max_page_retries)

    def exhausted(self, failure_attempt: int) -> bool:
        """True when `failure_attempt` failures leave no retry budget for this page."""
        return int(failure_attempt) > self.max_retries

    def delay_for(self, failure_attempt: int, retry_after: float | None = None) -> float:
        hint = _normalize_retry_after(retry_after, self._cfg)
        if hint is not None:
            return hint
        return _apply_jitter(_compute_backoff_seconds(failure_attempt, self._cfg), self._cfg, self._rng)
