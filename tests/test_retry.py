from __future__ import annotations

import random
import unittest

from pydantic import ValidationError

from twtscrape.config_schema import BackoffConfig
from twtscrape.retry import BackoffController


class TestBackoffController(unittest.TestCase):
    def test_exponential_growth_without_jitter(self) -> None:
        b = BackoffController(BackoffConfig(base_delay_seconds=1.0, max_delay_seconds=60.0, jitter_ratio=0.0))
        self.assertEqual([b.delay_for(n) for n in (1, 2, 3, 4)], [1.0, 2.0, 4.0, 8.0])

    def test_delay_is_capped(self) -> None:
        b = BackoffController(BackoffConfig(base_delay_seconds=1.0, max_delay_seconds=3.0, jitter_ratio=0.0))
        self.assertEqual(b.delay_for(10), 3.0)

    def test_jitter_stays_in_band(self) -> None:
        cfg = BackoffConfig(base_delay_seconds=1.0, max_delay_seconds=60.0, jitter_ratio=0.25)
        b = BackoffController(cfg, rng=random.Random(7))
        for _ in range(50):
            d = b.delay_for(2)
            self.assertGreaterEqual(d, 1.5)
            self.assertLessEqual(d, 2.5)

    def test_retry_after_takes_precedence(self) -> None:
        b = BackoffController(BackoffConfig(jitter_ratio=0.25), rng=random.Random(1))
        self.assertEqual(b.delay_for(1, retry_after=7), 7.0)
        self.assertEqual(b.delay_for(4, retry_after=0), 0.0)

    def test_retry_after_is_capped(self) -> None:
        b = BackoffController(BackoffConfig(retry_after_cap_seconds=5.0))
        self.assertEqual(b.delay_for(1, retry_after=3600), 5.0)

        default = BackoffController(BackoffConfig())
        self.assertEqual(default.delay_for(1, retry_after=86_400), 900.0)

    def test_retry_after_cap_must_be_positive(self) -> None:
        with self.assertRaises(ValidationError):
            BackoffConfig(retry_after_cap_seconds=0)

    def test_negative_retry_after_is_ignored(self) -> None:
        b = BackoffController(BackoffConfig(base_delay_seconds=2.0, jitter_ratio=0.0))
        self.assertEqual(b.delay_for(1, retry_after=-1), 2.0)

    def test_retry_budget(self) -> None:
        b = BackoffController(BackoffConfig(max_page_retries=5))
        self.assertEqual(b.max_retries, 5)
        self.assertFalse(b.exhausted(5))
        self.assertTrue(b.exhausted(6))

        none_allowed = BackoffController(BackoffConfig(max_page_retries=0))
        self.assertTrue(none_allowed.exhausted(1))


if __name__ == "__main__":
    unittest.main()
