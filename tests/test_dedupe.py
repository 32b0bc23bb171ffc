from __future__ import annotations

import unittest
from datetime import datetime, timezone

from twtscrape.dedupe import SeenDigest, SeenSet
from twtscrape.records import Post


def _post(post_id: int) -> Post:
    return Post(
        id=post_id,
        author_id=1,
        created_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
        text=f"post {post_id}",
    )


class TestSeenSet(unittest.TestCase):
    def test_add_reports_novelty(self) -> None:
        seen = SeenSet()
        self.assertTrue(seen.add(1))
        self.assertFalse(seen.add(1))
        self.assertIn(1, seen)
        self.assertEqual(len(seen), 1)

    def test_partition_drops_seen_and_in_page_repeats(self) -> None:
        seen = SeenSet()
        seen.add(2)

        fresh, dupes = seen.partition([_post(1), _post(2), _post(3), _post(1)])
        self.assertEqual([p.id for p in fresh], [1, 3])
        self.assertEqual(dupes, 2)
        # partition does not mutate
        self.assertNotIn(1, seen)

    def test_digest_round_trip(self) -> None:
        seen = SeenSet()
        for i in (5, 3, 9):
            seen.add(i)

        digest = seen.digest()
        self.assertEqual(digest.ids, (3, 5, 9))
        self.assertTrue(digest.verify())
        self.assertEqual(SeenSet.from_digest(digest).ids, {3, 5, 9})

    def test_digest_detects_tampering(self) -> None:
        digest = SeenDigest.of([1, 2, 3])
        tampered = SeenDigest(ids=(1, 2, 4), sha256=digest.sha256)
        self.assertFalse(tampered.verify())


if __name__ == "__main__":
    unittest.main()
