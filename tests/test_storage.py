from __future__ import annotations

import sqlite3
import tempfile
import unittest
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path

from twtscrape.checkpoint import ResumeCheckpoint
from twtscrape.dedupe import SeenDigest
from twtscrape.driver import ExhaustionCause, RunOutcome, RunStats, TerminalReason
from twtscrape.errors import StorageError
from twtscrape.query import Cursor, Query, QueryMode
from twtscrape.records import Author, Engagement, Post
from twtscrape.storage import SQLiteStateStore

_QUERY = Query(QueryMode.SEARCH, "from:nasa")


def _post(post_id: int, *, likes: int = 0) -> Post:
    return Post(
        id=post_id,
        author_id=11348282,
        created_at=datetime(2023, 5, 1, 12, 0, tzinfo=timezone.utc),
        text=f"post {post_id}",
        engagement=Engagement(likes=likes),
    )


class TestSQLiteStateStore(unittest.TestCase):
    def test_creates_finishes_and_reads_run(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            db_path = Path(td) / "state.sqlite"

            with SQLiteStateStore.open(db_path) as store:
                run = store.create_run(
                    _QUERY,
                    config_hash="abc123",
                    versions={"python": "3.x"},
                    run_id="run_test",
                    started_at="2025-12-01T00:00:00+00:00",
                )
                self.assertEqual(run.run_id, "run_test")
                self.assertEqual(run.query_key, "search:from:nasa")
                self.assertIsNone(run.reason)

                outcome = RunOutcome(
                    reason=TerminalReason.EXHAUSTED,
                    stats=RunStats(pages=3, emitted=24),
                    cause=ExhaustionCause.NO_CURSOR,
                )
                store.finish_run("run_test", outcome, ended_at="2025-12-01T00:05:00+00:00")

                fetched = store.get_run("run_test")
                assert fetched is not None
                self.assertEqual(fetched.reason, "exhausted")
                self.assertEqual(fetched.cause, "no_cursor")
                self.assertIsNone(fetched.error_kind)
                self.assertEqual(fetched.stats["emitted"], 24)
                self.assertEqual(fetched.versions, {"python": "3.x"})

                self.assertIsNone(store.get_run("missing"))

    def test_upserts_posts_and_authors(self) -> None:
        with SQLiteStateStore.open(":memory:") as store:
            self.assertEqual(store.upsert_posts([]), 0)
            self.assertEqual(store.upsert_posts([_post(1), _post(2)], fetched_at="t0"), 2)
            self.assertEqual(store.upsert_posts([_post(2, likes=9)], fetched_at="t1"), 1)

            self.assertEqual(store.post_count(), 2)
            self.assertEqual(store.post_ids(), {1, 2})
            self.assertEqual(len(store.post_ids(limit=1)), 1)

            stored = store.get_post(2)
            assert stored is not None
            self.assertEqual(stored.engagement.likes, 9)
            self.assertIsNone(store.get_post(3))

            author = Author(id=11348282, handle="nasa")
            store.upsert_authors([author])
            store.upsert_authors([replace(author, handle="NASA")])
            self.assertEqual(store.author_count(), 1)
            row = store.conn.execute("SELECT handle FROM authors").fetchone()
            self.assertEqual(row["handle"], "NASA")

    def test_latest_checkpoint(self) -> None:
        with SQLiteStateStore.open(":memory:") as store:
            store.create_run(_QUERY, config_hash="h", run_id="r1")
            self.assertIsNone(store.latest_checkpoint(_QUERY))

            mid = ResumeCheckpoint(query=_QUERY, cursor=Cursor.parse("c2"), seen=SeenDigest.of([5, 4]), pages=2, emitted=2)
            store.save_checkpoint("r1", mid)

            loaded = store.latest_checkpoint(_QUERY)
            assert loaded is not None
            self.assertEqual(loaded.cursor, Cursor.parse("c2"))
            self.assertEqual(loaded.seen.ids, (4, 5))

            store.save_checkpoint("r1", replace(mid, cursor=None, pages=3))
            self.assertIsNone(store.latest_checkpoint(_QUERY))

            other = Query(QueryMode.SEARCH, "from:esa")
            self.assertIsNone(store.latest_checkpoint(other))

    def test_checkpoint_requires_run(self) -> None:
        with SQLiteStateStore.open(":memory:") as store:
            cp = ResumeCheckpoint(query=_QUERY, cursor=None, seen=SeenDigest.of([]))
            with self.assertRaises(StorageError):
                store.save_checkpoint("nope", cp)

    def test_corrupt_checkpoint_raises_storage_error(self) -> None:
        with SQLiteStateStore.open(":memory:") as store:
            store.create_run(_QUERY, config_hash="h", run_id="r1")
            store.conn.execute(
                "INSERT INTO checkpoints(run_id, query_key, pages, emitted, archive, created_at) VALUES (?, ?, 0, 0, ?, 't')",
                ("r1", _QUERY.key, sqlite3.Binary(b"garbage")),
            )
            with self.assertRaises(StorageError):
                store.latest_checkpoint(_QUERY)

    def test_reopen_is_idempotent(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            db_path = Path(td) / "nested" / "state.sqlite"
            with SQLiteStateStore.open(db_path) as store:
                store.upsert_posts([_post(7)])
            with SQLiteStateStore.open(db_path) as store:
                self.assertEqual(store.post_ids(), {7})


if __name__ == "__main__":
    unittest.main()
