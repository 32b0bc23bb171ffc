# tests/test_resume.py
from __future__ import annotations

import json
import tempfile
import unittest
from pathlib import Path

from twtscrape.cli import write_authors_jsonl
from twtscrape.config_schema import AppConfig
from twtscrape.driver import ExhaustionCause, PaginationDriver
from twtscrape.offline import OfflinePageFetcher, OfflineSessionManager
from twtscrape.query import Query, QueryMode
from twtscrape.records import Author
from twtscrape.storage import SQLiteStateStore


def _driver(max_pages: int | None = None) -> PaginationDriver:
    cfg = AppConfig.model_validate({"pagination": {"max_pages": max_pages}})
    return PaginationDriver(cfg, fetcher=OfflinePageFetcher(), sessions=OfflineSessionManager())


class TestResumeThroughStore(unittest.TestCase):
    def test_second_run_continues_where_first_stopped(self) -> None:
        query = Query(QueryMode.USER_TIMELINE, "offline")

        with tempfile.TemporaryDirectory() as td:
            db_path = Path(td) / "state.sqlite"

            with SQLiteStateStore.open(db_path) as store:
                record = store.create_run(query, config_hash="h1", run_id="run_1")
                run = _driver(max_pages=1).run(query)
                first = list(run)
                store.upsert_posts(first, run_id=record.run_id)
                store.save_checkpoint(record.run_id, run.checkpoint())
                assert run.outcome is not None
                store.finish_run(record.run_id, run.outcome)
                self.assertEqual(run.outcome.cause, ExhaustionCause.MAX_PAGES)

            with SQLiteStateStore.open(db_path) as store:
                cp = store.latest_checkpoint(query)
                assert cp is not None
                self.assertEqual(cp.user_id, 783214)
                self.assertEqual(cp.emitted, 10)

                record = store.create_run(query, config_hash="h1", run_id="run_2")
                resumed = _driver().resume(cp)
                rest = list(resumed)
                store.upsert_posts(rest, run_id=record.run_id)
                store.save_checkpoint(record.run_id, resumed.checkpoint())

                self.assertEqual(len(rest), 14)
                self.assertEqual(store.post_count(), 24)
                self.assertIsNone(store.latest_checkpoint(query))

    def test_resumed_scrape_keeps_earlier_authors(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "authors.jsonl"

            n = write_authors_jsonl(path, [Author(id=7, handle="alice"), Author(id=8, handle="bob")])
            self.assertEqual(n, 2)

            n = write_authors_jsonl(
                path,
                [Author(id=8, handle="bob", followers=12), Author(id=9, handle="carol")],
                merge=True,
            )
            self.assertEqual(n, 3)

            rows = {r["id"]: r for r in map(json.loads, path.read_text(encoding="utf-8").splitlines())}
            self.assertEqual(set(rows), {"7", "8", "9"})
            self.assertEqual(rows["8"]["followers"], 12)

            write_authors_jsonl(path, [Author(id=9, handle="carol")])
            self.assertEqual(len(path.read_text(encoding="utf-8").splitlines()), 1)

    def test_fresh_query_has_nothing_to_resume(self) -> None:
        with SQLiteStateStore.open(":memory:") as store:
            self.assertIsNone(store.latest_checkpoint(Query(QueryMode.THREAD, "12345")))


if __name__ == "__main__":
    unittest.main()
