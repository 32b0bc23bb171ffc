from __future__ import annotations

import json
import tempfile
import unittest
from pathlib import Path

from twtscrape.run_log import NULL_LOG, RunLogger


def _records(path: Path) -> list[dict]:
    return [json.loads(ln) for ln in path.read_text(encoding="utf-8").splitlines() if ln.strip()]


class TestRunLogger(unittest.TestCase):
    def test_bound_loggers_share_the_file(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "logs" / "run.log"
            with RunLogger.open(path, run_id="r1") as log:
                log.info("started", url="https://example.com", count=1)
                child = log.bind(query="search:nasa")
                child.warning("retry_scheduled", delay_seconds=2.0)
                child.bind(page=3).debug("page_parsed")

                self.assertEqual(log.context, {})
                self.assertEqual(child.context, {"query": "search:nasa"})

            records = _records(path)

        self.assertEqual([r["event"] for r in records], ["started", "retry_scheduled", "page_parsed"])
        self.assertEqual(records[0]["url"], "https://example.com")
        self.assertEqual(records[0]["run_id"], "r1")
        self.assertEqual(records[1]["level"], "WARN")
        self.assertEqual(records[1]["data"], {"query": "search:nasa", "delay_seconds": 2.0})
        self.assertEqual(records[2]["data"], {"query": "search:nasa", "page": 3})
        self.assertEqual(len({r["session_id"] for r in records}), 1)

    def test_exception_records_traceback(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "run.log"
            with RunLogger.open(path) as log:
                try:
                    raise ValueError("boom")
                except ValueError as e:
                    log.exception("failed", exc=e)
            record = _records(path)[0]

        self.assertEqual(record["level"], "ERROR")
        self.assertEqual(record["data"]["error"]["type"], "ValueError")
        self.assertIn("boom", record["data"]["error"]["traceback"])

    def test_append_mode_keeps_previous_lines(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "run.log"
            with RunLogger.open(path) as log:
                log.info("first")
            with RunLogger.open(path, overwrite=False) as log:
                log.info("second")
            self.assertEqual([r["event"] for r in _records(path)], ["first", "second"])

    def test_null_logger_is_inert(self) -> None:
        NULL_LOG.info("ignored", x=1)
        self.assertIs(NULL_LOG.bind(query="q"), NULL_LOG)
        NULL_LOG.close()


if __name__ == "__main__":
    unittest.main()
