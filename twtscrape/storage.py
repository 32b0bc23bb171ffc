from __future__ import annotations

import json
import sqlite3
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Mapping

from .archive import decode_checkpoint, decode_post, encode_author, encode_checkpoint, encode_post
from .checkpoint import ResumeCheckpoint
from .driver import RunOutcome
from .errors import ArchiveError, StorageError
from .query import Query
from .records import Author, Post
from .storage_schema import initialize_sqlite


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _json_dumps(value: Any) -> str:
    return json.dumps(
        value,
        ensure_ascii=False,
        sort_keys=True,
        separators=(",", ":"),
        default=str,
    )


def _json_dict(raw: str | None) -> dict[str, Any]:
    try:
        value = json.loads((raw or "{}").strip() or "{}")
    except ValueError:
        return {}
    return value if isinstance(value, dict) else {}


@dataclass(frozen=True)
class RunRecord:
    run_id: str
    query_key: str
    started_at: str
    ended_at: str | None
    reason: str | None
    error_kind: str | None
    cause: str | None
    message: str | None
    stats: dict[str, Any]
    config_hash: str
    versions: dict[str, str]


class SQLiteStateStore:
    """
    Small persistence layer for resumable scrape runs.

    Runs, their checkpoints, and every post and author seen so far. Posts, authors and
    checkpoints are stored in the archival encoding.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn
        self._conn.row_factory = sqlite3.Row

    @classmethod
    def open(cls, path: str | Path) -> "SQLiteStateStore":
        db_path = str(path)
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)

        try:
            conn = sqlite3.connect(db_path)
        except sqlite3.DatabaseError as e:
            raise StorageError(f"Failed to open sqlite database: {db_path}: {e}") from e

        try:
            initialize_sqlite(conn)
        except (sqlite3.DatabaseError, RuntimeError) as e:
            conn.close()
            raise StorageError(f"Failed to initialize sqlite schema: {e}") from e

        return cls(conn)

    def close(self) -> None:
        self._conn.close()

    def __enter__(self) -> "SQLiteStateStore":
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        self.close()

    @property
    def conn(self) -> sqlite3.Connection:
        return self._conn

    def create_run(
        self,
        query: Query,
        *,
        config_hash: str,
        versions: Mapping[str, str] | None = None,
        run_id: str | None = None,
        started_at: str | None = None,
    ) -> RunRecord:
        rid = (run_id or uuid.uuid4().hex).strip()
        if not rid:
            raise ValueError("run_id must be non-empty")

        cfg_hash = (config_hash or "").strip()
        if not cfg_hash:
            raise ValueError("config_hash must be non-empty")

        start = (started_at or _utc_now_iso()).strip()

        try:
            with self._conn:
                self._conn.execute(
                    """
                    INSERT OR IGNORE INTO runs(
                      run_id, query_key, query_mode, query_identifier, started_at,
                      config_hash, versions_json
                    ) VALUES (?, ?, ?, ?, ?, ?, ?)
                    """.strip(),
                    (
                        rid,
                        query.key,
                        query.mode.value,
                        query.identifier,
                        start,
                        cfg_hash,
                        _json_dumps(dict(versions or {})),
                    ),
                )
        except sqlite3.DatabaseError as e:
            raise StorageError(f"Failed to create run record: {e}") from e

        record = self.get_run(rid)
        if record is None:
            raise StorageError("Failed to read run record after insert")
        return record

    def finish_run(self, run_id: str, outcome: RunOutcome, *, ended_at: str | None = None) -> None:
        rid = (run_id or "").strip()
        if not rid:
            raise ValueError("run_id must be non-empty")

        end = (ended_at or _utc_now_iso()).strip()

        try:
            with self._conn:
                self._conn.execute(
                    """
                    UPDATE runs SET
                      ended_at = ?, reason = ?, error_kind = ?, cause = ?, message = ?, stats_json = ?
                    WHERE run_id = ?
                    """.strip(),
                    (
                        end,
                        outcome.reason.value,
                        outcome.error_kind.value if outcome.error_kind else None,
                        outcome.cause.value if outcome.cause else None,
                        outcome.message or None,
                        _json_dumps(outcome.stats.to_dict()),
                        rid,
                    ),
                )
        except sqlite3.DatabaseError as e:
            raise StorageError(f"Failed to finish run: {e}") from e

    def get_run(self, run_id: str) -> RunRecord | None:
        rid = (run_id or "").strip()
        if not rid:
            raise ValueError("run_id must be non-empty")

        row = self._conn.execute(
            """
            SELECT run_id, query_key, started_at, ended_at, reason, error_kind, cause, message,
                   stats_json, config_hash, versions_json
            FROM runs WHERE run_id = ?
            """.strip(),
            (rid,),
        ).fetchone()
        if row is None:
            return None

        versions = _json_dict(row["versions_json"])
        return RunRecord(
            run_id=str(row["run_id"]),
            query_key=str(row["query_key"]),
            started_at=str(row["started_at"]),
            ended_at=str(row["ended_at"]) if row["ended_at"] is not None else None,
            reason=row["reason"],
            error_kind=row["error_kind"],
            cause=row["cause"],
            message=row["message"],
            stats=_json_dict(row["stats_json"]),
            config_hash=str(row["config_hash"]),
            versions={str(k): str(v) for k, v in versions.items()},
        )

    def save_checkpoint(self, run_id: str, checkpoint: ResumeCheckpoint, *, created_at: str | None = None) -> None:
        rid = (run_id or "").strip()
        if not rid:
            raise ValueError("run_id must be non-empty")

        blob = encode_checkpoint(checkpoint)
        ts = (created_at or _utc_now_iso()).strip()

        try:
            with self._conn:
                self._conn.execute(
                    """
                    INSERT INTO checkpoints(run_id, query_key, pages, emitted, archive, created_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """.strip(),
                    (rid, checkpoint.query.key, checkpoint.pages, checkpoint.emitted, blob, ts),
                )
        except sqlite3.IntegrityError as e:
            raise StorageError("Failed to save checkpoint; create the run first") from e
        except sqlite3.DatabaseError as e:
            raise StorageError(f"Failed to save checkpoint: {e}") from e

    def latest_checkpoint(self, query: Query) -> ResumeCheckpoint | None:
        """
        Most recent checkpoint for `query`, or None when there is nothing to resume.

        A newest checkpoint without a cursor means the query was walked to the end.
        """
        row = self._conn.execute(
            "SELECT archive FROM checkpoints WHERE query_key = ? ORDER BY id DESC LIMIT 1",
            (query.key,),
        ).fetchone()
        if row is None:
            return None

        try:
            checkpoint = decode_checkpoint(bytes(row["archive"]))
        except ArchiveError as e:
            raise StorageError(f"Stored checkpoint could not be decoded: {e}") from e

        return None if checkpoint.finished else checkpoint

    def upsert_posts(self, posts: Iterable[Post], *, run_id: str | None = None, fetched_at: str | None = None) -> int:
        ts = (fetched_at or _utc_now_iso()).strip()
        rows = [
            (p.id, p.author_id, p.created_at.isoformat(), encode_post(p), run_id, ts)
            for p in posts
        ]
        if not rows:
            return 0

        try:
            with self._conn:
                self._conn.executemany(
                    """
                    INSERT INTO posts(post_id, author_id, created_at, archive, first_run_id, fetched_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    ON CONFLICT(post_id) DO UPDATE SET
                      archive = excluded.archive,
                      fetched_at = excluded.fetched_at
                    """.strip(),
                    rows,
                )
        except sqlite3.DatabaseError as e:
            raise StorageError(f"Failed to upsert posts: {e}") from e
        return len(rows)

    def upsert_authors(self, authors: Iterable[Author], *, updated_at: str | None = None) -> int:
        ts = (updated_at or _utc_now_iso()).strip()
        rows = [(a.id, a.handle, encode_author(a), ts) for a in authors]
        if not rows:
            return 0

        try:
            with self._conn:
                self._conn.executemany(
                    """
                    INSERT INTO authors(author_id, handle, archive, updated_at)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(author_id) DO UPDATE SET
                      handle = excluded.handle,
                      archive = excluded.archive,
                      updated_at = excluded.updated_at
                    """.strip(),
                    rows,
                )
        except sqlite3.DatabaseError as e:
            raise StorageError(f"Failed to upsert authors: {e}") from e
        return len(rows)

    def post_ids(self, *, limit: int | None = None) -> set[int]:
        if limit is not None and limit <= 0:
            return set()

        sql = "SELECT post_id FROM posts"
        params: tuple[Any, ...] = ()
        if limit is not None:
            sql += " LIMIT ?"
            params = (int(limit),)

        rows = self._conn.execute(sql, params).fetchall()
        return {int(r["post_id"]) for r in rows}

    def get_post(self, post_id: int) -> Post | None:
        row = self._conn.execute(
            "SELECT archive FROM posts WHERE post_id = ?",
            (int(post_id),),
        ).fetchone()
        if row is None:
            return None

        try:
            return decode_post(bytes(row["archive"]))
        except ArchiveError as e:
            raise StorageError(f"Stored post {post_id} could not be decoded: {e}") from e

    def post_count(self) -> int:
        row = self._conn.execute("SELECT COUNT(1) AS n FROM posts").fetchone()
        return int(row["n"]) if row is not None else 0

    def author_count(self) -> int:
        row = self._conn.execute("SELECT COUNT(1) AS n FROM authors").fetchone()
        return int(row["n"]) if row is not None else 0
