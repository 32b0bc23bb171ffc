from __future__ import annotations

import argparse
import json
import sys
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path
from typing import Iterable, Sequence, TextIO

from .cancellation import CancelToken
from .config import config_sha256, load_config, resolve_runtime_secrets
from .config_schema import AppConfig
from .driver import ScrapeRun, TerminalReason
from .dry_run import run_dry_run
from .errors import ArchiveError, ConfigError, StorageError
from .failure_report import build_run_report, format_run_report
from .query import Query, QueryMode
from .records import Author, Post
from .run_log import RunLogger
from .runner import build_driver
from .storage import SQLiteStateStore

_CHECKPOINT_EVERY = 50

_EXIT_CODES = {
    TerminalReason.EXHAUSTED: 0,
    TerminalReason.FAILED: 4,
    TerminalReason.CANCELLED: 130,
}


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="twtscrape")

    subparsers = parser.add_subparsers(dest="command", required=True)

    dry = subparsers.add_parser(
        "dry-run",
        help="Scrape a few pages of one query and print a sample post.",
    )
    dry.add_argument(
        "--config",
        required=True,
        help="Path to YAML config file.",
    )
    dry.add_argument(
        "--offline",
        action="store_true",
        help="Run without network calls using canned pages.",
    )
    dry.add_argument(
        "--mode",
        choices=[m.value for m in QueryMode],
        default=QueryMode.SEARCH.value,
        help="Query mode for an online dry-run.",
    )
    dry.add_argument(
        "--query",
        help="Query identifier for an online dry-run (search term, @handle or post ID).",
    )
    dry.set_defaults(_handler=_cmd_dry_run)

    scrape = subparsers.add_parser(
        "scrape",
        help="Scrape one query until the results are exhausted.",
    )
    scrape.add_argument(
        "--config",
        required=True,
        help="Path to YAML config file.",
    )
    scrape.add_argument(
        "--mode",
        required=True,
        choices=[m.value for m in QueryMode],
        help="What the query identifier names.",
    )
    scrape.add_argument(
        "--query",
        required=True,
        help="Search term, @handle / user ID, or focal post ID.",
    )
    scrape.add_argument(
        "--out",
        required=True,
        help="Output directory for posts, state and logs.",
    )
    scrape.add_argument(
        "--resume",
        action="store_true",
        help="Continue from the last checkpoint of the same query in --out.",
    )
    scrape.add_argument(
        "--max-pages",
        type=int,
        default=None,
        help="Stop after this many pages (overrides pagination.max_pages).",
    )
    scrape.set_defaults(_handler=_cmd_scrape)

    return parser


def _eprint(message: str) -> None:
    print(message, file=sys.stderr)


def _pkg_version(name: str) -> str:
    try:
        return version(name)
    except PackageNotFoundError:
        return "unknown"


def _versions() -> dict[str, str]:
    return {
        "python": sys.version.split()[0],
        "twtscrape": _pkg_version("twtscrape"),
        "httpx": _pkg_version("httpx"),
        "pydantic": _pkg_version("pydantic"),
    }


def _parse_query(mode: str, identifier: str) -> Query:
    try:
        return Query(QueryMode(mode), identifier)
    except ValueError as e:
        raise ConfigError(f"Invalid query: {e}") from e


def _with_max_pages(cfg: AppConfig, max_pages: int | None) -> AppConfig:
    if max_pages is None:
        return cfg
    if max_pages < 1:
        raise ConfigError("--max-pages must be >= 1")
    pagination = cfg.pagination.model_copy(update={"max_pages": max_pages})
    return cfg.model_copy(update={"pagination": pagination})


def _cmd_dry_run(args: argparse.Namespace) -> int:
    cfg = load_config(args.config)

    if bool(getattr(args, "offline", False)):
        result = run_dry_run(cfg, offline=True)
    else:
        secrets = resolve_runtime_secrets(cfg)
        if not (args.query or "").strip():
            raise ConfigError("--query is required for an online dry-run")
        result = run_dry_run(cfg, secrets, query=_parse_query(args.mode, args.query))

    print(f"query={result.query}")
    print(f"pages={result.pages}")
    print(f"emitted={result.emitted}")
    print(f"authors={result.authors}")
    print(f"reason={result.reason}")
    print("example_post=")
    print(json.dumps(result.example_post, indent=2, ensure_ascii=False, sort_keys=True))

    return 0


def _write_jsonl(fp: TextIO, payload: dict) -> None:
    fp.write(json.dumps(payload, ensure_ascii=False, sort_keys=True) + "\n")
    fp.flush()


def write_authors_jsonl(path: Path, authors: Iterable[Author], *, merge: bool = False) -> int:
    """
    Write one JSON object per author, keyed by author ID.

    With merge=True, authors already in the file are kept and updated in place, so a
    resumed scrape still lists the authors of posts emitted before the interruption.
    """
    rows: dict[str, dict] = {}
    if merge and path.exists():
        with path.open("r", encoding="utf-8") as fp:
            for line in fp:
                if not line.strip():
                    continue
                row = json.loads(line)
                rows[str(row["id"])] = row

    for author in authors:
        row = author.to_dict()
        rows[row["id"]] = row

    with path.open("w", encoding="utf-8", newline="\n") as fp:
        for row in rows.values():
            _write_jsonl(fp, row)
    return len(rows)


def _drain(
    run: ScrapeRun,
    *,
    store: SQLiteStateStore,
    run_id: str,
    posts_fp: TextIO,
    log: RunLogger,
) -> None:
    pending: list[Post] = []

    def _flush() -> None:
        store.upsert_posts(pending, run_id=run_id)
        pending.clear()
        store.save_checkpoint(run_id, run.checkpoint())

    try:
        for post in run:
            _write_jsonl(posts_fp, post.to_dict())
            pending.append(post)
            if len(pending) >= _CHECKPOINT_EVERY:
                _flush()
    except KeyboardInterrupt:
        log.warning("scrape_interrupted")
        run.close()

    _flush()


def _cmd_scrape(args: argparse.Namespace) -> int:
    out_dir = Path(args.out)
    out_dir.mkdir(parents=True, exist_ok=True)

    log_path = out_dir / "run.log"
    posts_path = out_dir / "posts.jsonl"
    authors_path = out_dir / "authors.jsonl"
    db_path = out_dir / "state.sqlite"

    with RunLogger.open(log_path, overwrite=not args.resume) as log:
        log.info(
            "scrape_command_started",
            config_path=str(args.config),
            out_dir=str(out_dir),
            mode=args.mode,
            query=args.query,
            resume=bool(args.resume),
        )

        try:
            cfg = _with_max_pages(load_config(args.config), args.max_pages)
            secrets = resolve_runtime_secrets(cfg)
            query = _parse_query(args.mode, args.query)

            with SQLiteStateStore.open(db_path) as store:
                checkpoint = store.latest_checkpoint(query) if args.resume else None
                record = store.create_run(query, config_hash=config_sha256(cfg), versions=_versions())
                log.set_run_id(record.run_id)
                log.info(
                    "run_started",
                    query=query.key,
                    resumed=checkpoint is not None,
                    resumed_pages=checkpoint.pages if checkpoint else 0,
                )

                cancel = CancelToken()
                with build_driver(cfg, secrets, logger=log) as driver:
                    run = driver.resume(checkpoint, cancel=cancel) if checkpoint else driver.run(query, cancel=cancel)

                    mode = "a" if checkpoint is not None else "w"
                    with posts_path.open(mode, encoding="utf-8", newline="\n") as posts_fp:
                        _drain(run, store=store, run_id=record.run_id, posts_fp=posts_fp, log=log)

                outcome = run.require_outcome()

                store.upsert_authors(run.authors)
                store.finish_run(record.run_id, outcome)

            author_count = write_authors_jsonl(authors_path, run.authors, merge=checkpoint is not None)

            report = build_run_report(outcome, cfg)
            log.info("run_report", report=report)

            print(f"status={outcome.reason.value}")
            if outcome.cause is not None:
                print(f"cause={outcome.cause.value}")
            if outcome.error_kind is not None:
                print(f"error_kind={outcome.error_kind.value}")
            print(f"run_id={record.run_id}")
            print(f"pages={outcome.stats.pages}")
            print(f"emitted={outcome.stats.emitted}")
            print(f"duplicates={outcome.stats.duplicates}")
            print(f"malformed_records={outcome.stats.malformed_records}")
            print(f"retries={outcome.stats.retries}")
            print(f"authors={author_count}")
            print(f"posts_jsonl={posts_path}")
            print(f"authors_jsonl={authors_path}")
            print(f"state_db={db_path}")
            print(f"run_log={log_path}")

            if outcome.reason is not TerminalReason.EXHAUSTED or outcome.warnings:
                _eprint(format_run_report(report))

            return _EXIT_CODES[outcome.reason]
        except Exception as e:
            log.exception("scrape_command_failed", exc=e)
            raise


def main(argv: Sequence[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)

    try:
        handler = getattr(args, "_handler")
        return int(handler(args))
    except ConfigError as e:
        _eprint(str(e))
        return 2
    except (StorageError, ArchiveError) as e:
        _eprint(str(e))
        return 3
    except KeyboardInterrupt:
        _eprint("Interrupted")
        return 130
    except Exception as e:
        _eprint(f"Unexpected error: {e}")
        return 1
