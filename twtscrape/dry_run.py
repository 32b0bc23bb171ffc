from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from .config import RuntimeSecrets
from .config_schema import AppConfig
from .driver import PaginationDriver
from .offline import OfflinePageFetcher, OfflineSessionManager
from .query import Query, QueryMode
from .run_log import RunLogger
from .runner import build_driver

_DRY_RUN_MAX_PAGES = 3
_DRY_RUN_OFFLINE_QUERY = Query(QueryMode.USER_TIMELINE, "offline")


@dataclass(frozen=True)
class DryRunResult:
    query: str
    pages: int
    emitted: int
    authors: int
    reason: str
    example_post: dict[str, Any]


def _dry_run_config(config: AppConfig, max_pages: int) -> AppConfig:
    pagination = config.pagination.model_copy(update={"max_pages": max_pages})
    return config.model_copy(update={"pagination": pagination})


def run_dry_run(
    config: AppConfig,
    secrets: RuntimeSecrets | None = None,
    *,
    query: Query | None = None,
    offline: bool = False,
    driver: PaginationDriver | None = None,
    logger: RunLogger | None = None,
    max_pages: int = _DRY_RUN_MAX_PAGES,
) -> DryRunResult:
    """
    Scrape a few pages of one query end to end and report what came back.

    With offline=True the canned pages in `offline` are used and nothing touches the
    network. Raises RuntimeError when the run failed or produced no posts.
    """
    cfg = _dry_run_config(config, max_pages)

    if driver is None:
        if offline:
            driver = PaginationDriver(
                cfg,
                fetcher=OfflinePageFetcher(),  # type: ignore[arg-type]
                sessions=OfflineSessionManager(),  # type: ignore[arg-type]
                logger=logger,
            )
        else:
            if secrets is None:
                raise ValueError("secrets are required for an online dry-run")
            driver = build_driver(cfg, secrets, logger=logger)

    q = query or _DRY_RUN_OFFLINE_QUERY
    with driver:
        run = driver.run(q)
        example: dict[str, Any] | None = None
        for post in run:
            if example is None:
                author = run.authors.resolve(post)
                example = post.to_dict()
                example["permalink"] = post.permalink(author.handle if author else None)

    outcome = run.raise_for_outcome()
    if example is None:
        raise RuntimeError(f"Dry-run did not produce any posts for {q.key}")

    return DryRunResult(
        query=q.key,
        pages=outcome.stats.pages,
        emitted=outcome.stats.emitted,
        authors=len(run.authors),
        reason=outcome.reason.value,
        example_post=example,
    )
