from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Callable, Iterable

import httpx

from .cancellation import CancelToken, SleepFn
from .checkpoint import ResumeCheckpoint
from .config import RuntimeSecrets
from .config_schema import AppConfig
from .driver import PaginationDriver, RunOutcome
from .fetcher import PageFetcher
from .query import Query
from .rate_limit import RateLimiter
from .records import Author, Post
from .run_log import NULL_LOG, RunLogger
from .session import SessionManager

DriverFactory = Callable[[], PaginationDriver]
OnPostFn = Callable[[Query, Post], None]


@dataclass(frozen=True)
class QueryResult:
    query: Query
    posts: list[Post]
    authors: list[Author]
    outcome: RunOutcome
    checkpoint: ResumeCheckpoint


def build_driver(
    config: AppConfig,
    secrets: RuntimeSecrets,
    *,
    limiter: RateLimiter | None = None,
    logger: RunLogger | None = None,
    client: httpx.Client | None = None,
    sleep_fn: SleepFn | None = None,
) -> PaginationDriver:
    """
    Wire a PaginationDriver to the live platform.

    Pass the same `limiter` to every driver that shares a credential pool.
    """
    fetcher = PageFetcher(
        config.http,
        limiter=limiter or RateLimiter.from_config(config.rate_limit),
        client=client,
    )
    sessions = SessionManager(config, secrets, client=client)
    return PaginationDriver(
        config,
        fetcher=fetcher,
        sessions=sessions,
        logger=logger,
        sleep_fn=sleep_fn,
    )


def unique_queries(queries: Iterable[Query]) -> list[Query]:
    out: list[Query] = []
    seen: set[str] = set()
    for q in queries:
        if q.key in seen:
            continue
        seen.add(q.key)
        out.append(q)
    return out


def scrape_query(
    driver: PaginationDriver,
    query: Query,
    *,
    cancel: CancelToken | None = None,
    on_post: OnPostFn | None = None,
) -> QueryResult:
    run = driver.run(query, cancel=cancel)
    posts: list[Post] = []
    for post in run:
        posts.append(post)
        if on_post is not None:
            on_post(query, post)

    return QueryResult(
        query=query,
        posts=posts,
        authors=list(run.authors),
        outcome=run.require_outcome(),
        checkpoint=run.checkpoint(),
    )


def run_queries(
    queries: Iterable[Query],
    *,
    config: AppConfig,
    secrets: RuntimeSecrets | None = None,
    driver_factory: DriverFactory | None = None,
    max_workers: int = 4,
    cancel: CancelToken | None = None,
    logger: RunLogger | None = None,
    on_post: OnPostFn | None = None,
) -> dict[str, QueryResult]:
    """
    Scrape independent queries in parallel, one driver (and session) per query.

    Every default driver draws on one shared RateLimiter. Identical queries are scraped
    once. Results are keyed by Query.key.
    """
    todo = unique_queries(queries)
    if not todo:
        return {}

    log = logger or NULL_LOG
    token = cancel or CancelToken()

    factory = driver_factory
    if factory is None:
        if secrets is None:
            raise ValueError("secrets are required when no driver_factory is given")
        limiter = RateLimiter.from_config(config.rate_limit)
        creds = secrets

        def factory() -> PaginationDriver:
            return build_driver(config, creds, limiter=limiter, logger=log)

    results: dict[str, QueryResult] = {}
    workers = max(1, min(int(max_workers), len(todo)))

    def _one(query: Query) -> QueryResult:
        with factory() as driver:
            return scrape_query(driver, query, cancel=token, on_post=on_post)

    with ThreadPoolExecutor(max_workers=workers) as ex:
        futures = {ex.submit(_one, q): q for q in todo}
        for fut in as_completed(futures):
            res = fut.result()
            results[res.query.key] = res
            log.info(
                "query_finished",
                query=res.query.key,
                reason=res.outcome.reason.value,
                emitted=res.outcome.stats.emitted,
                done=len(results),
                total=len(todo),
            )

    return results
