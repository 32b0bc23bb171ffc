from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Callable, Iterator, TypeVar

from .cancellation import CancelToken, SleepFn, pause
from .checkpoint import ResumeCheckpoint
from .config_schema import AppConfig
from .dedupe import SeenSet
from .errors import AuthError, ErrorKind, MalformedPageError, RunCancelled, ScrapeFailed
from .fetcher import AuthExpired, FatalHttpError, FetchResult, PageFetcher, RateLimited, Success
from .parser import Page, PageParser, ParsedPage
from .query import Cursor, Query, QueryMode
from .records import AuthorArena, Post
from .retry import BackoffController
from .run_log import NULL_LOG, RunLogger
from .session import Session, SessionManager
from .stagnation import StagnationTracker

T = TypeVar("T")


class DriverState(str, Enum):
    IDLE = "idle"
    FETCHING_PAGE = "fetching_page"
    PARSING_PAGE = "parsing_page"
    CONTINUING_PAGE = "continuing_page"
    EXHAUSTED = "exhausted"
    FAILED = "failed"
    CANCELLED = "cancelled"


class TerminalReason(str, Enum):
    EXHAUSTED = "exhausted"
    CANCELLED = "cancelled"
    FAILED = "failed"


class ExhaustionCause(str, Enum):
    NO_CURSOR = "no_cursor"
    EMPTY_PAGES = "empty_pages"
    CURSOR_REGRESSION = "cursor_regression"
    MAX_PAGES = "max_pages"


_TERMINAL_STATE = {
    TerminalReason.EXHAUSTED: DriverState.EXHAUSTED,
    TerminalReason.CANCELLED: DriverState.CANCELLED,
    TerminalReason.FAILED: DriverState.FAILED,
}


@dataclass
class RunStats:
    pages: int = 0
    emitted: int = 0
    duplicates: int = 0
    malformed_records: int = 0
    retries: int = 0
    rate_limited: int = 0
    auth_refreshes: int = 0
    backoff_delays: list[float] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class RunOutcome:
    """Why a run stopped. error_kind is set only for failed runs, cause only for exhausted ones."""

    reason: TerminalReason
    stats: RunStats
    error_kind: ErrorKind | None = None
    cause: ExhaustionCause | None = None
    message: str = ""
    warnings: tuple[str, ...] = ()

    @property
    def ok(self) -> bool:
        return self.reason is TerminalReason.EXHAUSTED

    def to_dict(self) -> dict[str, Any]:
        return {
            "reason": self.reason.value,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "cause": self.cause.value if self.cause else None,
            "message": self.message,
            "warnings": list(self.warnings),
            "stats": self.stats.to_dict(),
        }


class _Stop(Exception):
    """Internal: unwinds the page loop once a terminal outcome is known."""

    def __init__(
        self,
        reason: TerminalReason,
        *,
        kind: ErrorKind | None = None,
        cause: ExhaustionCause | None = None,
        message: str = "",
    ) -> None:
        super().__init__(message)
        self.reason = reason
        self.kind = kind
        self.cause = cause
        self.message = message


def _failed(kind: ErrorKind, message: str) -> _Stop:
    return _Stop(TerminalReason.FAILED, kind=kind, message=message)


def _exhausted(cause: ExhaustionCause, message: str = "") -> _Stop:
    return _Stop(TerminalReason.EXHAUSTED, cause=cause, message=message)


class ScrapeRun:
    """
    One pagination run over a single query: a lazy, single-use iterator of new Posts.

    Iterating never raises for scrape problems; when the iterator stops, `outcome`
    says why (exhausted, cancelled or failed with an ErrorKind). Use
    raise_for_outcome() to turn a failure into an exception.
    """

    def __init__(
        self,
        driver: "PaginationDriver",
        query: Query,
        *,
        cancel: CancelToken | None,
        session: Session | None,
        seen: SeenSet | None,
        user_id: int | None = None,
        prior_pages: int = 0,
        prior_emitted: int = 0,
    ) -> None:
        self._driver = driver
        self.query = query
        self.cancel_token = cancel or CancelToken()
        self.session = session
        self.seen = seen if seen is not None else SeenSet()
        self.authors = AuthorArena()
        self.cursor: Cursor | None = query.resume_cursor
        self.user_id = user_id if user_id is not None else query.user_id()
        self.stats = RunStats()
        self._prior_pages = prior_pages
        self._prior_emitted = prior_emitted
        self._state = DriverState.IDLE
        self._outcome: RunOutcome | None = None
        self._warnings: list[str] = []
        self._log = driver.logger.bind(query=query.key)
        self._gen = self._iterate()

    @property
    def state(self) -> DriverState:
        return self._state

    @property
    def outcome(self) -> RunOutcome | None:
        return self._outcome

    @property
    def finished(self) -> bool:
        return self._outcome is not None

    def __iter__(self) -> "ScrapeRun":
        return self

    def __next__(self) -> Post:
        return next(self._gen)

    def close(self) -> None:
        """Stop the run early. A run closed before it finished ends Cancelled."""
        self._gen.close()
        if self._outcome is None:
            self._finish(_Stop(TerminalReason.CANCELLED, message="run closed by consumer"))

    def cancel(self) -> None:
        self.cancel_token.cancel()

    def checkpoint(self, *, clock: Callable[[], float] = time.time) -> ResumeCheckpoint:
        return ResumeCheckpoint(
            query=self.query.with_cursor(None),
            cursor=self.cursor,
            seen=self.seen.digest(),
            session=self.session,
            pages=self._prior_pages + self.stats.pages,
            emitted=self._prior_emitted + self.stats.emitted,
            user_id=self.user_id,
            created_at=float(clock()),
        )

    def require_session(self) -> Session:
        if self.session is None:
            raise RuntimeError("run has no session yet")
        return self.session

    def require_outcome(self) -> RunOutcome:
        if self._outcome is None:
            raise RuntimeError("run has not finished yet")
        return self._outcome

    def raise_for_outcome(self) -> RunOutcome:
        outcome = self.require_outcome()
        if outcome.reason is TerminalReason.FAILED:
            raise ScrapeFailed(outcome.error_kind or ErrorKind.FATAL_HTTP, outcome.message)
        return outcome

    def _finish(self, stop: _Stop) -> None:
        if self._outcome is not None:
            return
        self._state = _TERMINAL_STATE[stop.reason]
        self._outcome = RunOutcome(
            reason=stop.reason,
            stats=self.stats,
            error_kind=stop.kind,
            cause=stop.cause,
            message=stop.message,
            warnings=tuple(self._warnings),
        )
        self._log.info(
            "run_finished",
            reason=stop.reason.value,
            error_kind=stop.kind.value if stop.kind else None,
            cause=stop.cause.value if stop.cause else None,
            message=stop.message,
            stats=self.stats.to_dict(),
        )

    def _iterate(self) -> Iterator[Post]:
        try:
            yield from self._driver._drive(self)
        except _Stop as stop:
            self._finish(stop)
        except RunCancelled as e:
            self._finish(_Stop(TerminalReason.CANCELLED, message=str(e)))
        except GeneratorExit:
            self._finish(_Stop(TerminalReason.CANCELLED, message="run closed by consumer"))
            raise
        except KeyboardInterrupt:
            self._finish(_Stop(TerminalReason.CANCELLED, message="interrupted"))
            raise
        except Exception as e:
            kind = ErrorKind.MALFORMED_PAGE if self._state is DriverState.PARSING_PAGE else ErrorKind.FATAL_HTTP
            self._log.error("run_crashed", state=self._state.value, error=f"{type(e).__name__}: {e}")
            self._finish(_failed(kind, f"unexpected {type(e).__name__}: {e}"))
            raise

    def _warn(self, event: str, message: str, **data: Any) -> None:
        self._warnings.append(message)
        self._log.warning(event, message=message, **data)


class PaginationDriver:
    """
    Drives fetch → parse → dedupe → emit for one query at a time.

    Pages are strictly sequential: each request needs the previous page's cursor.
    Retryable failures (rate limiting, network trouble, unparseable pages) share one
    per-page retry budget from the BackoffController; authentication failures refresh
    the session, at most `session.max_auth_refreshes` times per page.
    """

    def __init__(
        self,
        config: AppConfig,
        *,
        fetcher: PageFetcher,
        sessions: SessionManager,
        parser: PageParser | None = None,
        backoff: BackoffController | None = None,
        logger: RunLogger | None = None,
        sleep_fn: SleepFn | None = None,
    ) -> None:
        self.config = config
        self.fetcher = fetcher
        self.sessions = sessions
        self.logger = logger or NULL_LOG
        self.backoff = backoff or BackoffController(config.backoff)
        self._parser = parser
        self._sleep_fn = sleep_fn

    def close(self) -> None:
        for part in (self.fetcher, self.sessions):
            closer = getattr(part, "close", None)
            if callable(closer):
                closer()

    def __enter__(self) -> "PaginationDriver":
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        self.close()

    def run(
        self,
        query: Query,
        *,
        cancel: CancelToken | None = None,
        session: Session | None = None,
        seen: SeenSet | None = None,
    ) -> ScrapeRun:
        return ScrapeRun(self, query, cancel=cancel, session=session, seen=seen)

    def resume(self, checkpoint: ResumeCheckpoint, *, cancel: CancelToken | None = None) -> ScrapeRun:
        """Continue from a checkpoint without re-emitting anything it already saw."""
        if not checkpoint.seen.verify():
            raise ValueError("checkpoint seen-set digest does not match its IDs")
        return ScrapeRun(
            self,
            checkpoint.resume_query(),
            cancel=cancel,
            session=checkpoint.session,
            seen=SeenSet.from_digest(checkpoint.seen),
            user_id=checkpoint.user_id,
            prior_pages=checkpoint.pages,
            prior_emitted=checkpoint.emitted,
        )

    def _drive(self, run: ScrapeRun) -> Iterator[Post]:
        cancel = run.cancel_token
        cancel.raise_if_cancelled()

        parser = self._parser or PageParser(run._log)
        max_pages = self.config.pagination.max_pages
        stagnation = StagnationTracker(self.config.pagination.empty_page_threshold)
        seen_cursors: set[str] = set()
        if run.cursor is not None:
            seen_cursors.add(run.cursor.value)

        try:
            run.session = self.sessions.acquire(run.session)
        except AuthError as e:
            raise _failed(ErrorKind.AUTH_EXPIRED, str(e)) from e

        if run.query.mode is QueryMode.USER_TIMELINE and run.user_id is None:
            self._resolve_user(run, parser)

        while True:
            run._state = DriverState.FETCHING_PAGE
            page = self._with_retries(
                run,
                "page",
                lambda s: self.fetcher.fetch(s, run.query, run.cursor, user_id=run.user_id, cancel=cancel),
                lambda p: parser.parse(p, run.query.mode),
            )

            run.stats.pages += 1
            run.stats.malformed_records += page.malformed
            run.authors.update(page.authors)

            fresh, dupes = run.seen.partition(page.posts)
            run.stats.duplicates += dupes
            run._log.info(
                "page_parsed",
                page=run.stats.pages,
                posts=len(page.posts),
                new=len(fresh),
                duplicates=dupes,
                malformed=page.malformed,
                has_cursor=page.cursor is not None,
            )

            run._state = DriverState.CONTINUING_PAGE
            for post in fresh:
                cancel.raise_if_cancelled()
                run.seen.add(post.id)
                run.stats.emitted += 1
                yield post

            self._advance(run, page, len(fresh), stagnation, seen_cursors)

            if max_pages is not None and run.stats.pages >= max_pages:
                raise _exhausted(ExhaustionCause.MAX_PAGES, f"stopped after {run.stats.pages} pages")

    def _advance(
        self,
        run: ScrapeRun,
        page: ParsedPage,
        new_records: int,
        stagnation: StagnationTracker,
        seen_cursors: set[str],
    ) -> None:
        stalled = stagnation.push(new_records)
        nxt = page.cursor

        if nxt is None:
            run.cursor = None
            raise _exhausted(ExhaustionCause.NO_CURSOR)

        regressed = nxt.value in seen_cursors or (
            run.cursor is not None and nxt.moved_backward_from(run.cursor)
        )
        if regressed:
            msg = f"platform returned a stale cursor after page {run.stats.pages}"
            run._warn("cursor_regression", msg, cursor=nxt.value)
            raise _exhausted(ExhaustionCause.CURSOR_REGRESSION, msg)

        if stalled:
            raise _exhausted(
                ExhaustionCause.EMPTY_PAGES,
                f"{stagnation.streak} consecutive pages without new records",
            )

        seen_cursors.add(nxt.value)
        run.cursor = nxt

    def _resolve_user(self, run: ScrapeRun, parser: PageParser) -> None:
        handle = run.query.identifier
        author = self._with_retries(
            run,
            "user_lookup",
            lambda s: self.fetcher.lookup_user(s, handle, cancel=run.cancel_token),
            parser.parse_user,
        )
        if author is None:
            raise _failed(ErrorKind.FATAL_HTTP, f"user @{handle} does not exist or is unavailable")
        run.authors.add(author)
        run.user_id = author.id

    def _with_retries(
        self,
        run: ScrapeRun,
        operation: str,
        request: Callable[[Session], FetchResult],
        handle: Callable[[Page], T],
    ) -> T:
        cancel = run.cancel_token
        failures = 0
        refreshes = 0

        while True:
            cancel.raise_if_cancelled()
            session = run.require_session()
            if self.sessions.needs_refresh(session):
                session = run.session = self._refresh(run, reason="budget")

            run._state = DriverState.FETCHING_PAGE
            result = request(session)
            run.session = result.session
            outcome = result.outcome

            run._log.info(
                "page_fetched",
                url=result.url,
                operation=operation,
                outcome=type(outcome).__name__,
                status=getattr(outcome, "status", None),
            )

            if isinstance(outcome, Success):
                run._state = DriverState.PARSING_PAGE
                try:
                    return handle(outcome.page)
                except MalformedPageError as e:
                    kind, reason, hint = ErrorKind.MALFORMED_PAGE, str(e), None
            elif isinstance(outcome, FatalHttpError):
                raise _failed(ErrorKind.FATAL_HTTP, f"{operation} failed: {outcome.reason or outcome.status}")
            elif isinstance(outcome, AuthExpired):
                refreshes += 1
                if refreshes > self.config.session.max_auth_refreshes:
                    raise _failed(
                        ErrorKind.AUTH_EXPIRED,
                        f"{operation} still unauthorized after {refreshes - 1} session refreshes",
                    )
                run.session = self._refresh(run, reason=outcome.reason)
                run.stats.auth_refreshes += 1
                continue
            elif isinstance(outcome, RateLimited):
                run.stats.rate_limited += 1
                kind, reason, hint = ErrorKind.RATE_LIMITED, outcome.reason, outcome.retry_after
            else:
                kind, reason, hint = outcome.kind, outcome.reason, None

            failures += 1
            if self.backoff.exhausted(failures):
                raise _failed(kind, f"{operation} failed after {failures - 1} retries: {reason}")

            delay = self.backoff.delay_for(failures, hint)
            run.stats.retries += 1
            run._log.warning(
                "retry_scheduled",
                operation=operation,
                kind=kind.value,
                attempt=failures,
                max_retries=self.backoff.max_retries,
                delay_seconds=delay,
                retry_after_seconds=hint,
                reason=reason,
            )
            pause(delay, cancel, self._sleep_fn)
            run.stats.backoff_delays.append(delay)

    def _refresh(self, run: ScrapeRun, *, reason: str) -> Session:
        session = run.require_session()
        try:
            fresh = self.sessions.refresh(session)
        except AuthError as e:
            raise _failed(ErrorKind.AUTH_EXPIRED, f"session refresh failed: {e}") from e
        run._log.info("session_refreshed", reason=reason, request_count=fresh.request_count)
        return fresh
