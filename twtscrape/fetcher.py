from __future__ import annotations

import json
import time
from dataclasses import dataclass
from datetime import timezone
from email.utils import parsedate_to_datetime
from typing import Any, Callable, Union

import httpx

from .cancellation import CancelToken
from .config_schema import HttpConfig
from .endpoints import build_http_client, page_request, user_lookup_request
from .errors import ErrorKind, RunCancelled
from .parser import HtmlPage, JsonPage, Page
from .query import Cursor, Query
from .rate_limit import RateLimiter
from .session import Session

ClockFn = Callable[[], float]

IGNORED_ERROR_CODES = frozenset({37})
RATE_LIMIT_ERROR_CODES = frozenset({88})
AUTH_ERROR_CODES = frozenset({89, 215, 239, 353})


@dataclass(frozen=True)
class Success:
    page: Page
    status: int

    kind = None


@dataclass(frozen=True)
class RateLimited:
    retry_after: float | None
    status: int = 429
    reason: str = "rate limited"

    kind = ErrorKind.RATE_LIMITED


@dataclass(frozen=True)
class AuthExpired:
    status: int
    reason: str = "authentication rejected"

    kind = ErrorKind.AUTH_EXPIRED


@dataclass(frozen=True)
class TransientNetworkError:
    reason: str
    status: int | None = None

    kind = ErrorKind.TRANSIENT_NETWORK


@dataclass(frozen=True)
class FatalHttpError:
    status: int
    reason: str = ""

    kind = ErrorKind.FATAL_HTTP


FetchOutcome = Union[Success, RateLimited, AuthExpired, TransientNetworkError, FatalHttpError]


@dataclass(frozen=True)
class FetchResult:
    """One classified response plus the Session as it stands after the request."""

    outcome: FetchOutcome
    session: Session
    url: str | None = None


def _platform_error_codes(data: Any) -> set[int]:
    if not isinstance(data, dict):
        return set()
    errors = data.get("errors")
    if not isinstance(errors, list):
        return set()

    codes: set[int] = set()
    for err in errors:
        if not isinstance(err, dict):
            continue
        code = err.get("code")
        if isinstance(code, int) and not isinstance(code, bool):
            codes.add(code)
        elif isinstance(code, str) and code.strip().isdecimal():
            codes.add(int(code.strip()))
    return codes - IGNORED_ERROR_CODES


def _parse_int(value: str | None) -> int | None:
    v = (value or "").strip()
    if not v:
        return None
    try:
        return int(float(v))
    except ValueError:
        return None


def retry_after_hint(headers: httpx.Headers, *, now: float) -> float | None:
    """
    Seconds the platform asked us to wait, from Retry-After or x-rate-limit-reset.

    Retry-After may be delta-seconds or an HTTP date; x-rate-limit-reset is an epoch.
    """
    raw = (headers.get("retry-after") or "").strip()
    if raw:
        try:
            return max(0.0, float(raw))
        except ValueError:
            pass
        try:
            when = parsedate_to_datetime(raw)
        except (TypeError, ValueError):
            when = None
        if when is not None:
            if when.tzinfo is None:
                when = when.replace(tzinfo=timezone.utc)
            return max(0.0, when.timestamp() - now)

    reset = _parse_int(headers.get("x-rate-limit-reset"))
    if reset is not None:
        return max(0.0, float(reset) - now)
    return None


def page_from_response(resp: httpx.Response) -> Page:
    """Tag a response body as JSON or HTML."""
    try:
        url: str | None = str(resp.request.url)
    except RuntimeError:
        url = None
    text = resp.text
    ctype = (resp.headers.get("content-type") or "").lower()

    if "json" in ctype or text.lstrip().startswith(("{", "[")):
        try:
            return JsonPage(data=json.loads(text), url=url)
        except ValueError:
            pass
    return HtmlPage(html=text, url=url)


def classify_response(resp: httpx.Response, *, now: float) -> FetchOutcome:
    status = int(resp.status_code)
    page = page_from_response(resp)
    codes = _platform_error_codes(page.data) if isinstance(page, JsonPage) else set()

    if codes & RATE_LIMIT_ERROR_CODES or status == 429:
        return RateLimited(
            retry_after=retry_after_hint(resp.headers, now=now),
            status=status,
            reason=f"HTTP {status}" + (" code 88" if codes & RATE_LIMIT_ERROR_CODES else ""),
        )

    if codes & AUTH_ERROR_CODES:
        return AuthExpired(status=status, reason=f"platform error codes {sorted(codes & AUTH_ERROR_CODES)}")

    if 200 <= status < 300:
        return Success(page=page, status=status)

    if status == 401:
        return AuthExpired(status=status, reason="HTTP 401")

    if status == 408 or status >= 500:
        return TransientNetworkError(reason=f"HTTP {status}", status=status)

    return FatalHttpError(status=status, reason=f"HTTP {status}")


class PageFetcher:
    """
    Issues exactly one HTTP request per call and classifies the outcome.

    The shared rate limiter is consulted before every request. The fetcher never retries
    and never raises for HTTP or network problems; the only exception it lets out is
    RunCancelled, including for a response that arrives after cancellation.
    """

    def __init__(
        self,
        http: HttpConfig,
        *,
        limiter: RateLimiter | None = None,
        client: httpx.Client | None = None,
        clock: ClockFn | None = None,
    ) -> None:
        self._http = http
        self._limiter = limiter
        self._owns_client = client is None
        self._client = client if client is not None else build_http_client(http)
        self._clock = clock or time.time

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> "PageFetcher":
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        self.close()

    def fetch(
        self,
        session: Session,
        query: Query,
        cursor: Cursor | None,
        *,
        user_id: int | None = None,
        cancel: CancelToken | None = None,
    ) -> FetchResult:
        url, params = page_request(self._http, query, cursor, user_id=user_id)
        return self._request(session, url, params, cancel)

    def lookup_user(self, session: Session, handle: str, *, cancel: CancelToken | None = None) -> FetchResult:
        url, params = user_lookup_request(self._http, handle)
        return self._request(session, url, params, cancel)

    def _request(
        self,
        session: Session,
        url: str,
        params: dict[str, str],
        cancel: CancelToken | None,
    ) -> FetchResult:
        if self._limiter is not None:
            self._limiter.acquire(cancel)
        elif cancel is not None:
            cancel.raise_if_cancelled()

        try:
            resp = self._client.get(
                url,
                params=params,
                headers=session.headers(),
                timeout=self._http.request_timeout_seconds,
            )
        except httpx.TimeoutException as e:
            self._raise_if_cancelled(cancel)
            return FetchResult(
                outcome=TransientNetworkError(reason=f"timeout: {type(e).__name__}"),
                session=session.after_request(),
                url=url,
            )
        except httpx.TransportError as e:
            self._raise_if_cancelled(cancel)
            return FetchResult(
                outcome=TransientNetworkError(reason=f"transport: {type(e).__name__}"),
                session=session.after_request(),
                url=url,
            )
        except httpx.RequestError as e:
            self._raise_if_cancelled(cancel)
            return FetchResult(
                outcome=FatalHttpError(status=0, reason=f"request failed: {type(e).__name__}"),
                session=session.after_request(),
                url=url,
            )

        self._raise_if_cancelled(cancel)

        now = float(self._clock())
        updated = session.after_request(
            cookies=dict(resp.cookies),
            budget_remaining=_parse_int(resp.headers.get("x-rate-limit-remaining")),
            budget_reset_at=_parse_int(resp.headers.get("x-rate-limit-reset")),
        )
        return FetchResult(outcome=classify_response(resp, now=now), session=updated, url=str(resp.url))

    @staticmethod
    def _raise_if_cancelled(cancel: CancelToken | None) -> None:
        # The response is discarded: a cancelled run must not advance.
        if cancel is not None and cancel.cancelled:
            raise RunCancelled("run cancelled during request")
