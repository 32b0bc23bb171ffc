from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Sequence

from .cancellation import CancelToken
from .fetcher import FetchResult, Success
from .parser import JsonPage
from .query import Cursor, Query
from .session import Session

_OFFLINE_EPOCH = datetime(2023, 5, 1, 12, 0, tzinfo=timezone.utc)
_OFFLINE_USER_ID = 783214
_OFFLINE_CURSOR_PREFIX = "offline-cursor-"

_OFFLINE_TEXTS = (
    "Shipping a small parser fix today. Tests first, then the refactor.",
    "Reading through the changelog before upgrading anything in production.",
    "Profiling showed the hot loop was JSON decoding, not the network.",
    "Retry with backoff and jitter, and cap it. Unbounded retries are an outage.",
)


def _platform_date(dt: datetime) -> str:
    return dt.strftime("%a %b %d %H:%M:%S +0000 %Y")


def user_result(
    user_id: int,
    handle: str,
    *,
    name: str | None = None,
    followers: int = 0,
) -> dict[str, Any]:
    """A GraphQL user_results.result object."""
    return {
        "__typename": "User",
        "rest_id": str(user_id),
        "legacy": {
            "screen_name": handle,
            "name": name or handle,
            "description": "",
            "followers_count": followers,
            "friends_count": 0,
            "statuses_count": 0,
            "created_at": _platform_date(_OFFLINE_EPOCH - timedelta(days=900)),
        },
    }


def tweet_result(
    post_id: int,
    *,
    user_id: int = _OFFLINE_USER_ID,
    handle: str = "offline",
    text: str | None = None,
    created_at: datetime | None = None,
    likes: int = 0,
) -> dict[str, Any]:
    """A GraphQL tweet_results.result object with its author embedded."""
    when = created_at or (_OFFLINE_EPOCH - timedelta(minutes=post_id % 10_000))
    return {
        "__typename": "Tweet",
        "rest_id": str(post_id),
        "core": {"user_results": {"result": user_result(user_id, handle)}},
        "legacy": {
            "full_text": text if text is not None else _OFFLINE_TEXTS[post_id % len(_OFFLINE_TEXTS)],
            "created_at": _platform_date(when),
            "favorite_count": likes,
            "retweet_count": 0,
            "reply_count": 0,
            "quote_count": 0,
            "user_id_str": str(user_id),
            "conversation_id_str": str(post_id),
            "lang": "en",
        },
    }


def tweet_entry(result: dict[str, Any]) -> dict[str, Any]:
    return {
        "entryId": f"tweet-{result.get('rest_id', '0')}",
        "content": {
            "entryType": "TimelineTimelineItem",
            "itemContent": {"itemType": "TimelineTweet", "tweet_results": {"result": result}},
        },
    }


def cursor_entry(value: str, *, cursor_type: str = "Bottom") -> dict[str, Any]:
    return {
        "entryId": f"cursor-{cursor_type.lower()}-{value}",
        "content": {
            "entryType": "TimelineTimelineCursor",
            "cursorType": cursor_type,
            "value": value,
        },
    }


def timeline_page(entries: Sequence[dict[str, Any]], *, cursor: str | None = None) -> dict[str, Any]:
    """A UserTweetsAndReplies-shaped response holding `entries` and an optional bottom cursor."""
    all_entries = list(entries)
    if cursor is not None:
        all_entries.append(cursor_entry(cursor))
    return {
        "data": {
            "user": {
                "result": {
                    "__typename": "User",
                    "timeline_v2": {
                        "timeline": {
                            "instructions": [
                                {"type": "TimelineClearCache"},
                                {"type": "TimelineAddEntries", "entries": all_entries},
                            ]
                        }
                    },
                }
            }
        }
    }


def user_page(result: dict[str, Any] | None) -> dict[str, Any]:
    """A UserByScreenName-shaped response; None builds the not-found shape."""
    return {"data": {"user": {"result": result}} if result is not None else {}}


def build_offline_pages(page_sizes: Sequence[int] = (10, 10, 4), *, first_id: int = 1_650_000_000_000_000_000) -> list[dict[str, Any]]:
    """
    Canned timeline pages: one page per size, newest IDs first, chained by cursors,
    followed by a final empty page without a cursor.
    """
    pages: list[dict[str, Any]] = []
    next_id = first_id
    for n, size in enumerate(page_sizes):
        entries = []
        for _ in range(size):
            entries.append(tweet_entry(tweet_result(next_id)))
            next_id -= 1
        pages.append(timeline_page(entries, cursor=f"{_OFFLINE_CURSOR_PREFIX}{n + 1}"))
    pages.append(timeline_page([]))
    return pages


class OfflinePageFetcher:
    """
    Network-free fetcher for dry-run smoke checks.

    Serves canned pages in order; the cursor value encodes the next page index.
    """

    def __init__(self, pages: Sequence[dict[str, Any]] | None = None, *, handle: str = "offline") -> None:
        self.pages = list(pages) if pages is not None else build_offline_pages()
        self.handle = handle
        self.requests = 0

    def close(self) -> None:
        return None

    def fetch(
        self,
        session: Session,
        query: Query,
        cursor: Cursor | None,
        *,
        user_id: int | None = None,
        cancel: CancelToken | None = None,
    ) -> FetchResult:
        if cancel is not None:
            cancel.raise_if_cancelled()
        self.requests += 1

        index = 0
        if cursor is not None and cursor.value.startswith(_OFFLINE_CURSOR_PREFIX):
            index = int(cursor.value[len(_OFFLINE_CURSOR_PREFIX) :])

        data = self.pages[index] if index < len(self.pages) else timeline_page([])
        return FetchResult(
            outcome=Success(page=JsonPage(data=data, url=f"offline://page/{index}"), status=200),
            session=session.after_request(),
            url=f"offline://page/{index}",
        )

    def lookup_user(self, session: Session, handle: str, *, cancel: CancelToken | None = None) -> FetchResult:
        if cancel is not None:
            cancel.raise_if_cancelled()
        self.requests += 1
        data = user_page(user_result(_OFFLINE_USER_ID, handle))
        return FetchResult(
            outcome=Success(page=JsonPage(data=data, url="offline://user"), status=200),
            session=session.after_request(),
            url="offline://user",
        )


class OfflineSessionManager:
    """Hands out a fixed guest session; never talks to the network."""

    def __init__(self, *, user_agent: str = "twtscrape-offline") -> None:
        self.user_agent = user_agent
        self.refreshes = 0

    def close(self) -> None:
        return None

    def acquire(self, persisted: Session | None = None) -> Session:
        if persisted is not None:
            return persisted
        return Session(bearer_token="offline", user_agent=self.user_agent, guest_token="offline-guest")

    def refresh(self, session: Session) -> Session:
        self.refreshes += 1
        fresh = self.acquire()
        return Session(
            bearer_token=fresh.bearer_token,
            user_agent=fresh.user_agent,
            guest_token=f"offline-guest-{self.refreshes}",
            request_count=session.request_count,
        )

    def needs_refresh(self, session: Session) -> bool:
        return False
