from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, Iterator, Mapping, Union

from bs4 import BeautifulSoup
from bs4.element import Tag

from .errors import MalformedPageError, MalformedRecordError
from .normalize import (
    author_from_legacy,
    author_from_user_result,
    parse_timestamp,
    post_from_legacy,
    post_from_tweet_result,
)
from .query import Cursor, QueryMode
from .records import Author, Engagement, Post
from .run_log import NULL_LOG, RunLogger


@dataclass(frozen=True)
class JsonPage:
    data: Any
    url: str | None = None


@dataclass(frozen=True)
class HtmlPage:
    html: str
    url: str | None = None


Page = Union[JsonPage, HtmlPage]


@dataclass(frozen=True)
class ParsedPage:
    """Records extracted from one page, in page order, plus the cursor for the next page."""

    posts: tuple[Post, ...]
    authors: tuple[Author, ...]
    cursor: Cursor | None
    malformed: int = 0

    @property
    def empty(self) -> bool:
        return not self.posts


class _Collector:
    def __init__(self, parser: "PageParser", url: str | None) -> None:
        self._parser = parser
        self._url = url
        self.posts: list[Post] = []
        self.authors: dict[int, Author] = {}
        self.malformed = 0

    def add(self, post: Post, author: Author | None = None) -> None:
        self.posts.append(post)
        if author is not None:
            self.authors[author.id] = author

    def add_author(self, author: Author | None) -> None:
        if author is not None:
            self.authors[author.id] = author

    def skip(self, err: MalformedRecordError, *, entry_id: str | None = None) -> None:
        self.malformed += 1
        self._parser.logger.warning(
            "malformed_record_skipped",
            url=self._url,
            entry_id=entry_id,
            reason=str(err),
        )

    def result(self, cursor: Cursor | None) -> ParsedPage:
        return ParsedPage(
            posts=tuple(self.posts),
            authors=tuple(self.authors.values()),
            cursor=cursor,
            malformed=self.malformed,
        )


def _dig(obj: Any, *path: str) -> Any:
    cur = obj
    for key in path:
        if not isinstance(cur, Mapping):
            return None
        cur = cur.get(key)
    return cur


_INSTRUCTION_PATHS: dict[QueryMode, tuple[tuple[str, ...], ...]] = {
    QueryMode.USER_TIMELINE: (
        ("data", "user", "result", "timeline_v2", "timeline", "instructions"),
        ("data", "user", "result", "timeline", "timeline", "instructions"),
    ),
    QueryMode.THREAD: (
        ("data", "threaded_conversation_with_injections_v2", "instructions"),
        ("data", "threaded_conversation_with_injections", "instructions"),
    ),
    QueryMode.SEARCH: (
        ("data", "search_by_raw_query", "search_timeline", "timeline", "instructions"),
    ),
}


def _find_instructions(data: Any, mode: QueryMode) -> list[Any] | None:
    for path in _INSTRUCTION_PATHS.get(mode, ()):
        found = _dig(data, *path)
        if isinstance(found, list):
            return found
    return _search_instructions(data, depth=0)


def _search_instructions(obj: Any, *, depth: int) -> list[Any] | None:
    if depth > 8 or not isinstance(obj, Mapping):
        return None
    found = obj.get("instructions")
    if isinstance(found, list):
        return found
    for value in obj.values():
        hit = _search_instructions(value, depth=depth + 1)
        if hit is not None:
            return hit
    return None


def _cursor_from_content(content: Any) -> tuple[str, str] | None:
    if not isinstance(content, Mapping):
        return None
    for node in (content, content.get("itemContent"), content.get("content")):
        if not isinstance(node, Mapping):
            continue
        ctype = node.get("cursorType")
        value = node.get("value")
        if isinstance(ctype, str) and isinstance(value, str) and value:
            return ctype, value
    return None


def _continuation_types(mode: QueryMode) -> tuple[str, ...]:
    if mode is QueryMode.THREAD:
        return ("Bottom", "ShowMoreThreads")
    return ("Bottom",)


class PageParser:
    """
    Turns a fetched page into posts, authors and the next cursor.

    The page variant picks the extraction strategy: GraphQL timelines and the adaptive
    search format for JSON pages, the legacy stream markup for HTML pages (or JSON
    wrappers around it). A single broken record is skipped and counted; a page with no
    recognizable structure raises MalformedPageError.
    """

    def __init__(self, logger: RunLogger | None = None) -> None:
        self.logger = logger or NULL_LOG

    def parse(self, page: Page, mode: QueryMode) -> ParsedPage:
        mode = QueryMode(mode)

        if isinstance(page, HtmlPage):
            return self._parse_html_stream(page.html, url=page.url)

        if not isinstance(page, JsonPage):
            raise TypeError(f"Unsupported page type: {type(page).__name__}")

        data = page.data
        if not isinstance(data, Mapping):
            raise MalformedPageError("JSON page is not an object")

        if isinstance(data.get("globalObjects"), Mapping):
            return self._parse_adaptive(data, url=page.url)

        if "items_html" in data:
            return self._parse_html_wrapper(data, url=page.url)

        instructions = _find_instructions(data, mode)
        if instructions is not None:
            return self._parse_graphql(instructions, mode, url=page.url)

        raise MalformedPageError("no timeline instructions, globalObjects or items_html in page")

    def parse_user(self, page: Page) -> Author | None:
        """Author from a UserByScreenName response; None when the account does not exist."""
        if not isinstance(page, JsonPage) or not isinstance(page.data, Mapping):
            raise MalformedPageError("user lookup response is not a JSON object")

        data = page.data.get("data")
        if not isinstance(data, Mapping):
            raise MalformedPageError("user lookup response has no data object")

        result = _dig(data, "user", "result")
        if result is None:
            return None
        try:
            return author_from_user_result(result)
        except MalformedRecordError as e:
            raise MalformedPageError(f"user lookup result is malformed: {e}") from e

    def _parse_graphql(self, instructions: list[Any], mode: QueryMode, *, url: str | None) -> ParsedPage:
        out = _Collector(self, url)
        cursors: dict[str, str] = {}

        for entry in self._graphql_entries(instructions):
            entry_id = entry.get("entryId")
            if not isinstance(entry_id, str):
                continue
            content = entry.get("content")

            if entry_id.startswith("cursor-") or _cursor_from_content(content) is not None:
                found = _cursor_from_content(content)
                if found is not None:
                    cursors.setdefault(found[0], found[1])
                continue

            if entry_id.startswith("promoted-"):
                continue

            if entry_id.startswith("tweet-"):
                self._take_tweet(out, _dig(content, "itemContent", "tweet_results"), entry_id)
                continue

            if "conversation" in entry_id or entry_id.startswith("conversationthread-"):
                items = content.get("items") if isinstance(content, Mapping) else None
                for item in items if isinstance(items, list) else ():
                    item_content = _dig(item, "item", "itemContent")
                    if not isinstance(item_content, Mapping):
                        continue
                    if item_content.get("itemType") == "TimelineTimelineCursor":
                        continue
                    if _dig(item_content, "promotedMetadata") is not None:
                        continue
                    self._take_tweet(out, item_content.get("tweet_results"), entry_id)

        cursor = None
        for ctype in _continuation_types(mode):
            match = next((v for t, v in cursors.items() if t.startswith(ctype)), None)
            if match is not None:
                cursor = Cursor.parse(match)
                break

        return out.result(cursor)

    @staticmethod
    def _graphql_entries(instructions: list[Any]) -> Iterator[Mapping[str, Any]]:
        for ins in instructions:
            if not isinstance(ins, Mapping):
                continue
            kind = ins.get("type")
            if kind == "TimelineAddEntries":
                entries = ins.get("entries")
                for e in entries if isinstance(entries, list) else ():
                    if isinstance(e, Mapping):
                        yield e
            elif kind in ("TimelinePinEntry", "TimelineReplaceEntry"):
                e = ins.get("entry")
                if isinstance(e, Mapping):
                    yield e

    def _take_tweet(self, out: _Collector, tweet_results: Any, entry_id: str) -> None:
        if not isinstance(tweet_results, Mapping):
            out.skip(MalformedRecordError("entry carries no tweet_results"), entry_id=entry_id)
            return
        result = tweet_results.get("result")
        if result is None:
            # Deleted posts leave an empty tweet_results object behind.
            return
        try:
            found = post_from_tweet_result(result)
        except MalformedRecordError as e:
            out.skip(e, entry_id=entry_id)
            return
        if found is None:
            return
        post, author = found
        out.add(post, author)

    def _parse_adaptive(self, data: Mapping[str, Any], *, url: str | None) -> ParsedPage:
        out = _Collector(self, url)
        objects = data["globalObjects"]
        tweets = objects.get("tweets") if isinstance(objects.get("tweets"), Mapping) else {}
        users = objects.get("users") if isinstance(objects.get("users"), Mapping) else {}

        instructions = _dig(data, "timeline", "instructions")
        if not isinstance(instructions, list):
            raise MalformedPageError("adaptive page has no timeline instructions")

        bottom: str | None = None
        for entry in self._adaptive_entries(instructions):
            entry_id = entry.get("entryId")
            if not isinstance(entry_id, str):
                continue

            op_cursor = _dig(entry, "content", "operation", "cursor")
            if isinstance(op_cursor, Mapping):
                if entry_id == "sq-cursor-bottom" or op_cursor.get("cursorType") == "Bottom":
                    value = op_cursor.get("value")
                    if isinstance(value, str) and value:
                        bottom = value
                continue

            tweet_ref = _dig(entry, "content", "item", "content", "tweet", "id")
            if tweet_ref is None:
                continue
            if _dig(entry, "content", "item", "content", "tweet", "promotedMetadata") is not None:
                continue

            legacy = tweets.get(str(tweet_ref))
            if legacy is None:
                out.skip(MalformedRecordError(f"tweet {tweet_ref} missing from globalObjects"), entry_id=entry_id)
                continue
            try:
                post = post_from_legacy(legacy, post_id=tweet_ref)
            except MalformedRecordError as e:
                out.skip(e, entry_id=entry_id)
                continue

            author = None
            user = users.get(str(post.author_id))
            if user is not None:
                try:
                    author = author_from_legacy(user, user_id=post.author_id)
                except MalformedRecordError as e:
                    out.skip(e, entry_id=entry_id)
            out.add(post, author)

        return out.result(Cursor.parse(bottom))

    @staticmethod
    def _adaptive_entries(instructions: list[Any]) -> Iterator[Mapping[str, Any]]:
        for ins in instructions:
            if not isinstance(ins, Mapping):
                continue
            add = ins.get("addEntries")
            if isinstance(add, Mapping):
                entries = add.get("entries")
                for e in entries if isinstance(entries, list) else ():
                    if isinstance(e, Mapping):
                        yield e
            replace = ins.get("replaceEntry")
            if isinstance(replace, Mapping) and isinstance(replace.get("entry"), Mapping):
                yield replace["entry"]

    def _parse_html_wrapper(self, data: Mapping[str, Any], *, url: str | None) -> ParsedPage:
        html = data.get("items_html")
        if not isinstance(html, str):
            raise MalformedPageError("items_html is not a string")

        out = _Collector(self, url)
        soup = BeautifulSoup(html, "lxml")
        self._collect_html_posts(out, soup.select("div.tweet[data-tweet-id]"))

        cursor = None
        if data.get("has_more_items", True) is not False:
            raw = data.get("min_position")
            cursor = Cursor.parse(str(raw)) if raw is not None else None
        return out.result(cursor)

    def _parse_html_stream(self, html: str, *, url: str | None) -> ParsedPage:
        soup = BeautifulSoup(html or "", "lxml")
        container = soup.select_one("[data-min-position]")
        tweets = soup.select("div.tweet[data-tweet-id]")
        if container is None and not tweets and soup.select_one(".stream-items, #stream-items-id") is None:
            raise MalformedPageError("HTML page has no tweet stream")

        out = _Collector(self, url)
        self._collect_html_posts(out, tweets)

        cursor = None
        if container is not None:
            raw = container.get("data-min-position")
            cursor = Cursor.parse(raw if isinstance(raw, str) else None)
        return out.result(cursor)

    def _collect_html_posts(self, out: _Collector, nodes: Iterable[Tag]) -> None:
        for node in nodes:
            entry_id = str(node.get("data-tweet-id") or "")
            try:
                post, author = _post_from_html(node)
            except MalformedRecordError as e:
                out.skip(e, entry_id=entry_id or None)
                continue
            out.add(post, author)


def _attr(node: Tag, name: str) -> str | None:
    value = node.get(name)
    if isinstance(value, list):
        value = " ".join(value)
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _stat(node: Tag, action: str) -> int:
    span = node.select_one(f".ProfileTweet-action--{action} [data-tweet-stat-count]")
    if span is None:
        return 0
    raw = _attr(span, "data-tweet-stat-count") or ""
    return int(raw) if raw.isdecimal() else 0


def _post_from_html(node: Tag) -> tuple[Post, Author | None]:
    raw_id = _attr(node, "data-tweet-id") or ""
    if not raw_id.isdecimal():
        raise MalformedRecordError("tweet markup has no numeric data-tweet-id")
    post_id = int(raw_id)

    raw_user = _attr(node, "data-user-id") or ""
    if not raw_user.isdecimal():
        raise MalformedRecordError(f"tweet {post_id} markup has no data-user-id")
    user_id = int(raw_user)

    stamp = node.select_one("[data-time-ms]")
    created = parse_timestamp(_attr(stamp, "data-time-ms")) if stamp is not None else None
    if created is None:
        stamp = node.select_one("[data-time]")
        created = parse_timestamp(_attr(stamp, "data-time")) if stamp is not None else None
    if created is None:
        raise MalformedRecordError(f"tweet {post_id} markup has no timestamp")

    text_node = node.select_one(".tweet-text")
    text = text_node.get_text() if text_node is not None else ""

    media: list[str] = []
    for m in node.select("[data-image-url]"):
        u = _attr(m, "data-image-url")
        if u and u not in media:
            media.append(u)

    conv = _attr(node, "data-conversation-id") or ""
    post = Post(
        id=post_id,
        author_id=user_id,
        created_at=created,
        text=text,
        engagement=Engagement(
            likes=_stat(node, "favorite"),
            reposts=_stat(node, "retweet"),
            replies=_stat(node, "reply"),
        ),
        media=tuple(media),
        conversation_id=int(conv) if conv.isdecimal() else None,
        lang=_attr(text_node, "lang") if text_node is not None else None,
    )

    handle = _attr(node, "data-screen-name")
    author = None
    if handle:
        author = Author(id=user_id, handle=handle, display_name=_attr(node, "data-name") or "")
    return post, author
