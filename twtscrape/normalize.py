from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Mapping

from .errors import MalformedRecordError
from .records import Author, Engagement, Post

_PLATFORM_DATE_FORMAT = "%a %b %d %H:%M:%S %z %Y"


def _coerce_str(value: Any) -> str | None:
    if isinstance(value, str):
        s = value.strip()
        return s if s else None
    return None


def _coerce_id(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value > 0 else None
    if isinstance(value, str):
        v = value.strip()
        if v.isdecimal():
            n = int(v)
            return n if n > 0 else None
    return None


def _coerce_count(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return max(0, value)
    if isinstance(value, float):
        return max(0, int(value))
    if isinstance(value, str):
        v = value.strip().replace(",", "")
        if v.isdecimal():
            return int(v)
    return None


def _coerce_bool(value: Any) -> bool:
    return value is True


def parse_timestamp(value: Any) -> datetime | None:
    """
    Parse the timestamp shapes the platform uses into an aware UTC datetime.

    Accepts the classic ``Wed Oct 10 20:19:24 +0000 2018`` form, ISO-8601 strings and
    epoch seconds or milliseconds.
    """
    if isinstance(value, bool) or value is None:
        return None

    if isinstance(value, (int, float)):
        seconds = float(value)
        if seconds > 1e11:
            seconds = seconds / 1000.0
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None

    s = _coerce_str(value)
    if s is None:
        return None

    if s.isdecimal():
        return parse_timestamp(int(s))

    try:
        return datetime.strptime(s, _PLATFORM_DATE_FORMAT).astimezone(timezone.utc)
    except ValueError:
        pass

    try:
        dt = datetime.fromisoformat(s.replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _media_urls(legacy: Mapping[str, Any]) -> tuple[str, ...]:
    media: Any = None
    for key in ("extended_entities", "entities"):
        ent = legacy.get(key)
        if isinstance(ent, Mapping) and isinstance(ent.get("media"), list):
            media = ent["media"]
            break

    if not media:
        return ()

    out: list[str] = []
    seen: set[str] = set()
    for item in media:
        if not isinstance(item, Mapping):
            continue

        url = _best_video_variant(item) or _coerce_str(item.get("media_url_https")) or _coerce_str(
            item.get("media_url")
        )
        if url and url not in seen:
            seen.add(url)
            out.append(url)
    return tuple(out)


def _best_video_variant(item: Mapping[str, Any]) -> str | None:
    info = item.get("video_info")
    if not isinstance(info, Mapping):
        return None
    variants = info.get("variants")
    if not isinstance(variants, list):
        return None

    best: tuple[int, str] | None = None
    for v in variants:
        if not isinstance(v, Mapping) or v.get("content_type") != "video/mp4":
            continue
        url = _coerce_str(v.get("url"))
        if url is None:
            continue
        bitrate = _coerce_count(v.get("bitrate")) or 0
        if best is None or bitrate > best[0]:
            best = (bitrate, url)
    return best[1] if best else None


def post_from_legacy(
    legacy: Mapping[str, Any],
    *,
    post_id: Any = None,
    author_id: Any = None,
    text: str | None = None,
) -> Post:
    """
    Build a Post from a platform ``legacy`` tweet object.

    Raises MalformedRecordError when the ID, author or timestamp cannot be recovered.
    """
    if not isinstance(legacy, Mapping):
        raise MalformedRecordError("tweet payload is not an object")

    pid = _coerce_id(post_id) or _coerce_id(legacy.get("id_str")) or _coerce_id(legacy.get("id"))
    if pid is None:
        raise MalformedRecordError("tweet has no usable id")

    uid = _coerce_id(author_id) or _coerce_id(legacy.get("user_id_str")) or _coerce_id(legacy.get("user_id"))
    if uid is None:
        raise MalformedRecordError(f"tweet {pid} has no author id")

    created = parse_timestamp(legacy.get("created_at"))
    if created is None:
        raise MalformedRecordError(f"tweet {pid} has no parseable created_at")

    body = text
    if body is None:
        body = legacy.get("full_text")
        if not isinstance(body, str):
            body = legacy.get("text")
    if not isinstance(body, str):
        raise MalformedRecordError(f"tweet {pid} has no text")

    return Post(
        id=pid,
        author_id=uid,
        created_at=created,
        text=body,
        engagement=Engagement(
            likes=_coerce_count(legacy.get("favorite_count")) or 0,
            reposts=_coerce_count(legacy.get("retweet_count")) or 0,
            replies=_coerce_count(legacy.get("reply_count")) or 0,
            quotes=_coerce_count(legacy.get("quote_count")) or 0,
        ),
        media=_media_urls(legacy),
        conversation_id=_coerce_id(legacy.get("conversation_id_str")),
        in_reply_to_id=_coerce_id(legacy.get("in_reply_to_status_id_str")),
        lang=_coerce_str(legacy.get("lang")),
    )


def author_from_legacy(legacy: Mapping[str, Any], *, user_id: Any = None) -> Author:
    """Build an Author from a platform ``legacy`` user object."""
    if not isinstance(legacy, Mapping):
        raise MalformedRecordError("user payload is not an object")

    uid = _coerce_id(user_id) or _coerce_id(legacy.get("id_str")) or _coerce_id(legacy.get("id"))
    if uid is None:
        raise MalformedRecordError("user has no usable id")

    handle = _coerce_str(legacy.get("screen_name"))
    if handle is None:
        raise MalformedRecordError(f"user {uid} has no screen_name")

    return Author(
        id=uid,
        handle=handle,
        display_name=_coerce_str(legacy.get("name")) or "",
        bio=_coerce_str(legacy.get("description")) or "",
        location=_coerce_str(legacy.get("location")),
        avatar_url=_coerce_str(legacy.get("profile_image_url_https")),
        followers=_coerce_count(legacy.get("followers_count")),
        following=_coerce_count(legacy.get("friends_count")),
        post_count=_coerce_count(legacy.get("statuses_count")),
        verified=_coerce_bool(legacy.get("verified")),
        protected=_coerce_bool(legacy.get("protected")),
        joined_at=parse_timestamp(legacy.get("created_at")),
    )


def author_from_user_result(result: Mapping[str, Any]) -> Author | None:
    """
    Author from a GraphQL ``user_results.result`` object.

    Returns None for unavailable or suspended accounts.
    """
    if not isinstance(result, Mapping):
        raise MalformedRecordError("user result is not an object")
    if result.get("__typename") not in (None, "User"):
        return None

    legacy = result.get("legacy")
    if not isinstance(legacy, Mapping):
        raise MalformedRecordError("user result has no legacy object")

    author = author_from_legacy(legacy, user_id=result.get("rest_id"))
    if _coerce_bool(result.get("is_blue_verified")) and not author.verified:
        author = replace(author, verified=True)
    return author


def _unwrap_tweet_result(result: Any) -> Mapping[str, Any] | None:
    if not isinstance(result, Mapping):
        raise MalformedRecordError("tweet result is not an object")

    typename = result.get("__typename")
    if typename == "TweetWithVisibilityResults":
        inner = result.get("tweet")
        return inner if isinstance(inner, Mapping) else None
    if typename in ("TweetTombstone", "TweetUnavailable"):
        return None
    if typename not in (None, "Tweet"):
        return None
    return result


def _note_text(tweet: Mapping[str, Any]) -> str | None:
    note = tweet.get("note_tweet")
    if not isinstance(note, Mapping):
        return None
    res = note.get("note_tweet_results")
    if not isinstance(res, Mapping):
        return None
    inner = res.get("result")
    if not isinstance(inner, Mapping):
        return None
    return inner.get("text") if isinstance(inner.get("text"), str) else None


def post_from_tweet_result(result: Any) -> tuple[Post, Author | None] | None:
    """
    Post (and its embedded author, when present) from a GraphQL ``tweet_results.result``.

    Tombstones, unavailable posts and empty visibility wrappers return None; they are
    not malformed, just absent.
    """
    tweet = _unwrap_tweet_result(result)
    if tweet is None:
        return None

    legacy = tweet.get("legacy")
    if not isinstance(legacy, Mapping):
        raise MalformedRecordError("tweet result has no legacy object")

    author: Author | None = None
    core = tweet.get("core")
    if isinstance(core, Mapping):
        user_results = core.get("user_results")
        if isinstance(user_results, Mapping) and isinstance(user_results.get("result"), Mapping):
            author = author_from_user_result(user_results["result"])

    post = post_from_legacy(
        legacy,
        post_id=tweet.get("rest_id"),
        author_id=author.id if author else None,
        text=_note_text(tweet),
    )
    return post, author
