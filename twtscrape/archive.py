from __future__ import annotations

import struct
from datetime import datetime, timedelta, timezone
from enum import IntEnum
from typing import Callable, Iterable, Iterator, Mapping, TypeVar

from .checkpoint import ResumeCheckpoint
from .dedupe import SeenDigest
from .errors import ArchiveError, UnsupportedArchiveVersion
from .query import Cursor, Query
from .records import Author, Engagement, Post
from .session import Session

MAGIC = b"TWSA"
FORMAT_VERSION = 1

_HEADER = struct.Struct("<4sBBH")
_U8 = struct.Struct("<B")
_U32 = struct.Struct("<I")
_U64 = struct.Struct("<Q")
_I64 = struct.Struct("<q")
_F64 = struct.Struct("<d")

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_ONE_MS = timedelta(milliseconds=1)

T = TypeVar("T")


class ArchiveKind(IntEnum):
    POST = 1
    AUTHOR = 2
    SESSION = 3
    CHECKPOINT = 4
    POST_BATCH = 5


class _Writer:
    def __init__(self) -> None:
        self._buf = bytearray()

    def getvalue(self) -> bytes:
        return bytes(self._buf)

    def _pack(self, fmt: struct.Struct, value: object) -> None:
        try:
            self._buf += fmt.pack(value)
        except struct.error as e:
            raise ArchiveError(f"Value out of range for archive field: {value!r}") from e

    def raw(self, data: bytes) -> None:
        self._buf += data

    def u8(self, value: int) -> None:
        self._pack(_U8, value)

    def u32(self, value: int) -> None:
        self._pack(_U32, value)

    def u64(self, value: int) -> None:
        self._pack(_U64, value)

    def i64(self, value: int) -> None:
        self._pack(_I64, value)

    def f64(self, value: float) -> None:
        self._pack(_F64, float(value))

    def flag(self, value: bool) -> None:
        self.u8(1 if value else 0)

    def text(self, value: str) -> None:
        data = value.encode("utf-8")
        self.u32(len(data))
        self._buf += data

    def when(self, value: datetime) -> None:
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        self.i64((value - _EPOCH) // _ONE_MS)

    def optional(self, value: T | None, put: Callable[[T], None]) -> None:
        if value is None:
            self.u8(0)
            return
        self.u8(1)
        put(value)


class _Reader:
    def __init__(self, view: memoryview, offset: int = 0, end: int | None = None) -> None:
        self._view = view
        self._pos = offset
        self._end = len(view) if end is None else end

    @property
    def remaining(self) -> int:
        return self._end - self._pos

    def _unpack(self, fmt: struct.Struct) -> object:
        if self._pos + fmt.size > self._end:
            raise ArchiveError("Archive is truncated")
        (value,) = fmt.unpack_from(self._view, self._pos)
        self._pos += fmt.size
        return value

    def raw(self, size: int) -> bytes:
        if self._pos + size > self._end:
            raise ArchiveError("Archive is truncated")
        data = bytes(self._view[self._pos : self._pos + size])
        self._pos += size
        return data

    def u8(self) -> int:
        return int(self._unpack(_U8))  # type: ignore[arg-type]

    def u32(self) -> int:
        return int(self._unpack(_U32))  # type: ignore[arg-type]

    def u64(self) -> int:
        return int(self._unpack(_U64))  # type: ignore[arg-type]

    def i64(self) -> int:
        return int(self._unpack(_I64))  # type: ignore[arg-type]

    def f64(self) -> float:
        return float(self._unpack(_F64))  # type: ignore[arg-type]

    def flag(self) -> bool:
        v = self.u8()
        if v not in (0, 1):
            raise ArchiveError(f"Invalid boolean byte: {v}")
        return v == 1

    def text(self) -> str:
        size = self.u32()
        try:
            return self.raw(size).decode("utf-8")
        except UnicodeDecodeError as e:
            raise ArchiveError("Invalid UTF-8 in archive string") from e

    def when(self) -> datetime:
        return _EPOCH + self.i64() * _ONE_MS

    def optional(self, get: Callable[[], T]) -> T | None:
        return get() if self.flag() else None

    def expect_end(self) -> None:
        if self.remaining != 0:
            raise ArchiveError(f"Archive has {self.remaining} trailing bytes")


def _header(kind: ArchiveKind) -> bytes:
    return _HEADER.pack(MAGIC, FORMAT_VERSION, int(kind), 0)


def read_header(data: bytes | memoryview) -> tuple[int, ArchiveKind]:
    """
    Validate the archive header and return (version, kind).

    Raises UnsupportedArchiveVersion for any version other than FORMAT_VERSION.
    """
    view = memoryview(data)
    if len(view) < _HEADER.size:
        raise ArchiveError("Archive is shorter than its header")

    magic, version, kind, _reserved = _HEADER.unpack_from(view, 0)
    if magic != MAGIC:
        raise ArchiveError("Not a twtscrape archive (bad magic)")
    if version != FORMAT_VERSION:
        raise UnsupportedArchiveVersion(version)
    try:
        return version, ArchiveKind(kind)
    except ValueError as e:
        raise ArchiveError(f"Unknown archive kind: {kind}") from e


def _open(data: bytes | memoryview, kind: ArchiveKind) -> _Reader:
    view = memoryview(data)
    _version, found = read_header(view)
    if found is not kind:
        raise ArchiveError(f"Expected a {kind.name.lower()} archive, got {found.name.lower()}")
    return _Reader(view, _HEADER.size)


def _write_post(w: _Writer, post: Post) -> None:
    w.u64(post.id)
    w.u64(post.author_id)
    w.when(post.created_at)
    w.text(post.text)
    w.u64(post.engagement.likes)
    w.u64(post.engagement.reposts)
    w.u64(post.engagement.replies)
    w.u64(post.engagement.quotes)
    w.u32(len(post.media))
    for url in post.media:
        w.text(url)
    w.optional(post.conversation_id, w.u64)
    w.optional(post.in_reply_to_id, w.u64)
    w.optional(post.lang, w.text)


def _read_post(r: _Reader) -> Post:
    post_id = r.u64()
    author_id = r.u64()
    created_at = r.when()
    text = r.text()
    engagement = Engagement(likes=r.u64(), reposts=r.u64(), replies=r.u64(), quotes=r.u64())
    media = tuple(r.text() for _ in range(r.u32()))
    return Post(
        id=post_id,
        author_id=author_id,
        created_at=created_at,
        text=text,
        engagement=engagement,
        media=media,
        conversation_id=r.optional(r.u64),
        in_reply_to_id=r.optional(r.u64),
        lang=r.optional(r.text),
    )


def _write_author(w: _Writer, author: Author) -> None:
    w.u64(author.id)
    w.text(author.handle)
    w.text(author.display_name)
    w.text(author.bio)
    w.optional(author.location, w.text)
    w.optional(author.avatar_url, w.text)
    w.optional(author.followers, w.u64)
    w.optional(author.following, w.u64)
    w.optional(author.post_count, w.u64)
    w.flag(author.verified)
    w.flag(author.protected)
    w.optional(author.joined_at, w.when)


def _read_author(r: _Reader) -> Author:
    return Author(
        id=r.u64(),
        handle=r.text(),
        display_name=r.text(),
        bio=r.text(),
        location=r.optional(r.text),
        avatar_url=r.optional(r.text),
        followers=r.optional(r.u64),
        following=r.optional(r.u64),
        post_count=r.optional(r.u64),
        verified=r.flag(),
        protected=r.flag(),
        joined_at=r.optional(r.when),
    )


def _write_mapping(w: _Writer, mapping: Mapping[str, str]) -> None:
    w.u32(len(mapping))
    for k in sorted(mapping):
        w.text(k)
        w.text(mapping[k])


def _read_mapping(r: _Reader) -> dict[str, str]:
    out: dict[str, str] = {}
    for _ in range(r.u32()):
        k = r.text()
        out[k] = r.text()
    return out


def _write_session(w: _Writer, session: Session) -> None:
    w.text(session.bearer_token)
    w.text(session.user_agent)
    w.optional(session.guest_token, w.text)
    w.optional(session.auth_token, w.text)
    w.optional(session.csrf_token, w.text)
    _write_mapping(w, session.cookies)
    w.u64(session.request_count)
    w.u64(session.requests_since_refresh)
    w.optional(session.budget_remaining, w.i64)
    w.optional(session.budget_reset_at, w.f64)
    w.f64(session.created_at)


def _read_session(r: _Reader) -> Session:
    return Session(
        bearer_token=r.text(),
        user_agent=r.text(),
        guest_token=r.optional(r.text),
        auth_token=r.optional(r.text),
        csrf_token=r.optional(r.text),
        cookies=_read_mapping(r),
        request_count=r.u64(),
        requests_since_refresh=r.u64(),
        budget_remaining=r.optional(r.i64),
        budget_reset_at=r.optional(r.f64),
        created_at=r.f64(),
    )


def _write_checkpoint(w: _Writer, cp: ResumeCheckpoint) -> None:
    w.text(cp.query.mode.value)
    w.text(cp.query.identifier)
    w.optional(cp.cursor.value if cp.cursor is not None else None, w.text)

    digest = SeenDigest.of(cp.seen.ids)
    w.u64(len(digest.ids))
    for post_id in digest.ids:
        w.u64(post_id)
    w.raw(bytes.fromhex(digest.sha256))

    if cp.session is None:
        w.u8(0)
    else:
        w.u8(1)
        _write_session(w, cp.session)

    w.u64(cp.pages)
    w.u64(cp.emitted)
    w.optional(cp.user_id, w.u64)
    w.f64(cp.created_at)


def _read_checkpoint(r: _Reader) -> ResumeCheckpoint:
    mode = r.text()
    identifier = r.text()
    try:
        query = Query(mode=mode, identifier=identifier)  # type: ignore[arg-type]
    except ValueError as e:
        raise ArchiveError(f"Archived query is invalid: {e}") from e

    cursor = Cursor.parse(r.optional(r.text))

    count = r.u64()
    if count * _U64.size > r.remaining:
        raise ArchiveError("Archive is truncated")
    ids = tuple(r.u64() for _ in range(count))
    digest = SeenDigest(ids=ids, sha256=r.raw(32).hex())
    if list(ids) != sorted(set(ids)):
        raise ArchiveError("Archived seen-set is not in canonical order")
    if not digest.verify():
        raise ArchiveError("Archived seen-set digest does not match its IDs")

    session = _read_session(r) if r.flag() else None

    return ResumeCheckpoint(
        query=query,
        cursor=cursor,
        seen=digest,
        session=session,
        pages=r.u64(),
        emitted=r.u64(),
        user_id=r.optional(r.u64),
        created_at=r.f64(),
    )


def _encode(kind: ArchiveKind, put: Callable[[_Writer], None]) -> bytes:
    w = _Writer()
    w.raw(_header(kind))
    put(w)
    return w.getvalue()


def _decode(data: bytes | memoryview, kind: ArchiveKind, get: Callable[[_Reader], T]) -> T:
    r = _open(data, kind)
    value = get(r)
    r.expect_end()
    return value


def encode_post(post: Post) -> bytes:
    return _encode(ArchiveKind.POST, lambda w: _write_post(w, post))


def decode_post(data: bytes | memoryview) -> Post:
    return _decode(data, ArchiveKind.POST, _read_post)


def encode_author(author: Author) -> bytes:
    return _encode(ArchiveKind.AUTHOR, lambda w: _write_author(w, author))


def decode_author(data: bytes | memoryview) -> Author:
    return _decode(data, ArchiveKind.AUTHOR, _read_author)


def encode_session(session: Session) -> bytes:
    return _encode(ArchiveKind.SESSION, lambda w: _write_session(w, session))


def decode_session(data: bytes | memoryview) -> Session:
    return _decode(data, ArchiveKind.SESSION, _read_session)


def encode_checkpoint(checkpoint: ResumeCheckpoint) -> bytes:
    return _encode(ArchiveKind.CHECKPOINT, lambda w: _write_checkpoint(w, checkpoint))


def decode_checkpoint(data: bytes | memoryview) -> ResumeCheckpoint:
    return _decode(data, ArchiveKind.CHECKPOINT, _read_checkpoint)


def encode_posts(posts: Iterable[Post]) -> bytes:
    """
    Pack posts into one batch archive with an offset table.

    Layout after the header: count:u32, (count + 1) body-relative offsets:u32, bodies.
    """
    bodies: list[bytes] = []
    for post in posts:
        w = _Writer()
        _write_post(w, post)
        bodies.append(w.getvalue())

    w = _Writer()
    w.raw(_header(ArchiveKind.POST_BATCH))
    w.u32(len(bodies))
    offset = 0
    for body in bodies:
        w.u32(offset)
        offset += len(body)
    w.u32(offset)
    for body in bodies:
        w.raw(body)
    return w.getvalue()


class PostArchive:
    """
    Read-only view over a post batch archive.

    Nothing is decoded up front: indexing decodes a single post straight from the
    underlying buffer, and id_at() reads only the eight bytes of its ID.
    """

    def __init__(self, data: bytes | memoryview) -> None:
        r = _open(data, ArchiveKind.POST_BATCH)
        self._view = memoryview(data)
        count = r.u32()
        if (count + 1) * _U32.size > r.remaining:
            raise ArchiveError("Archive is truncated")
        self._offsets = [r.u32() for _ in range(count + 1)]
        self._base = _HEADER.size + _U32.size * (count + 2)

        body_len = len(self._view) - self._base
        if self._offsets[0] != 0 or self._offsets[-1] != body_len:
            raise ArchiveError("Post batch offset table does not match its body")
        if any(b < a for a, b in zip(self._offsets, self._offsets[1:])):
            raise ArchiveError("Post batch offsets are not ascending")

    def __len__(self) -> int:
        return len(self._offsets) - 1

    def _reader(self, index: int) -> _Reader:
        if index < 0:
            index += len(self)
        if not 0 <= index < len(self):
            raise IndexError("post index out of range")
        start = self._base + self._offsets[index]
        end = self._base + self._offsets[index + 1]
        return _Reader(self._view, start, end)

    def __getitem__(self, index: int) -> Post:
        r = self._reader(index)
        post = _read_post(r)
        r.expect_end()
        return post

    def id_at(self, index: int) -> int:
        return self._reader(index).u64()

    def ids(self) -> list[int]:
        return [self.id_at(i) for i in range(len(self))]

    def __iter__(self) -> Iterator[Post]:
        for i in range(len(self)):
            yield self[i]
