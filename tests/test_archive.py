from __future__ import annotations

import unittest
from datetime import datetime, timezone

from twtscrape.archive import (
    FORMAT_VERSION,
    PostArchive,
    decode_author,
    decode_checkpoint,
    decode_post,
    decode_session,
    encode_author,
    encode_checkpoint,
    encode_post,
    encode_posts,
    encode_session,
    read_header,
)
from twtscrape.checkpoint import ResumeCheckpoint
from twtscrape.dedupe import SeenDigest
from twtscrape.errors import ArchiveError, UnsupportedArchiveVersion
from twtscrape.query import Cursor, Query, QueryMode
from twtscrape.records import Author, Engagement, Post
from twtscrape.session import Session


def _post(post_id: int = 1650000000000000001, **overrides) -> Post:
    fields = dict(
        id=post_id,
        author_id=783214,
        created_at=datetime(2023, 5, 1, 12, 30, 15, 250000, tzinfo=timezone.utc),
        text="archived text with ünïcode ✓",
        engagement=Engagement(likes=12, reposts=3, replies=1, quotes=0),
        media=("https://pbs.example/a.jpg", "https://v.example/b.mp4"),
        conversation_id=1650000000000000000,
        in_reply_to_id=None,
        lang="en",
    )
    fields.update(overrides)
    return Post(**fields)


def _session() -> Session:
    return Session(
        bearer_token="b",
        user_agent="ua",
        guest_token="g1",
        cookies={"z": "1", "a": "2"},
        request_count=41,
        requests_since_refresh=5,
        budget_remaining=120,
        budget_reset_at=1700000000.0,
        created_at=1699999000.5,
    )


def _checkpoint() -> ResumeCheckpoint:
    return ResumeCheckpoint(
        query=Query(QueryMode.USER_TIMELINE, "nasa"),
        cursor=Cursor.parse("DAABCgABF-abc"),
        seen=SeenDigest.of([30, 10, 20]),
        session=_session(),
        pages=3,
        emitted=24,
        user_id=11348282,
        created_at=1700000100.25,
    )


class TestRecordArchives(unittest.TestCase):
    def test_post_round_trip_is_canonical(self) -> None:
        post = _post()
        blob = encode_post(post)
        decoded = decode_post(blob)
        self.assertEqual(decoded, post)
        self.assertEqual(encode_post(decoded), blob)

    def test_post_with_empty_optionals(self) -> None:
        post = _post(media=(), conversation_id=None, lang=None, text="")
        self.assertEqual(decode_post(encode_post(post)), post)

    def test_author_round_trip(self) -> None:
        author = Author(
            id=11348282,
            handle="nasa",
            display_name="NASA",
            bio="Exploring the universe",
            followers=80_000_000,
            following=None,
            verified=True,
            joined_at=datetime(2007, 12, 19, 20, 20, 32, tzinfo=timezone.utc),
        )
        self.assertEqual(decode_author(encode_author(author)), author)

    def test_session_round_trip_sorts_cookies(self) -> None:
        session = _session()
        blob = encode_session(session)
        decoded = decode_session(blob)
        self.assertEqual(decoded, session)
        self.assertEqual(list(decoded.cookies), ["a", "z"])
        self.assertEqual(encode_session(decoded), blob)


class TestCheckpointArchive(unittest.TestCase):
    def test_round_trip(self) -> None:
        cp = _checkpoint()
        decoded = decode_checkpoint(encode_checkpoint(cp))

        self.assertEqual(decoded.query, cp.query)
        self.assertEqual(decoded.cursor, cp.cursor)
        self.assertEqual(decoded.seen.ids, (10, 20, 30))
        self.assertTrue(decoded.seen.verify())
        self.assertEqual(decoded.session, cp.session)
        self.assertEqual((decoded.pages, decoded.emitted, decoded.user_id), (3, 24, 11348282))
        self.assertEqual(decoded.created_at, cp.created_at)
        self.assertFalse(decoded.finished)

    def test_finished_checkpoint_without_session(self) -> None:
        cp = ResumeCheckpoint(query=Query(QueryMode.SEARCH, "from:nasa"), cursor=None, seen=SeenDigest.of([]))
        decoded = decode_checkpoint(encode_checkpoint(cp))
        self.assertTrue(decoded.finished)
        self.assertIsNone(decoded.session)
        self.assertEqual(decoded.seen.ids, ())

    def test_digest_mismatch_is_rejected(self) -> None:
        cp = _checkpoint()
        blob = bytearray(encode_checkpoint(cp))
        raw_digest = bytes.fromhex(cp.seen.sha256)
        at = bytes(blob).index(raw_digest)
        blob[at] ^= 0xFF

        with self.assertRaises(ArchiveError):
            decode_checkpoint(bytes(blob))


class TestArchiveHeader(unittest.TestCase):
    def test_version_is_checked_first(self) -> None:
        blob = bytearray(encode_post(_post()))
        self.assertEqual(read_header(bytes(blob))[0], FORMAT_VERSION)

        blob[4] = FORMAT_VERSION + 1
        with self.assertRaises(UnsupportedArchiveVersion) as ctx:
            decode_post(bytes(blob))
        self.assertEqual(ctx.exception.version, FORMAT_VERSION + 1)

    def test_bad_magic_short_input_and_kind_mismatch(self) -> None:
        blob = encode_post(_post())
        with self.assertRaises(ArchiveError):
            decode_post(b"XXXX" + blob[4:])
        with self.assertRaises(ArchiveError):
            decode_post(blob[:5])
        with self.assertRaises(ArchiveError):
            decode_author(blob)

    def test_truncated_and_trailing_bytes(self) -> None:
        blob = encode_post(_post())
        with self.assertRaises(ArchiveError):
            decode_post(blob[:-3])
        with self.assertRaises(ArchiveError):
            decode_post(blob + b"\x00")


class TestPostArchive(unittest.TestCase):
    def test_lazy_access(self) -> None:
        posts = [_post(100), _post(99, text="second"), _post(98, media=())]
        archive = PostArchive(encode_posts(posts))

        self.assertEqual(len(archive), 3)
        self.assertEqual(archive.id_at(1), 99)
        self.assertEqual(archive.ids(), [100, 99, 98])
        self.assertEqual(archive[1].text, "second")
        self.assertEqual(archive[-1], posts[2])
        self.assertEqual(list(archive), posts)
        with self.assertRaises(IndexError):
            archive[3]

    def test_empty_batch(self) -> None:
        archive = PostArchive(encode_posts([]))
        self.assertEqual(len(archive), 0)
        self.assertEqual(list(archive), [])

    def test_corrupt_offset_table(self) -> None:
        blob = encode_posts([_post(1), _post(2)])
        with self.assertRaises(ArchiveError):
            PostArchive(blob[:-1])
        with self.assertRaises(ArchiveError):
            PostArchive(encode_post(_post()))


if __name__ == "__main__":
    unittest.main()
