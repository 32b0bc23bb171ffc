from __future__ import annotations

import unittest

from twtscrape.query import Cursor, Query, QueryMode


class TestQuery(unittest.TestCase):
    def test_handle_is_normalized(self) -> None:
        q = Query(QueryMode.USER_TIMELINE, " @SomeUser ")
        self.assertEqual(q.identifier, "SomeUser")
        self.assertEqual(q.key, "user-timeline:someuser")
        self.assertIsNone(q.user_id())

    def test_numeric_user_ids(self) -> None:
        self.assertEqual(Query(QueryMode.USER_TIMELINE, "12345").user_id(), 12345)
        self.assertEqual(Query(QueryMode.USER_TIMELINE, "id:42").user_id(), 42)
        self.assertIsNone(Query(QueryMode.SEARCH, "12345").user_id())

    def test_mode_accepts_string(self) -> None:
        q = Query("thread", "1650000000000000000")  # type: ignore[arg-type]
        self.assertIs(q.mode, QueryMode.THREAD)

    def test_rejects_empty_and_bad_thread_ids(self) -> None:
        with self.assertRaises(ValueError):
            Query(QueryMode.SEARCH, "   ")
        with self.assertRaises(ValueError):
            Query(QueryMode.USER_TIMELINE, "@")
        with self.assertRaises(ValueError):
            Query(QueryMode.THREAD, "not-a-number")

    def test_with_cursor_keeps_identity(self) -> None:
        q = Query(QueryMode.SEARCH, "python")
        c = Cursor.parse("DAACCgACF")
        resumed = q.with_cursor(c)
        self.assertEqual(resumed.key, q.key)
        self.assertEqual(resumed.resume_cursor, c)


class TestCursor(unittest.TestCase):
    def test_parse_blank(self) -> None:
        self.assertIsNone(Cursor.parse(None))
        self.assertIsNone(Cursor.parse("  "))

    def test_opaque_cursor(self) -> None:
        c = Cursor.parse("scroll:thGAVUV0VFVBaAwLHh")
        assert c is not None
        self.assertEqual(str(c), "scroll:thGAVUV0VFVBaAwLHh")
        self.assertIsNone(c.min_id)

    def test_composite_cursor(self) -> None:
        c = Cursor.parse("TWEET-100-200")
        assert c is not None
        self.assertEqual((c.min_id, c.max_id), (100, 200))

    def test_backward_movement(self) -> None:
        older = Cursor.parse("TWEET-100-200")
        newer = Cursor.parse("TWEET-150-200")
        further = Cursor.parse("TWEET-50-100")
        assert older is not None and newer is not None and further is not None
        self.assertTrue(newer.moved_backward_from(older))
        self.assertFalse(further.moved_backward_from(older))
        opaque = Cursor.parse("abc")
        assert opaque is not None
        self.assertFalse(opaque.moved_backward_from(older))


if __name__ == "__main__":
    unittest.main()
