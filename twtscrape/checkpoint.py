from __future__ import annotations

from dataclasses import dataclass

from .dedupe import SeenDigest
from .query import Cursor, Query
from .session import Session


@dataclass(frozen=True)
class ResumeCheckpoint:
    """
    Everything needed to continue a run later: where it was, what it already emitted,
    and the session it was using.

    `user_id` caches the resolved numeric ID of a user-timeline query so a resumed run
    skips the handle lookup.
    """

    query: Query
    cursor: Cursor | None
    seen: SeenDigest
    session: Session | None = None
    pages: int = 0
    emitted: int = 0
    user_id: int | None = None
    created_at: float = 0.0

    @property
    def finished(self) -> bool:
        return self.cursor is None

    def resume_query(self) -> Query:
        return self.query.with_cursor(self.cursor)
