from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum

_COMPOSITE_CURSOR_RE = re.compile(r"^TWEET-(\d+)-(\d+)$")
_USER_ID_RE = re.compile(r"^(?:id:)?(\d+)$")


class QueryMode(str, Enum):
    SEARCH = "search"
    USER_TIMELINE = "user-timeline"
    THREAD = "thread"


@dataclass(frozen=True)
class Cursor:
    """
    Opaque pagination token issued by the platform.

    Legacy stream cursors have the composite form ``TWEET-<min>-<max>``; for those the
    min/max post IDs are exposed so backward movement can be detected numerically.
    """

    value: str
    min_id: int | None = None
    max_id: int | None = None

    @classmethod
    def parse(cls, raw: str | None) -> "Cursor | None":
        value = (raw or "").strip()
        if not value:
            return None

        m = _COMPOSITE_CURSOR_RE.fullmatch(value)
        if m is None:
            return cls(value=value)

        lo, hi = int(m.group(1)), int(m.group(2))
        return cls(value=value, min_id=min(lo, hi), max_id=max(lo, hi))

    def moved_backward_from(self, previous: "Cursor") -> bool:
        # Timelines page from newest to oldest: the lower bound may only shrink.
        if self.min_id is None or previous.min_id is None:
            return False
        return self.min_id > previous.min_id

    def __str__(self) -> str:
        return self.value


def normalize_identifier(mode: QueryMode, value: str) -> str:
    ident = (value or "").strip()
    if mode is QueryMode.USER_TIMELINE and ident.startswith("@"):
        ident = ident[1:].strip()
    return ident


@dataclass(frozen=True)
class Query:
    """What to scrape: a mode plus its identifier, optionally resuming at a cursor."""

    mode: QueryMode
    identifier: str
    resume_cursor: Cursor | None = None

    def __post_init__(self) -> None:
        mode = QueryMode(self.mode)
        object.__setattr__(self, "mode", mode)

        ident = normalize_identifier(mode, self.identifier)
        if not ident:
            raise ValueError("query identifier must be non-empty")
        if mode is QueryMode.THREAD and not ident.isdecimal():
            raise ValueError("thread queries take the numeric ID of the focal post")
        object.__setattr__(self, "identifier", ident)

    @property
    def key(self) -> str:
        """Stable identity used to group runs and checkpoints of the same query."""
        return f"{self.mode.value}:{self.identifier.casefold()}"

    def user_id(self) -> int | None:
        """Numeric user ID for user-timeline queries given as ``123`` or ``id:123``."""
        if self.mode is not QueryMode.USER_TIMELINE:
            return None
        m = _USER_ID_RE.fullmatch(self.identifier)
        return int(m.group(1)) if m else None

    def with_cursor(self, cursor: Cursor | None) -> "Query":
        return Query(mode=self.mode, identifier=self.identifier, resume_cursor=cursor)
