from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable, Iterator, Sequence


@dataclass(frozen=True)
class Engagement:
    likes: int = 0
    reposts: int = 0
    replies: int = 0
    quotes: int = 0


@dataclass(frozen=True)
class Author:
    """A platform account. Many posts may point at the same author by ID."""

    id: int
    handle: str
    display_name: str = ""
    bio: str = ""
    location: str | None = None
    avatar_url: str | None = None
    followers: int | None = None
    following: int | None = None
    post_count: int | None = None
    verified: bool = False
    protected: bool = False
    joined_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "handle": self.handle,
            "display_name": self.display_name,
            "bio": self.bio,
            "location": self.location,
            "avatar_url": self.avatar_url,
            "followers": self.followers,
            "following": self.following,
            "post_count": self.post_count,
            "verified": self.verified,
            "protected": self.protected,
            "joined_at": self.joined_at.isoformat() if self.joined_at else None,
        }


@dataclass(frozen=True)
class Post:
    """A single scraped post. The author is referenced by ID only."""

    id: int
    author_id: int
    created_at: datetime
    text: str
    engagement: Engagement = Engagement()
    media: Sequence[str] = ()
    conversation_id: int | None = None
    in_reply_to_id: int | None = None
    lang: str | None = None

    def permalink(self, handle: str | None = None) -> str:
        who = (handle or "").strip() or "i/web"
        return f"https://twitter.com/{who}/status/{self.id}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "author_id": str(self.author_id),
            "created_at": self.created_at.isoformat(),
            "text": self.text,
            "likes": self.engagement.likes,
            "reposts": self.engagement.reposts,
            "replies": self.engagement.replies,
            "quotes": self.engagement.quotes,
            "media": list(self.media),
            "conversation_id": str(self.conversation_id) if self.conversation_id else None,
            "in_reply_to_id": str(self.in_reply_to_id) if self.in_reply_to_id else None,
            "lang": self.lang,
        }


class AuthorArena:
    """
    Authors keyed by ID.

    Posts resolve their author by lookup here. A later sighting of the same ID replaces
    the stored profile, since profile counters only move forward in time.
    """

    def __init__(self, authors: Iterable[Author] | None = None) -> None:
        self._by_id: dict[int, Author] = {}
        if authors is not None:
            self.update(authors)

    def __len__(self) -> int:
        return len(self._by_id)

    def __contains__(self, author_id: object) -> bool:
        return author_id in self._by_id

    def __iter__(self) -> Iterator[Author]:
        return iter(self._by_id.values())

    def add(self, author: Author) -> Author:
        self._by_id[author.id] = author
        return author

    def update(self, authors: Iterable[Author]) -> None:
        for a in authors:
            self.add(a)

    def get(self, author_id: int) -> Author | None:
        return self._by_id.get(author_id)

    def resolve(self, post: Post) -> Author | None:
        return self._by_id.get(post.author_id)
