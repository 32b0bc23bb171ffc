from __future__ import annotations

import hashlib
import struct
from dataclasses import dataclass, field
from typing import Iterable

from .records import Post


def _ids_sha256(ids: tuple[int, ...]) -> str:
    h = hashlib.sha256()
    for i in ids:
        h.update(struct.pack("<Q", i))
    return h.hexdigest()


@dataclass(frozen=True)
class SeenDigest:
    """Sorted snapshot of a SeenSet plus a checksum, used to resume a run."""

    ids: tuple[int, ...]
    sha256: str

    @classmethod
    def of(cls, ids: Iterable[int]) -> "SeenDigest":
        ordered = tuple(sorted(set(int(i) for i in ids)))
        return cls(ids=ordered, sha256=_ids_sha256(ordered))

    def verify(self) -> bool:
        return _ids_sha256(self.ids) == self.sha256

    def __len__(self) -> int:
        return len(self.ids)


@dataclass
class SeenSet:
    """Post IDs already emitted in the current run. Only ever grows."""

    ids: set[int] = field(default_factory=set)

    def __contains__(self, post_id: object) -> bool:
        return post_id in self.ids

    def __len__(self) -> int:
        return len(self.ids)

    def add(self, post_id: int) -> bool:
        """Record `post_id`; return True when it had not been seen before."""
        if post_id in self.ids:
            return False
        self.ids.add(post_id)
        return True

    def partition(self, posts: Iterable[Post]) -> tuple[list[Post], int]:
        """
        Split a page into posts not yet seen (in page order) and a duplicate count.

        Repeats inside the same page count as duplicates too. The set itself is left
        untouched; callers add() each post as they hand it out.
        """
        fresh: list[Post] = []
        batch: set[int] = set()
        dupes = 0
        for post in posts:
            if post.id in self.ids or post.id in batch:
                dupes += 1
                continue
            batch.add(post.id)
            fresh.append(post)
        return fresh, dupes

    def digest(self) -> SeenDigest:
        return SeenDigest.of(self.ids)

    @classmethod
    def from_digest(cls, digest: SeenDigest) -> "SeenSet":
        return cls(ids=set(digest.ids))
