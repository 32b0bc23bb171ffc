from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    """Classification of everything that can go wrong while paginating a query."""

    TRANSIENT_NETWORK = "transient_network"
    RATE_LIMITED = "rate_limited"
    AUTH_EXPIRED = "auth_expired"
    MALFORMED_PAGE = "malformed_page"
    MALFORMED_RECORD = "malformed_record"
    FATAL_HTTP = "fatal_http"
    CURSOR_REGRESSION = "cursor_regression"


class ConfigError(RuntimeError):
    """Raised when configuration is missing or invalid."""


class StorageError(RuntimeError):
    """Raised when reading or writing state in SQLite fails."""


class ArchiveError(RuntimeError):
    """Raised when an archived blob is truncated, corrupt, or of the wrong kind."""


class UnsupportedArchiveVersion(ArchiveError):
    """Raised when an archive carries a format version this build cannot read."""

    def __init__(self, version: int) -> None:
        super().__init__(f"Unsupported archive format version: {version}")
        self.version = version


class AuthError(RuntimeError):
    """Raised when a session cannot be created or refreshed."""


class MalformedPageError(RuntimeError):
    """Raised when a page body does not contain any recognizable result structure."""


class MalformedRecordError(RuntimeError):
    """Raised for a single record that cannot be turned into a Post or Author."""


class RunCancelled(RuntimeError):
    """Raised inside a run when its cancellation token fires."""


class ScrapeFailed(RuntimeError):
    """Raised by ScrapeRun.raise_for_outcome() when a run ended Failed."""

    def __init__(self, kind: ErrorKind, message: str) -> None:
        super().__init__(f"{kind.value}: {message}")
        self.kind = kind
