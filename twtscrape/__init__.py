from __future__ import annotations

from .cancellation import CancelToken
from .config import config_sha256, load_config, resolve_runtime_secrets
from .config_schema import AppConfig
from .driver import DriverState, PaginationDriver, RunOutcome, ScrapeRun, TerminalReason
from .errors import ConfigError, ErrorKind, ScrapeFailed
from .query import Cursor, Query, QueryMode
from .records import Author, Post
from .runner import build_driver, run_queries

__all__ = [
    "AppConfig",
    "Author",
    "CancelToken",
    "ConfigError",
    "Cursor",
    "DriverState",
    "ErrorKind",
    "PaginationDriver",
    "Post",
    "Query",
    "QueryMode",
    "RunOutcome",
    "ScrapeFailed",
    "ScrapeRun",
    "TerminalReason",
    "build_driver",
    "config_sha256",
    "load_config",
    "resolve_runtime_secrets",
    "run_queries",
]
