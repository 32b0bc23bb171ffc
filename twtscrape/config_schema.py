from __future__ import annotations

import re
from typing import Annotated

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

_ENV_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

DEFAULT_USER_AGENTS: tuple[str, ...] = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:121.0) Gecko/20100101 Firefox/121.0",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.2 Safari/605.1.15",
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
)

# GraphQL query ids rotate on the platform side; override them in config when they do.
DEFAULT_GRAPHQL_QUERY_IDS: dict[str, str] = {
    "UserByScreenName": "ptQPCD7NrFS_TW71Lq07nw",
    "UserTweetsAndReplies": "s0hG9oAmWEYVBqOLJP-TBQ",
    "TweetDetail": "BoHLKeBvibdYDiJON1oqTg",
}


def _validate_env_var_name(value: str) -> str:
    name = (value or "").strip()
    if not _ENV_NAME_RE.fullmatch(name):
        raise ValueError("must be a valid environment variable name")
    return name


def _normalize_str_list(values: list[str]) -> list[str]:
    out: list[str] = []
    seen: set[str] = set()
    for item in values:
        s = (item or "").strip()
        if not s or s in seen:
            continue
        seen.add(s)
        out.append(s)
    if not out:
        raise ValueError("must contain at least one non-empty value")
    return out


PositiveInt = Annotated[int, Field(ge=1)]
NonNegativeInt = Annotated[int, Field(ge=0)]
PositiveFloat = Annotated[float, Field(gt=0)]
NonNegativeFloat = Annotated[float, Field(ge=0)]


class HttpConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    base_url: str = "https://twitter.com"
    api_base_url: str = "https://api.twitter.com"
    request_timeout_seconds: PositiveFloat = 30.0
    page_size: int = Field(20, ge=1, le=100)
    user_agents: list[str] = Field(default_factory=lambda: list(DEFAULT_USER_AGENTS))
    graphql_query_ids: dict[str, str] = Field(default_factory=lambda: dict(DEFAULT_GRAPHQL_QUERY_IDS))
    proxy: str | None = None
    verify_tls: bool = True

    @field_validator("base_url", "api_base_url")
    @classmethod
    def _strip_trailing_slash(cls, v: str) -> str:
        url = (v or "").strip().rstrip("/")
        if not url.startswith(("http://", "https://")):
            raise ValueError("must be an http(s) URL")
        return url

    @field_validator("user_agents")
    @classmethod
    def _normalize_user_agents(cls, v: list[str]) -> list[str]:
        return _normalize_str_list(v)

    @field_validator("graphql_query_ids")
    @classmethod
    def _fill_missing_query_ids(cls, v: dict[str, str]) -> dict[str, str]:
        merged = dict(DEFAULT_GRAPHQL_QUERY_IDS)
        merged.update({k: s.strip() for k, s in v.items() if (s or "").strip()})
        return merged


class RateLimitConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    requests_per_window: PositiveInt = 50
    window_seconds: PositiveFloat = 60.0
    max_wait_seconds: PositiveFloat = 900.0


class BackoffConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    max_page_retries: NonNegativeInt = 5
    base_delay_seconds: NonNegativeFloat = 1.0
    max_delay_seconds: NonNegativeFloat = 60.0
    jitter_ratio: float = Field(0.25, ge=0.0, le=1.0)
    retry_after_cap_seconds: PositiveFloat = 900.0

    @model_validator(mode="after")
    def _max_covers_base(self) -> "BackoffConfig":
        if self.max_delay_seconds < self.base_delay_seconds:
            raise ValueError("max_delay_seconds must be >= base_delay_seconds")
        return self


class SessionConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    bearer_token_env: str = "TWTSCRAPE_BEARER_TOKEN"
    auth_token_env: str = "TWTSCRAPE_AUTH_TOKEN"
    max_auth_refreshes: NonNegativeInt = 2
    request_budget: PositiveInt = 180
    refresh_margin: NonNegativeInt = 1

    @field_validator("bearer_token_env", "auth_token_env")
    @classmethod
    def _env_must_be_valid(cls, v: str) -> str:
        return _validate_env_var_name(v)


class PaginationConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    empty_page_threshold: PositiveInt = 3
    max_pages: PositiveInt | None = None


class AppConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    http: HttpConfig = Field(default_factory=HttpConfig)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    backoff: BackoffConfig = Field(default_factory=BackoffConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)
    pagination: PaginationConfig = Field(default_factory=PaginationConfig)
