from __future__ import annotations

import random
import secrets
import time
from dataclasses import dataclass, field, replace
from threading import Lock
from typing import Any, Callable, Mapping

import httpx

from .config import RuntimeSecrets
from .config_schema import AppConfig
from .endpoints import build_http_client, guest_activate_url
from .errors import AuthError

ClockFn = Callable[[], float]


@dataclass(frozen=True)
class Session:
    """
    Credentials and request accounting for one scrape run.

    Sessions are values: the fetcher and the manager return updated copies instead of
    mutating shared state, so concurrent runs never see each other's tokens.
    """

    bearer_token: str
    user_agent: str
    guest_token: str | None = None
    auth_token: str | None = None
    csrf_token: str | None = None
    cookies: Mapping[str, str] = field(default_factory=dict)
    request_count: int = 0
    requests_since_refresh: int = 0
    budget_remaining: int | None = None
    budget_reset_at: float | None = None
    created_at: float = 0.0

    @property
    def authenticated(self) -> bool:
        return bool(self.auth_token)

    def cookie_jar(self) -> dict[str, str]:
        jar = dict(self.cookies)
        if self.guest_token:
            jar["gt"] = self.guest_token
        if self.auth_token:
            jar["auth_token"] = self.auth_token
        if self.csrf_token:
            jar["ct0"] = self.csrf_token
        return jar

    def headers(self) -> dict[str, str]:
        out = {
            "Authorization": f"Bearer {self.bearer_token}",
            "User-Agent": self.user_agent,
            "Accept": "*/*",
            "Accept-Language": "en-US,en;q=0.9",
            "x-twitter-active-user": "yes",
            "x-twitter-client-language": "en",
        }
        if self.guest_token:
            out["x-guest-token"] = self.guest_token
        if self.auth_token:
            out["x-twitter-auth-type"] = "OAuth2Session"
        if self.csrf_token:
            out["x-csrf-token"] = self.csrf_token

        jar = self.cookie_jar()
        if jar:
            out["Cookie"] = "; ".join(f"{k}={v}" for k, v in sorted(jar.items()))
        return out

    def after_request(
        self,
        *,
        cookies: Mapping[str, str] | None = None,
        budget_remaining: int | None = None,
        budget_reset_at: float | None = None,
    ) -> "Session":
        """Copy with the request counter advanced and response-side state merged in."""
        merged = dict(self.cookies)
        for k, v in (cookies or {}).items():
            # Credential cookies live in their own fields.
            if k in ("gt", "auth_token", "ct0"):
                continue
            merged[k] = v

        return replace(
            self,
            cookies=merged,
            request_count=self.request_count + 1,
            requests_since_refresh=self.requests_since_refresh + 1,
            budget_remaining=self.budget_remaining if budget_remaining is None else budget_remaining,
            budget_reset_at=self.budget_reset_at if budget_reset_at is None else budget_reset_at,
        )


class SessionManager:
    """
    Creates, loads and refreshes Sessions.

    Without an auth token every session is a guest session activated against the
    platform; with one, the session carries the auth_token cookie plus a locally
    generated CSRF token and refreshing only rotates the CSRF token and user agent.
    """

    def __init__(
        self,
        config: AppConfig,
        secrets_: RuntimeSecrets,
        *,
        client: httpx.Client | None = None,
        clock: ClockFn | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self._config = config
        self._secrets = secrets_
        self._owns_client = client is None
        self._client = client if client is not None else build_http_client(config.http)
        self._clock = clock or time.time
        self._rng = rng or random.Random()
        self._lock = Lock()

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> "SessionManager":
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        self.close()

    def next_user_agent(self, *, avoid: str | None = None) -> str:
        agents = list(self._config.http.user_agents)
        if avoid is not None and len(agents) > 1:
            agents = [ua for ua in agents if ua != avoid]
        with self._lock:
            return self._rng.choice(agents)

    def acquire(self, persisted: Session | None = None) -> Session:
        """
        Return a usable Session: the persisted one when it is still good, otherwise a fresh one.

        Raises AuthError when a guest token cannot be obtained.
        """
        if persisted is not None:
            if persisted.bearer_token != self._secrets.bearer_token:
                return self._create()
            if self.needs_refresh(persisted):
                return self.refresh(persisted)
            return persisted
        return self._create()

    def refresh(self, session: Session) -> Session:
        """Rebuild credentials for `session`, keeping its request counter."""
        fresh = self._create(avoid_user_agent=session.user_agent)
        return replace(fresh, request_count=session.request_count)

    def needs_refresh(self, session: Session) -> bool:
        """True when a guest session should be rotated before its next request."""
        if session.authenticated:
            return False

        if not session.guest_token:
            return True

        cfg = self._config.session
        if session.requests_since_refresh >= cfg.request_budget:
            return True

        if session.budget_remaining is not None and session.budget_remaining <= cfg.refresh_margin:
            reset_at = session.budget_reset_at
            return reset_at is None or reset_at > self._clock()

        return False

    def _create(self, *, avoid_user_agent: str | None = None) -> Session:
        ua = self.next_user_agent(avoid=avoid_user_agent)
        now = float(self._clock())

        if self._secrets.auth_token:
            return Session(
                bearer_token=self._secrets.bearer_token,
                user_agent=ua,
                auth_token=self._secrets.auth_token,
                csrf_token=secrets.token_hex(16),
                created_at=now,
            )

        return Session(
            bearer_token=self._secrets.bearer_token,
            user_agent=ua,
            guest_token=self._activate_guest(ua),
            created_at=now,
        )

    def _activate_guest(self, user_agent: str) -> str:
        url = guest_activate_url(self._config.http)
        headers = {
            "Authorization": f"Bearer {self._secrets.bearer_token}",
            "User-Agent": user_agent,
        }

        try:
            resp = self._client.post(
                url,
                headers=headers,
                timeout=self._config.http.request_timeout_seconds,
            )
        except httpx.HTTPError as e:
            raise AuthError(f"Guest activation failed: {type(e).__name__}") from e

        if resp.status_code != 200:
            raise AuthError(f"Guest activation failed with HTTP {resp.status_code}")

        try:
            payload: Any = resp.json()
        except ValueError as e:
            raise AuthError("Guest activation returned invalid JSON") from e

        token = payload.get("guest_token") if isinstance(payload, dict) else None
        if not isinstance(token, str) or not token.strip():
            raise AuthError("Guest activation response had no guest_token")
        return token.strip()
