from __future__ import annotations

import random
import unittest

import httpx

from twtscrape.config import RuntimeSecrets
from twtscrape.config_schema import AppConfig
from twtscrape.errors import AuthError
from twtscrape.session import Session, SessionManager


def _guest_client(tokens: list[str], requests: list[httpx.Request]) -> httpx.Client:
    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json={"guest_token": tokens.pop(0)})

    return httpx.Client(transport=httpx.MockTransport(handler))


class TestSession(unittest.TestCase):
    def test_guest_headers(self) -> None:
        s = Session(bearer_token="b", user_agent="ua", guest_token="g1")
        h = s.headers()
        self.assertEqual(h["Authorization"], "Bearer b")
        self.assertEqual(h["User-Agent"], "ua")
        self.assertEqual(h["x-guest-token"], "g1")
        self.assertIn("gt=g1", h["Cookie"])
        self.assertNotIn("x-csrf-token", h)
        self.assertFalse(s.authenticated)

    def test_authenticated_headers(self) -> None:
        s = Session(bearer_token="b", user_agent="ua", auth_token="tok", csrf_token="c0ffee")
        h = s.headers()
        self.assertEqual(h["x-csrf-token"], "c0ffee")
        self.assertEqual(h["x-twitter-auth-type"], "OAuth2Session")
        self.assertIn("auth_token=tok", h["Cookie"])
        self.assertIn("ct0=c0ffee", h["Cookie"])
        self.assertTrue(s.authenticated)

    def test_after_request_advances_counters_and_merges_cookies(self) -> None:
        s = Session(bearer_token="b", user_agent="ua", guest_token="g1", cookies={"a": "1"})
        s2 = s.after_request(cookies={"b": "2", "gt": "spoofed"}, budget_remaining=10, budget_reset_at=99.0)

        self.assertEqual(s.request_count, 0)
        self.assertEqual(s2.request_count, 1)
        self.assertEqual(s2.requests_since_refresh, 1)
        self.assertEqual(dict(s2.cookies), {"a": "1", "b": "2"})
        self.assertEqual(s2.guest_token, "g1")
        self.assertEqual(s2.budget_remaining, 10)

        s3 = s2.after_request()
        self.assertEqual(s3.budget_remaining, 10)
        self.assertEqual(s3.request_count, 2)


class TestSessionManager(unittest.TestCase):
    def test_acquire_activates_guest_token(self) -> None:
        requests: list[httpx.Request] = []
        client = _guest_client(["g1"], requests)
        mgr = SessionManager(AppConfig(), RuntimeSecrets(bearer_token="bearer"), client=client, clock=lambda: 50.0)

        s = mgr.acquire()
        self.assertEqual(s.guest_token, "g1")
        self.assertEqual(s.created_at, 50.0)
        self.assertIn(s.user_agent, AppConfig().http.user_agents)

        self.assertEqual(len(requests), 1)
        self.assertEqual(requests[0].method, "POST")
        self.assertEqual(requests[0].url.path, "/1.1/guest/activate.json")
        self.assertEqual(requests[0].headers["Authorization"], "Bearer bearer")

    def test_auth_token_skips_network(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise AssertionError("no request expected")

        client = httpx.Client(transport=httpx.MockTransport(handler))
        mgr = SessionManager(AppConfig(), RuntimeSecrets(bearer_token="b", auth_token="tok"), client=client)

        s = mgr.acquire()
        self.assertEqual(s.auth_token, "tok")
        assert s.csrf_token is not None
        self.assertEqual(len(s.csrf_token), 32)
        self.assertIsNone(s.guest_token)
        self.assertFalse(mgr.needs_refresh(s))

    def test_activation_failure_raises_auth_error(self) -> None:
        def forbidden(request: httpx.Request) -> httpx.Response:
            return httpx.Response(403, json={"errors": [{"code": 239}]})

        mgr = SessionManager(
            AppConfig(),
            RuntimeSecrets(bearer_token="b"),
            client=httpx.Client(transport=httpx.MockTransport(forbidden)),
        )
        with self.assertRaises(AuthError):
            mgr.acquire()

        def offline(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("unreachable", request=request)

        mgr = SessionManager(
            AppConfig(),
            RuntimeSecrets(bearer_token="b"),
            client=httpx.Client(transport=httpx.MockTransport(offline)),
        )
        with self.assertRaises(AuthError):
            mgr.acquire()

        def no_token(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={})

        mgr = SessionManager(
            AppConfig(),
            RuntimeSecrets(bearer_token="b"),
            client=httpx.Client(transport=httpx.MockTransport(no_token)),
        )
        with self.assertRaises(AuthError):
            mgr.acquire()

    def test_refresh_keeps_counter_and_rotates_user_agent(self) -> None:
        requests: list[httpx.Request] = []
        client = _guest_client(["g1", "g2"], requests)
        mgr = SessionManager(
            AppConfig(),
            RuntimeSecrets(bearer_token="b"),
            client=client,
            rng=random.Random(3),
        )

        s = mgr.acquire().after_request().after_request()
        fresh = mgr.refresh(s)

        self.assertEqual(fresh.guest_token, "g2")
        self.assertEqual(fresh.request_count, 2)
        self.assertEqual(fresh.requests_since_refresh, 0)
        self.assertNotEqual(fresh.user_agent, s.user_agent)

    def test_needs_refresh_signals(self) -> None:
        cfg = AppConfig.model_validate({"session": {"request_budget": 3, "refresh_margin": 1}})
        mgr = SessionManager(
            cfg,
            RuntimeSecrets(bearer_token="b"),
            client=httpx.Client(transport=httpx.MockTransport(lambda r: httpx.Response(500))),
            clock=lambda: 100.0,
        )

        fresh = Session(bearer_token="b", user_agent="ua", guest_token="g")
        self.assertFalse(mgr.needs_refresh(fresh))

        spent = Session(bearer_token="b", user_agent="ua", guest_token="g", requests_since_refresh=3)
        self.assertTrue(mgr.needs_refresh(spent))

        low = Session(bearer_token="b", user_agent="ua", guest_token="g", budget_remaining=1, budget_reset_at=200.0)
        self.assertTrue(mgr.needs_refresh(low))

        reset_passed = Session(bearer_token="b", user_agent="ua", guest_token="g", budget_remaining=0, budget_reset_at=50.0)
        self.assertFalse(mgr.needs_refresh(reset_passed))

        tokenless = Session(bearer_token="b", user_agent="ua")
        self.assertTrue(mgr.needs_refresh(tokenless))

    def test_acquire_reuses_persisted_session(self) -> None:
        requests: list[httpx.Request] = []
        mgr = SessionManager(AppConfig(), RuntimeSecrets(bearer_token="b"), client=_guest_client(["g9"], requests))

        persisted = Session(bearer_token="b", user_agent="ua", guest_token="g1", request_count=7)
        self.assertIs(mgr.acquire(persisted), persisted)
        self.assertEqual(requests, [])

        foreign = Session(bearer_token="other", user_agent="ua", guest_token="g1")
        replaced = mgr.acquire(foreign)
        self.assertEqual(replaced.guest_token, "g9")
        self.assertEqual(replaced.bearer_token, "b")


if __name__ == "__main__":
    unittest.main()
