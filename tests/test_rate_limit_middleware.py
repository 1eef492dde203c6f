"""End-to-end tests: HTTP requests through the rate limit middleware."""

import time

import pytest
from conftest import make_rules
from fakeredis import FakeServer
from fakeredis import aioredis as fake_aioredis
from fastapi.testclient import TestClient

from quotaguard.adapters.counter_store.redis_store import RedisCounterStore
from quotaguard.core import rate_limit as rate_limit_module
from quotaguard.core.app_factory import create_app
from quotaguard.core.config import FailMode


@pytest.fixture
def client(sample_rules, memory_store) -> TestClient:
    return TestClient(create_app(rule_set=sample_rules, store=memory_store))


class TestScenarios:
    """The admit/deny sequences the sample rule file promises."""

    def test_route_scope_admits_five_then_denies(self, client: TestClient) -> None:
        statuses = [client.get("/").status_code for _ in range(6)]

        assert statuses == [200, 200, 200, 200, 200, 429]

    def test_client_ip_scope_admits_ten_then_denies(self, client: TestClient) -> None:
        statuses = [client.get("/hello").status_code for _ in range(11)]

        assert statuses == [200] * 10 + [429]

    def test_scopes_are_independent(self, client: TestClient) -> None:
        for _ in range(6):
            client.get("/")
        assert client.get("/").status_code == 429

        statuses = [client.get("/hello").status_code for _ in range(11)]
        assert statuses == [200] * 10 + [429]

        assert client.get("/").status_code == 429

    def test_admission_returns_after_window_elapses(self, client: TestClient, clock) -> None:
        for _ in range(5):
            assert client.get("/").status_code == 200
        assert client.get("/").status_code == 429

        clock.advance(60)

        assert client.get("/").status_code == 200

    def test_trailing_slash_and_query_share_the_route_quota(self, memory_store) -> None:
        rules = make_rules(
            {"scope": "route", "max_requests": 2, "window_seconds": 60, "paths": ["/hello"]}
        )
        app_client = TestClient(create_app(rule_set=rules, store=memory_store))

        assert app_client.get("/hello").status_code == 200
        assert app_client.get("/hello/", follow_redirects=False).status_code in (200, 307)
        assert app_client.get("/hello?x=1").status_code == 429


class TestRedisBackedScenarios:
    """Same scenarios with counters living in (fake) Redis."""

    def test_route_limit_and_store_side_expiry(self) -> None:
        rules = make_rules(
            {"scope": "route", "max_requests": 5, "window_seconds": 0.5, "paths": ["/"]}
        )
        store = RedisCounterStore(fake_aioredis.FakeRedis(), timeout_seconds=1.0)

        with TestClient(create_app(rule_set=rules, store=store)) as client:
            statuses = [client.get("/").status_code for _ in range(6)]
            assert statuses == [200] * 5 + [429]

            time.sleep(0.6)

            assert client.get("/").status_code == 200

    def test_two_app_instances_share_one_quota(self) -> None:
        rules = make_rules({"scope": "route", "max_requests": 4, "window_seconds": 60})
        server = FakeServer()
        first_app = create_app(
            rule_set=rules, store=RedisCounterStore(fake_aioredis.FakeRedis(server=server))
        )
        second_app = create_app(
            rule_set=rules, store=RedisCounterStore(fake_aioredis.FakeRedis(server=server))
        )

        # Two service instances, each with its own connection, one Redis server.
        with TestClient(first_app) as first, TestClient(second_app) as second:
            statuses = [
                (first if i % 2 == 0 else second).get("/").status_code for i in range(6)
            ]

        assert statuses == [200, 200, 200, 200, 429, 429]


class TestRejectionResponse:
    def test_429_body_and_headers(self, client: TestClient) -> None:
        for _ in range(5):
            client.get("/")

        resp = client.get("/", headers={"X-Request-ID": "req-429"})

        assert resp.status_code == 429
        body = resp.json()
        assert body["error"]["code"] == "rate_limit_exceeded"
        assert body["error"]["request_id"] == "req-429"
        assert body["error"]["details"]["rule"] == "root-route"
        assert resp.headers["Retry-After"] == "60"
        assert resp.headers["X-RateLimit-Limit"] == "5"
        assert resp.headers["X-RateLimit-Remaining"] == "0"
        assert resp.headers["X-RateLimit-Policy"] == "root-route"
        assert resp.headers["X-Request-ID"] == "req-429"

    def test_headers_can_be_disabled(self, client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(rate_limit_module.settings.ratelimit, "include_headers", False)
        for _ in range(5):
            client.get("/")

        resp = client.get("/")

        assert resp.status_code == 429
        assert "Retry-After" not in resp.headers
        assert "X-RateLimit-Limit" not in resp.headers

    def test_admitted_response_is_untouched(self, client: TestClient) -> None:
        resp = client.get("/")

        assert resp.status_code == 200
        assert resp.text == "Hello"
        assert "X-RateLimit-Limit" not in resp.headers


class TestFailPolicy:
    def test_fail_closed_denies_every_request(self, sample_rules, unavailable_store) -> None:
        client = TestClient(create_app(rule_set=sample_rules, store=unavailable_store))

        responses = [client.get(path) for path in ["/", "/hello"] * 10]

        assert {r.status_code for r in responses} == {503}
        assert responses[0].json()["error"]["code"] == "rate_limit_unavailable"
        assert responses[0].headers["Retry-After"] == "1"

    def test_fail_open_admits_every_request(
        self, sample_rules, unavailable_store, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setattr(rate_limit_module.settings.ratelimit, "fail_mode", FailMode.OPEN)
        client = TestClient(create_app(rule_set=sample_rules, store=unavailable_store))

        responses = [client.get(path) for path in ["/", "/hello"] * 10]

        assert {r.status_code for r in responses} == {200}
        assert unavailable_store.calls == 20


class TestBypass:
    def test_disabled_rate_limiting_skips_the_store(
        self, sample_rules, unavailable_store, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setattr(rate_limit_module.settings.ratelimit, "enabled", False)
        client = TestClient(create_app(rule_set=sample_rules, store=unavailable_store))

        assert all(client.get("/").status_code == 200 for _ in range(10))
        assert unavailable_store.calls == 0

    def test_health_is_exempt(self, memory_store) -> None:
        rules = make_rules({"scope": "client_ip", "max_requests": 1, "window_seconds": 60})
        client = TestClient(create_app(rule_set=rules, store=memory_store))

        assert all(client.get("/health").status_code == 200 for _ in range(5))
        assert client.get("/").status_code == 200
        assert client.get("/").status_code == 429
