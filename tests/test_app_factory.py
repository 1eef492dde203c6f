"""Tests for application wiring: rule loading, store selection and lifespan."""

import logging

import pytest
from fastapi.testclient import TestClient

from quotaguard.adapters.counter_store import factory as store_factory
from quotaguard.adapters.counter_store.in_memory import InMemoryCounterStore
from quotaguard.adapters.counter_store.redis_store import RedisCounterStore
from quotaguard.core import app_factory
from quotaguard.core.app_factory import create_app
from quotaguard.core.errors import ConfigError


class TestCreateApp:
    def test_missing_rule_file_aborts_startup(self, tmp_path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(
            app_factory.settings.ratelimit, "rules_path", str(tmp_path / "absent.yaml")
        )

        with pytest.raises(ConfigError) as exc_info:
            create_app()

        assert exc_info.value.code == "rules_file_missing"

    def test_invalid_rule_file_aborts_startup(self, tmp_path, monkeypatch: pytest.MonkeyPatch) -> None:
        path = tmp_path / "rules.yaml"
        path.write_text("rules:\n  - scope: route\n    max_requests: 0\n    window_seconds: 60\n")
        monkeypatch.setattr(app_factory.settings.ratelimit, "rules_path", str(path))

        with pytest.raises(ConfigError) as exc_info:
            create_app()

        assert exc_info.value.code == "rules_invalid"

    def test_default_app_loads_rule_file_and_store(self) -> None:
        app = create_app()

        assert isinstance(app.state.counter_store, InMemoryCounterStore)
        names = [rule.name for rule in app.state.rate_limiter.rule_set.rules]
        assert names == ["root-route", "hello-ip"]


class TestLifespan:
    def test_store_closed_on_shutdown(self, sample_rules, memory_store) -> None:
        with TestClient(create_app(rule_set=sample_rules, store=memory_store)) as client:
            assert client.get("/").status_code == 200
            assert len(memory_store) == 1

        assert len(memory_store) == 0

    def test_unreachable_store_at_startup_is_logged_not_fatal(
        self,
        sample_rules,
        unavailable_store,
        caplog: pytest.LogCaptureFixture,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        # Keep the root handlers so caplog still sees records.
        monkeypatch.setattr(app_factory, "configure_logging", lambda *_: None)
        app = create_app(rule_set=sample_rules, store=unavailable_store)

        with caplog.at_level(logging.ERROR, logger="quotaguard.core.app_factory"):
            with TestClient(app) as client:
                assert client.get("/").status_code == 503

        assert any(r.getMessage() == "store.unreachable_at_startup" for r in caplog.records)


class TestHealth:
    def test_health_reports_store_ok(self, sample_rules, memory_store) -> None:
        client = TestClient(create_app(rule_set=sample_rules, store=memory_store))

        resp = client.get("/health")

        assert resp.status_code == 200
        assert resp.json()["store"] == "ok"

    def test_health_returns_503_when_store_is_down(self, sample_rules, unavailable_store) -> None:
        client = TestClient(create_app(rule_set=sample_rules, store=unavailable_store))

        resp = client.get("/health")

        assert resp.status_code == 503
        assert resp.json()["error"]["code"] == "store_unavailable"


class TestCounterStoreFactory:
    def test_memory_backend(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(store_factory.settings.store, "backend", "memory")

        assert isinstance(store_factory.create_counter_store(), InMemoryCounterStore)

    def test_redis_backend(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(store_factory.settings.store, "backend", "redis")
        monkeypatch.setattr(store_factory.settings.store, "url", "redis://localhost:6379/0")

        # Building the client does not connect.
        assert isinstance(store_factory.create_counter_store(), RedisCounterStore)

    def test_unknown_backend_raises_config_error(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(store_factory.settings.store, "backend", "memcached")

        with pytest.raises(ConfigError) as exc_info:
            store_factory.create_counter_store()

        assert exc_info.value.code == "store_unknown_backend"
