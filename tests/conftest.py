"""Pytest configuration and fixtures shared across all test modules.

This file is automatically loaded by pytest before running any tests.
Environment variables are set before any import of the settings module so
the app never tries to reach a real Redis during tests.
"""

import os
from pathlib import Path

# CRITICAL: Set this before any imports that might load settings
os.environ["APP_ENV"] = "testing"
os.environ.setdefault("STORE_BACKEND", "memory")
os.environ.setdefault(
    "RATELIMIT_RULES_PATH",
    str(Path(__file__).resolve().parents[1] / "rate_limit.yaml"),
)
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest

from quotaguard.adapters.counter_store.base import AbstractCounterStore, CounterResult
from quotaguard.adapters.counter_store.in_memory import InMemoryCounterStore
from quotaguard.core.errors import StoreUnavailableError
from quotaguard.core.rules import RuleSet, parse_rule_set


class FakeClock:
    """Deterministic clock used to test window expiry."""

    def __init__(self, start: float = 1_000.0) -> None:
        self.current = start

    def __call__(self) -> float:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += seconds


class UnavailableStore(AbstractCounterStore):
    """Store that is always down; counts how often it was asked."""

    def __init__(self) -> None:
        self.calls = 0

    async def increment_and_check(
        self, key: str, max_requests: int, window_seconds: float
    ) -> CounterResult:
        self.calls += 1
        raise StoreUnavailableError(
            code="store_unavailable",
            message="Counter store error: connection refused",
            details={"backend": "test"},
        )

    async def ping(self) -> bool:
        raise StoreUnavailableError(
            code="store_unavailable",
            message="Counter store error: connection refused",
            details={"backend": "test"},
        )


def make_rules(*rules: dict) -> RuleSet:
    """Build a RuleSet from plain rule dicts."""
    return parse_rule_set({"rules": list(rules)})


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def memory_store(clock: FakeClock) -> InMemoryCounterStore:
    return InMemoryCounterStore(clock=clock)


@pytest.fixture
def unavailable_store() -> UnavailableStore:
    return UnavailableStore()


@pytest.fixture
def sample_rules() -> RuleSet:
    """The two rules from the sample rate_limit.yaml."""
    return make_rules(
        {
            "name": "root-route",
            "scope": "route",
            "max_requests": 5,
            "window_seconds": 60,
            "paths": ["/"],
        },
        {
            "name": "hello-ip",
            "scope": "client_ip",
            "max_requests": 10,
            "window_seconds": 60,
            "paths": ["/hello"],
        },
    )
