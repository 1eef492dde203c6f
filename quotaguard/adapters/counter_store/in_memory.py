"""In-memory fixed-window counter store.

Notes:
- Per-process only: running multiple workers multiplies the effective limit.
- Thread-safe: uses a lock around shared state.
- Windows start at the first increment of a key, exactly like the Redis store.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable

from quotaguard.adapters.counter_store.base import AbstractCounterStore, CounterResult


@dataclass
class _Counter:
    count: int
    expires_at: float


class InMemoryCounterStore(AbstractCounterStore):
    """Counter store keeping fixed-window counters in a local dict.

    Important:
        This store is per-process only. If the API runs with multiple workers
        (e.g., multiple Uvicorn/Gunicorn workers), each worker enforces its
        own independent limits. Use the Redis store in production.
    """

    def __init__(
        self,
        *,
        clock: Callable[[], float] = time.monotonic,
        purge_threshold: int = 10_000,
    ) -> None:
        """Initialize the in-memory store.

        Args:
            clock: Time source returning seconds; injectable for tests.
            purge_threshold: Number of tracked keys above which expired
                counters are swept.
        """
        self._clock = clock
        self._purge_threshold = purge_threshold
        self._lock = threading.RLock()
        self._counters: dict[str, _Counter] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._counters)

    def _purge_expired(self, now: float) -> None:
        expired = [key for key, counter in self._counters.items() if counter.expires_at <= now]
        for key in expired:
            del self._counters[key]

    async def increment_and_check(
        self,
        key: str,
        max_requests: int,
        window_seconds: float,
    ) -> CounterResult:
        """Increment the counter for ``key`` under the store lock.

        Raises:
            ValueError: If key is empty or the quota parameters are invalid.
        """
        if not key:
            raise ValueError("key must be a non-empty string")
        if max_requests < 1:
            raise ValueError("max_requests must be >= 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be > 0")

        with self._lock:
            now = self._clock()
            if len(self._counters) > self._purge_threshold:
                self._purge_expired(now)

            counter = self._counters.get(key)
            if counter is None or counter.expires_at <= now:
                counter = _Counter(count=0, expires_at=now + window_seconds)
                self._counters[key] = counter

            counter.count += 1
            return CounterResult(
                count=counter.count,
                within_quota=counter.count <= max_requests,
                ttl_seconds=max(0.0, counter.expires_at - now),
            )

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        with self._lock:
            self._counters.clear()
