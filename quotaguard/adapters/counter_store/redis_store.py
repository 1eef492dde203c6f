"""Redis-backed fixed-window counter store.

Every process behind the load balancer talks to the same Redis, so the
counters are shared. One increment is a single MULTI/EXEC transaction::

    SET   key 0 PX <window_ms> NX   -- create the window, only if absent
    INCR  key                       -- count this request
    PTTL  key                       -- time left in the window

Redis runs the transaction without interleaving other clients' commands, so
concurrent callers each observe a distinct, strictly increasing count and
the expiry is set exactly once per window. No read-then-write round trip is
ever made from Python.

Fixed window trade-off: the window is anchored at the first increment and is
never extended, so up to ``2 * max_requests`` requests can be admitted around
the moment one window expires and the next one starts.
"""

from __future__ import annotations

import asyncio
import logging
import math
from urllib.parse import urlsplit, urlunsplit

from redis.asyncio import Redis
from redis.asyncio.retry import Retry
from redis.backoff import ExponentialBackoff, NoBackoff
from redis.exceptions import RedisError

from quotaguard.adapters.counter_store.base import AbstractCounterStore, CounterResult
from quotaguard.core.errors import StoreUnavailableError

logger = logging.getLogger(__name__)


def connection_options(
    *,
    timeout_seconds: float,
    connect_timeout_seconds: float,
    health_check_interval: int,
) -> dict:
    """Keyword arguments for the counter store's redis client.

    Commands are never retried by the client. The increment transaction is
    not idempotent: if Redis ran it and only the reply was lost, sending it
    again would charge the same request twice. Broken connections are
    dropped and replaced by the pool on the next call.
    """
    return {
        "socket_timeout": timeout_seconds,
        "socket_connect_timeout": connect_timeout_seconds,
        "health_check_interval": health_check_interval,
        "retry": Retry(NoBackoff(), 0),
    }


def redact_url(url: str) -> str:
    """Strip credentials from a connection URL before logging it."""
    parts = urlsplit(url)
    if parts.password is None and parts.username is None:
        return url
    host = parts.hostname or ""
    if parts.port:
        host = f"{host}:{parts.port}"
    return urlunsplit((parts.scheme, f"***@{host}", parts.path, parts.query, parts.fragment))


class RedisCounterStore(AbstractCounterStore):
    """Counter store backed by a shared Redis instance.

    Each store call runs as its own task and is awaited through
    ``asyncio.shield``: if the caller is cancelled (client disconnect) or the
    timeout expires, the transaction still runs to completion in the
    background instead of being abandoned halfway.
    """

    def __init__(
        self,
        client: Redis,
        *,
        timeout_seconds: float = 0.5,
        ping_retries: int = 0,
    ) -> None:
        """Initialize the store.

        Args:
            client: redis.asyncio client (pooled, shared by all requests).
                Build it with ``connection_options`` so increments are never
                replayed.
            timeout_seconds: Upper bound for one store round trip.
            ping_retries: Extra attempts for ``ping`` on connection errors.

        Raises:
            ValueError: If timeout_seconds is not positive.
        """
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")

        self._client = client
        self._timeout = timeout_seconds
        self._pending: set[asyncio.Task] = set()
        self._ping_retry = Retry(ExponentialBackoff(cap=timeout_seconds, base=0.01), ping_retries)

    @classmethod
    def from_url(
        cls,
        url: str,
        *,
        timeout_seconds: float = 0.5,
        connect_timeout_seconds: float = 1.0,
        health_check_interval: int = 30,
        retries: int = 1,
    ) -> "RedisCounterStore":
        """Build a store with a pooled connection to ``url``.

        ``retries`` only applies to health pings; increments are sent once.
        """
        client = Redis.from_url(
            url,
            **connection_options(
                timeout_seconds=timeout_seconds,
                connect_timeout_seconds=connect_timeout_seconds,
                health_check_interval=health_check_interval,
            ),
        )
        logger.info(
            "store.redis_configured",
            extra={
                "store_endpoint": redact_url(url),
                "timeout_s": timeout_seconds,
                "retries": retries,
            },
        )
        return cls(client, timeout_seconds=timeout_seconds, ping_retries=retries)

    @property
    def pending_operations(self) -> int:
        """Number of store operations still running in the background."""
        return len(self._pending)

    def _track(self, task: asyncio.Task) -> None:
        self._pending.add(task)
        task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.debug(
                "store.operation_failed",
                extra={"error_type": type(exc).__name__, "error_msg": str(exc)},
            )

    async def _increment(self, key: str, window_ms: int) -> tuple[int, int]:
        async with self._client.pipeline(transaction=True) as pipe:
            pipe.set(key, 0, px=window_ms, nx=True)
            pipe.incr(key)
            pipe.pttl(key)
            _, count, ttl_ms = await pipe.execute()

        if ttl_ms == -1:
            # Counter lost its expiry (e.g. PERSIST from outside); restore it.
            await self._client.pexpire(key, window_ms)
            ttl_ms = window_ms

        return int(count), int(ttl_ms)

    async def increment_and_check(
        self,
        key: str,
        max_requests: int,
        window_seconds: float,
    ) -> CounterResult:
        """Atomically increment ``key`` in Redis and compare with ``max_requests``.

        Raises:
            ValueError: If key is empty or the quota parameters are invalid.
            StoreUnavailableError: If Redis errors out or does not answer in time.
        """
        if not key:
            raise ValueError("key must be a non-empty string")
        if max_requests < 1:
            raise ValueError("max_requests must be >= 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be > 0")

        window_ms = max(1, math.ceil(window_seconds * 1000))
        task = asyncio.ensure_future(self._increment(key, window_ms))
        self._track(task)

        try:
            count, ttl_ms = await asyncio.wait_for(asyncio.shield(task), self._timeout)
        except asyncio.TimeoutError as exc:
            raise StoreUnavailableError(
                code="store_timeout",
                message=f"Counter store did not answer within {self._timeout}s",
                details={"backend": "redis", "timeout_s": self._timeout},
            ) from exc
        except (RedisError, OSError) as exc:
            raise StoreUnavailableError(
                code="store_unavailable",
                message=f"Counter store error: {exc}",
                details={"backend": "redis"},
            ) from exc

        return CounterResult(
            count=count,
            within_quota=count <= max_requests,
            ttl_seconds=ttl_ms / 1000 if ttl_ms >= 0 else None,
        )

    async def _on_ping_failure(self, error: Exception) -> None:
        logger.debug("store.ping_failed", extra={"error_type": type(error).__name__})

    async def ping(self) -> bool:
        try:
            pong = await asyncio.wait_for(
                self._ping_retry.call_with_retry(self._client.ping, self._on_ping_failure),
                self._timeout,
            )
        except asyncio.TimeoutError as exc:
            raise StoreUnavailableError(
                code="store_timeout",
                message=f"Counter store did not answer within {self._timeout}s",
                details={"backend": "redis", "timeout_s": self._timeout},
            ) from exc
        except (RedisError, OSError) as exc:
            raise StoreUnavailableError(
                code="store_unavailable",
                message=f"Counter store error: {exc}",
                details={"backend": "redis"},
            ) from exc
        return bool(pong)

    async def close(self) -> None:
        """Let in-flight increments finish, then close the connection pool."""
        if self._pending:
            await asyncio.wait(set(self._pending), timeout=self._timeout)
        await self._client.aclose()
