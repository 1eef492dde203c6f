"""Factory for creating counter store instances."""

import logging

from quotaguard.adapters.counter_store.base import AbstractCounterStore
from quotaguard.adapters.counter_store.in_memory import InMemoryCounterStore
from quotaguard.adapters.counter_store.redis_store import RedisCounterStore
from quotaguard.core.config import settings
from quotaguard.core.errors import ConfigError

logger = logging.getLogger(__name__)


def create_counter_store() -> AbstractCounterStore:
    """Factory function to instantiate the configured counter store.

    Reads configuration from quotaguard.core.config.settings (Pydantic Settings).

    Returns:
        AbstractCounterStore: Configured store instance.

    Raises:
        ConfigError: If the configured backend is unknown.
    """
    backend = settings.store.backend.lower()

    if backend == "redis":
        return RedisCounterStore.from_url(
            settings.store.url,
            timeout_seconds=settings.store.timeout_seconds,
            connect_timeout_seconds=settings.store.connect_timeout_seconds,
            health_check_interval=settings.store.health_check_interval,
            retries=settings.store.retries,
        )

    if backend == "memory":
        logger.warning(
            "store.memory_backend",
            extra={"hint": "counters are per-process; limits multiply with worker count"},
        )
        return InMemoryCounterStore()

    raise ConfigError(
        code="store_unknown_backend",
        message=f"Unknown counter store backend: '{backend}'. Supported backends: redis, memory",
        details={"backend": backend},
    )
