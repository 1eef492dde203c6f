"""Counter store interfaces.

The decision engine depends on this abstraction (not the concrete
implementation) so the shared store can be swapped without touching the
HTTP layer.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass


@dataclass(frozen=True)
class CounterResult:
    """Outcome of one atomic increment.

    Attributes:
        count: Counter value after this increment (1 for the first hit of a window).
        within_quota: Whether ``count`` is still within the allowed maximum.
        ttl_seconds: Time left before the counter expires, if the store reports it.
    """

    count: int
    within_quota: bool
    ttl_seconds: float | None


class AbstractCounterStore(ABC):
    """Interface for fixed-window counter stores.

    Implementations must make ``increment_and_check`` a single indivisible
    operation with respect to every caller sharing the store.
    """

    @abstractmethod
    async def increment_and_check(
        self,
        key: str,
        max_requests: int,
        window_seconds: float,
    ) -> CounterResult:
        """Increment the counter for ``key`` and compare it with ``max_requests``.

        The first increment of a window creates the counter with an expiry of
        ``window_seconds``; later increments never extend it.

        Args:
            key: Fully namespaced counter key.
            max_requests: Allowed increments per window.
            window_seconds: Window length in seconds.

        Returns:
            CounterResult for this increment.

        Raises:
            StoreUnavailableError: If the store cannot be reached in time.
        """
        raise NotImplementedError

    @abstractmethod
    async def ping(self) -> bool:
        """Return True when the store answers.

        Raises:
            StoreUnavailableError: If the store cannot be reached.
        """
        raise NotImplementedError

    async def close(self) -> None:
        """Release connections held by the store."""
        return None
