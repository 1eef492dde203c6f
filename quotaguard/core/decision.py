"""Decision engine: one atomic store call per (scope key, rule).

The engine never caches counts and never checks before incrementing; the
store's atomic increment is the only source of truth, which keeps every
process behind the load balancer consistent.

Store outages are resolved here according to the fail mode:
- ``closed`` (default): deny with reason ``store_unavailable``.
- ``open``: admit with reason ``store_unavailable``.
Either way the outage is logged, never silently ignored.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass

from quotaguard.adapters.counter_store.base import AbstractCounterStore
from quotaguard.core.config import FailMode
from quotaguard.core.errors import StoreUnavailableError
from quotaguard.core.rules import Rule

logger = logging.getLogger(__name__)

REASON_OK = "ok"
REASON_OVER_LIMIT = "over_limit"
REASON_STORE_UNAVAILABLE = "store_unavailable"


@dataclass(frozen=True)
class Decision:
    """Admit/deny verdict for one request under one rule.

    Attributes:
        allowed: Whether the request may proceed.
        rule_name: Rule that produced the decision.
        scope_key: Scope key the request was charged against.
        limit: Max requests per window for the rule.
        remaining: Requests left in the current window (0 when denied).
        retry_after_seconds: Suggested wait before retrying when denied.
        reason: ``ok``, ``over_limit`` or ``store_unavailable``.
    """

    allowed: bool
    rule_name: str
    scope_key: str
    limit: int
    remaining: int
    retry_after_seconds: int | None = None
    reason: str = REASON_OK


class DecisionEngine:
    """Turn store counter results into decisions."""

    def __init__(
        self,
        store: AbstractCounterStore,
        *,
        fail_mode: FailMode = FailMode.CLOSED,
        key_prefix: str = "ratelimit",
        fail_closed_retry_after_seconds: int = 1,
    ) -> None:
        self._store = store
        self.fail_mode = fail_mode
        self.key_prefix = key_prefix
        self.fail_closed_retry_after_seconds = fail_closed_retry_after_seconds

    def storage_key(self, scope_key: str, rule: Rule) -> str:
        """Namespace a scope key by rule so rules never share counters."""
        return f"{self.key_prefix}:{rule.name}:{scope_key}"

    async def decide(self, scope_key: str, rule: Rule) -> Decision:
        """Charge one request to ``scope_key`` and decide admit/deny.

        Args:
            scope_key: Key produced by the scope resolver.
            rule: Rule providing the quota.

        Returns:
            Decision for this request.
        """
        try:
            result = await self._store.increment_and_check(
                self.storage_key(scope_key, rule),
                rule.max_requests,
                rule.window_seconds,
            )
        except StoreUnavailableError as exc:
            return self._on_store_unavailable(scope_key, rule, exc)

        if result.count <= rule.max_requests:
            return Decision(
                allowed=True,
                rule_name=rule.name,
                scope_key=scope_key,
                limit=rule.max_requests,
                remaining=rule.max_requests - result.count,
            )

        ttl = result.ttl_seconds if result.ttl_seconds is not None else rule.window_seconds
        return Decision(
            allowed=False,
            rule_name=rule.name,
            scope_key=scope_key,
            limit=rule.max_requests,
            remaining=0,
            retry_after_seconds=max(1, math.ceil(ttl)),
            reason=REASON_OVER_LIMIT,
        )

    def _on_store_unavailable(
        self,
        scope_key: str,
        rule: Rule,
        exc: StoreUnavailableError,
    ) -> Decision:
        allowed = self.fail_mode is FailMode.OPEN
        log_extra = {
            "rule": rule.name,
            "fail_mode": self.fail_mode.value,
            "error_code": exc.code,
            "error_message": exc.message,
        }
        if allowed:
            logger.warning("rate_limit.store_unavailable", extra=log_extra)
        else:
            logger.error("rate_limit.store_unavailable", extra=log_extra)

        return Decision(
            allowed=allowed,
            rule_name=rule.name,
            scope_key=scope_key,
            limit=rule.max_requests,
            remaining=0,
            retry_after_seconds=None if allowed else self.fail_closed_retry_after_seconds,
            reason=REASON_STORE_UNAVAILABLE,
        )
