"""Rate limiting middleware for the HTTP layer.

This module wires the scope resolver, decision engine and counter store into
the request path.

Evaluation:
- Rules run in the order they are declared in the rule file.
- Deny wins and short-circuits: the first denying rule produces the response
  and later rules are neither evaluated nor charged.
- Every evaluated rule consumes one increment, admitted or not; a denied
  request is not a free retry.

Responses:
- Quota exceeded: 429 with code ``rate_limit_exceeded``.
- Store down under fail-closed: 503 with code ``rate_limit_unavailable``.
- Admitted: the wrapped handler's response, untouched.
"""

from __future__ import annotations

import logging
from typing import Iterable

from fastapi import Request, Response, status
from fastapi.responses import JSONResponse

from quotaguard.adapters.counter_store.base import AbstractCounterStore
from quotaguard.core.config import RateLimitSettings, settings
from quotaguard.core.decision import (
    REASON_OVER_LIMIT,
    REASON_STORE_UNAVAILABLE,
    Decision,
    DecisionEngine,
)
from quotaguard.core.logging import get_request_id
from quotaguard.core.rules import RuleSet
from quotaguard.core.scope import RequestInfo, ScopeResolver, hash_identifier
from quotaguard.utils.path_normalizer import normalize_path

logger = logging.getLogger(__name__)


class RateLimiter:
    """Evaluate every applicable rule for a request, deny-wins."""

    def __init__(
        self,
        rule_set: RuleSet,
        engine: DecisionEngine,
        resolver: ScopeResolver,
        *,
        exempt_paths: Iterable[str] = (),
    ) -> None:
        self.rule_set = rule_set
        self.engine = engine
        self.resolver = resolver
        self.exempt_paths = frozenset(normalize_path(p) for p in exempt_paths)

    def is_exempt(self, path: str) -> bool:
        return normalize_path(path) in self.exempt_paths

    async def check(self, request: RequestInfo) -> Decision | None:
        """Run the request through the rule set.

        Args:
            request: Request attribute snapshot.

        Returns:
            The first denying Decision, or None when every applicable rule
            admits the request.
        """
        if self.is_exempt(request.path):
            return None

        for rule in self.rule_set.rules:
            if not rule.applies_to(request.method, request.path):
                continue

            scope_key = self.resolver.resolve(request, rule)
            if scope_key is None:
                continue

            decision = await self.engine.decide(scope_key, rule)
            key_hash = hash_identifier(scope_key)
            if decision.allowed:
                logger.debug(
                    "rate_limit.allowed",
                    extra={
                        "rule": rule.name,
                        "key_hash": key_hash,
                        "limit": decision.limit,
                        "remaining": decision.remaining,
                        "reason": decision.reason,
                    },
                )
                continue

            # Store outages were already logged by the decision engine.
            if decision.reason == REASON_OVER_LIMIT:
                logger.warning(
                    "rate_limit.exceeded",
                    extra={
                        "rule": rule.name,
                        "scope": rule.scope.value,
                        "key_hash": key_hash,
                        "limit": decision.limit,
                        "window_s": rule.window_seconds,
                        "retry_after_s": decision.retry_after_seconds,
                        "reason": decision.reason,
                        "method": request.method,
                        "path": request.path,
                    },
                )
            return decision

        return None


def build_rate_limiter(
    rule_set: RuleSet,
    store: AbstractCounterStore,
    config: RateLimitSettings | None = None,
) -> RateLimiter:
    """Assemble a RateLimiter from settings.

    Args:
        rule_set: Rules loaded at startup.
        store: Counter store shared by all requests.
        config: Rate limit settings; defaults to the global settings.

    Returns:
        RateLimiter: Ready-to-use limiter.
    """
    cfg = config or settings.ratelimit

    if cfg.trust_forwarded_for:
        logger.warning(
            "rate_limit.trusting_forwarded_for",
            extra={
                "hint": (
                    "client_ip scopes read X-Forwarded-For; clients can spoof it "
                    "unless a proxy overwrites the header"
                ),
            },
        )

    engine = DecisionEngine(
        store,
        fail_mode=cfg.fail_mode,
        key_prefix=cfg.key_prefix,
        fail_closed_retry_after_seconds=cfg.fail_closed_retry_after_seconds,
    )
    resolver = ScopeResolver(
        trust_forwarded_for=cfg.trust_forwarded_for,
        api_key_header=cfg.api_key_header,
        unresolved=cfg.unresolved_scope,
    )
    return RateLimiter(rule_set, engine, resolver, exempt_paths=cfg.exempt_paths)


def build_rejection_response(decision: Decision, *, include_headers: bool = True) -> JSONResponse:
    """Render a denying decision as an HTTP error response.

    Args:
        decision: Denying decision.
        include_headers: Whether to add Retry-After and X-RateLimit-* headers.

    Returns:
        JSONResponse: 429 for an exceeded quota, 503 for a store outage.
    """
    if decision.reason == REASON_STORE_UNAVAILABLE:
        status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        code = "rate_limit_unavailable"
        message = "Rate limiting is temporarily unavailable. Try again later."
    else:
        status_code = status.HTTP_429_TOO_MANY_REQUESTS
        code = "rate_limit_exceeded"
        message = "Rate limit exceeded. Try again later."

    error_content: dict = {
        "code": code,
        "message": message,
        "request_id": get_request_id(),
        "details": {"rule": decision.rule_name},
    }
    if decision.retry_after_seconds is not None:
        error_content["details"]["retry_after"] = decision.retry_after_seconds

    headers: dict[str, str] = {}
    if include_headers:
        if decision.retry_after_seconds is not None:
            headers["Retry-After"] = str(decision.retry_after_seconds)
        headers["X-RateLimit-Limit"] = str(decision.limit)
        headers["X-RateLimit-Remaining"] = str(decision.remaining)
        headers["X-RateLimit-Policy"] = decision.rule_name

    return JSONResponse(
        status_code=status_code,
        content={"error": error_content},
        headers=headers or None,
    )


async def rate_limit_middleware(request: Request, call_next) -> Response:
    """HTTP middleware enforcing the configured rate limit rules.

    Reads the limiter from ``request.app.state.rate_limiter`` (installed by
    the app factory). Store and resolution problems are settled inside the
    limiter, so nothing from here leaks into the wrapped handler.

    Args:
        request: The incoming HTTP request object.
        call_next: The next middleware/route handler in the stack.

    Returns:
        Response: Rejection response, or the handler's own response.
    """
    if not settings.ratelimit.enabled:
        return await call_next(request)

    limiter: RateLimiter = request.app.state.rate_limiter
    decision = await limiter.check(RequestInfo.from_request(request))
    if decision is not None:
        return build_rejection_response(
            decision,
            include_headers=settings.ratelimit.include_headers,
        )

    return await call_next(request)
