"""Application factory for the FastAPI app.

Centralizes app construction (rules, counter store, middleware, handlers,
routers). The rule file is loaded here, before the app object exists, so a
bad rule file aborts startup instead of producing a half-configured service.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from quotaguard.adapters.counter_store.base import AbstractCounterStore
from quotaguard.adapters.counter_store.factory import create_counter_store
from quotaguard.api.routes import health_router, hello_router
from quotaguard.core.config import settings
from quotaguard.core.errors import StoreUnavailableError
from quotaguard.core.exception_handlers import setup_exception_handlers
from quotaguard.core.logging import configure_logging
from quotaguard.core.middleware import request_id_middleware
from quotaguard.core.rate_limit import build_rate_limiter, rate_limit_middleware
from quotaguard.core.rules import RuleSet, load_rule_set

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Check the store once at startup and release it at shutdown.

    An unreachable store is not fatal: requests are then handled by the
    configured fail mode until it comes back.
    """
    store: AbstractCounterStore = app.state.counter_store
    try:
        await store.ping()
        logger.info("store.ready", extra={"backend": settings.store.backend})
    except StoreUnavailableError as exc:
        logger.error(
            "store.unreachable_at_startup",
            extra={
                "backend": settings.store.backend,
                "error_code": exc.code,
                "fail_mode": settings.ratelimit.fail_mode.value,
            },
        )

    yield

    await store.close()


def create_app(
    *,
    rule_set: RuleSet | None = None,
    store: AbstractCounterStore | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application instance.

    Args:
        rule_set: Pre-built rules; loaded from ``RATELIMIT_RULES_PATH`` when omitted.
        store: Counter store; built from ``STORE_*`` settings when omitted.

    Returns:
        Configured FastAPI app with rate limiting, handlers and routers.

    Raises:
        ConfigError: If the rule file is missing or invalid.
    """
    # Logging first so subsequent init logs are formatted as desired
    configure_logging(settings.log)

    rules = rule_set if rule_set is not None else load_rule_set(settings.ratelimit.rules_path)
    counter_store = store if store is not None else create_counter_store()

    app = FastAPI(
        title="quotaguard",
        description=(
            "HTTP service protected by a distributed fixed-window rate limiter. "
            "Quotas are declared per route, per client address or per API key "
            "and counted in a shared Redis so limits hold across processes."
        ),
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.counter_store = counter_store
    app.state.rate_limiter = build_rate_limiter(rules, counter_store)

    # Middleware: the last one added runs first, so request ids wrap rate limiting
    app.middleware("http")(rate_limit_middleware)
    app.middleware("http")(request_id_middleware)

    # Exception handlers
    setup_exception_handlers(app)

    # Routers
    app.include_router(health_router)
    app.include_router(hello_router)

    return app
