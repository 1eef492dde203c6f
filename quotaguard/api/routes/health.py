from __future__ import annotations

from fastapi import APIRouter, Request

from quotaguard.core.config import settings

router = APIRouter(tags=["Health"])


@router.get("/health")
async def health_check(request: Request) -> dict:
    """Health check endpoint.

    Pings the counter store so load balancers stop routing to an instance
    whose rate limiter cannot reach its counters. The path is exempt from
    rate limiting by default.

    Returns:
        dict: Service name, status and store status.

    Raises:
        StoreUnavailableError: When the store does not answer (rendered as 503).
    """

    await request.app.state.counter_store.ping()
    return {"status": "ok", "service": settings.app.name, "store": "ok"}
