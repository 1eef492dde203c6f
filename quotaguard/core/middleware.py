"""Request correlation and access logging middleware.

Installed outermost so that rate limit rejections are logged with the same
request id as everything else the request produced.

Usage:
    app.middleware("http")(request_id_middleware)
"""

from __future__ import annotations

import logging
import time
import uuid

from fastapi import Request, Response

from quotaguard.core.config import settings
from quotaguard.core.logging import clear_request_id, set_request_id

logger = logging.getLogger("quotaguard.access")


async def request_id_middleware(request: Request, call_next) -> Response:
    """Bind a request id for the duration of the request and log the outcome.

    The id comes from the incoming correlation header (``LOG_REQUEST_ID_HEADER``,
    default ``X-Request-ID``) or is generated. It is echoed back on the
    response together with ``X-Request-Duration-ms``.

    Args:
        request: The incoming HTTP request object.
        call_next: The next middleware/route handler in the stack.

    Returns:
        Response: The downstream response with correlation headers added.
    """

    header_name = settings.log.request_id_header
    request_id = request.headers.get(header_name) or str(uuid.uuid4())
    set_request_id(request_id)
    start = time.perf_counter()
    try:
        response: Response = await call_next(request)
        duration_ms = (time.perf_counter() - start) * 1000
        logger.info(
            "http.request",
            extra={
                "method": request.method,
                "path": request.url.path,
                "status": response.status_code,
                "duration_ms": round(duration_ms, 2),
            },
        )
    finally:
        clear_request_id()

    response.headers[header_name] = request_id
    response.headers.setdefault("X-Request-Duration-ms", f"{duration_ms:.2f}")
    return response
