"""Request / response logging middleware using structlog.

Every request gets a request id (taken from ``X-Request-ID`` or generated),
bound into structlog's context variables so that lifecycle events logged
while handling the request carry it too.  The id is echoed back in the
response headers.
"""

from __future__ import annotations

import time
import uuid

import structlog
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response

from agent_tasks.utils.logging import get_logger

logger = get_logger(__name__)

REQUEST_ID_HEADER = "x-request-id"


class LoggingMiddleware(BaseHTTPMiddleware):
    """Logs every HTTP request with timing, status and request id."""

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint,
    ) -> Response:
        start = time.perf_counter()
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex[:12]

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        )
        logger.debug("request_started")

        try:
            response = await call_next(request)
        except Exception:
            elapsed_ms = round((time.perf_counter() - start) * 1000, 2)
            logger.error("request_failed", elapsed_ms=elapsed_ms)
            raise

        elapsed_ms = round((time.perf_counter() - start) * 1000, 2)
        log_fn = logger.info if response.status_code < 400 else logger.warning
        log_fn("request_completed", status_code=response.status_code, elapsed_ms=elapsed_ms)

        response.headers[REQUEST_ID_HEADER] = request_id
        structlog.contextvars.clear_contextvars()
        return response
