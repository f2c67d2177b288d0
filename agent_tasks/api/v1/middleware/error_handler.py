"""Translate engine exceptions raised by endpoints into JSON error responses.

Status codes are looked up along the exception's MRO, so a subclass of a
mapped error gets its parent's code.  Errors that carry structured
attributes (the entity and state of a rejected transition, the versions of
a concurrent write) expose them under ``context``.
"""

from __future__ import annotations

from typing import Any

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response

from agent_tasks.utils.exceptions import (
    ConcurrencyError,
    ConflictError,
    HandlerNotFoundError,
    InvalidTransitionError,
    NotFoundError,
    TaskEngineError,
    ValidationError,
)
from agent_tasks.utils.logging import get_logger

logger = get_logger(__name__)

_STATUS_BY_ERROR: dict[type[TaskEngineError], int] = {
    NotFoundError: 404,
    HandlerNotFoundError: 404,
    ValidationError: 422,
    InvalidTransitionError: 409,
    ConflictError: 409,
    ConcurrencyError: 409,
}


def status_for(exc: TaskEngineError) -> int:
    for cls in type(exc).__mro__:
        if cls in _STATUS_BY_ERROR:
            return _STATUS_BY_ERROR[cls]
    return 500


def _error_context(exc: TaskEngineError) -> dict[str, Any] | None:
    if isinstance(exc, InvalidTransitionError):
        return {"entity": exc.entity, "current": exc.current, "action": exc.action}
    if isinstance(exc, ConcurrencyError):
        return {"task_id": exc.task_id, "expected": exc.expected, "actual": exc.actual}
    if isinstance(exc, NotFoundError):
        return {"entity": exc.entity, "id": exc.entity_id}
    return None


class ErrorHandlerMiddleware(BaseHTTPMiddleware):
    """Turn :class:`TaskEngineError` into 404/409/422 responses and anything else into 500."""

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint,
    ) -> Response:
        try:
            return await call_next(request)
        except TaskEngineError as exc:
            status_code = status_for(exc)
            logger.warning(
                "engine_error",
                error_type=type(exc).__name__,
                status_code=status_code,
                detail=str(exc),
            )
            content: dict[str, Any] = {"error": type(exc).__name__, "detail": str(exc)}
            context = _error_context(exc)
            if context is not None:
                content["context"] = context
            return JSONResponse(status_code=status_code, content=content)
        except Exception as exc:
            logger.error(
                "unhandled_error",
                error_type=type(exc).__name__,
                detail=str(exc),
                exc_info=True,
            )
            return JSONResponse(
                status_code=500,
                content={
                    "error": "InternalServerError",
                    "detail": "An unexpected error occurred.",
                },
            )
