from typing import Any

from pydantic import BaseModel


class ErrorResponse(BaseModel):
    """Body of every 4xx/5xx response produced by the error middleware."""

    error: str
    detail: str = ""
    # Structured fields of the error, e.g. the rejected transition's state.
    context: dict[str, Any] | None = None
