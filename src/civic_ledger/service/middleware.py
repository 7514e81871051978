"""Correlation ids for the pipeline service.

A caller-supplied ``X-Correlation-ID`` is kept, otherwise one is generated.
It is bound to the logging context for the request, handed to side-effect
jobs by the dispatcher, echoed in response headers and included in error
bodies.
"""

from __future__ import annotations

import uuid
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from .logging import bound_context

CORRELATION_ID_HEADER = "X-Correlation-ID"
REQUEST_ID_HEADER = "X-Request-ID"


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Bind correlation and request ids around every request."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        correlation_id = request.headers.get(CORRELATION_ID_HEADER) or uuid.uuid4().hex
        request_id = uuid.uuid4().hex[:8]
        request.state.correlation_id = correlation_id
        request.state.request_id = request_id

        with bound_context(
            correlation_id=correlation_id,
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        ):
            response = await call_next(request)

        response.headers[CORRELATION_ID_HEADER] = correlation_id
        response.headers[REQUEST_ID_HEADER] = request_id
        return response


def get_correlation_id(request: Request) -> str | None:
    """Correlation id of the request, if the middleware ran."""
    return getattr(request.state, "correlation_id", None)


__all__ = [
    "CorrelationIdMiddleware",
    "CORRELATION_ID_HEADER",
    "REQUEST_ID_HEADER",
    "get_correlation_id",
]
