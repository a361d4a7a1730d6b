"""Correlation ID middleware."""

from __future__ import annotations

import re
from uuid import uuid4

import structlog
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

CORRELATION_ID_HEADER = "X-Correlation-ID"
_ACCEPTED_ID = re.compile(r"[A-Za-z0-9._-]{1,128}")


def resolve_correlation_id(raw_value: str | None) -> str:
    """Reuse a well-formed client id, otherwise mint a fresh one."""
    candidate = (raw_value or "").strip()
    if _ACCEPTED_ID.fullmatch(candidate):
        return candidate
    return str(uuid4())


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Tag each request with an id shared by its logs and its response."""

    async def dispatch(self, request: Request, call_next) -> Response:
        """Bind the id for the request and echo it back."""
        correlation_id = resolve_correlation_id(request.headers.get(CORRELATION_ID_HEADER))
        request.state.correlation_id = correlation_id
        structlog.contextvars.bind_contextvars(correlation_id=correlation_id)
        try:
            response = await call_next(request)
        finally:
            # The auth gate binds user_id further in; both leave with the request.
            structlog.contextvars.unbind_contextvars("correlation_id", "user_id")
        response.headers[CORRELATION_ID_HEADER] = correlation_id
        return response
