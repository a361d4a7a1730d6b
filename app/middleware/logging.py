"""One structured access log line per request."""

from __future__ import annotations

from time import perf_counter
from typing import Any

import structlog
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from app.core.redaction import redact_mapping
from app.services.audit_service import extract_client_ip

logger = structlog.get_logger(__name__)


def _request_fields(request: Request) -> dict[str, Any]:
    """Fields known before the handler runs; query values are masked."""
    return {
        "method": request.method,
        "path": request.url.path,
        "query_params": redact_mapping(dict(request.query_params)) or {},
        "client_ip": extract_client_ip(request) or "unknown",
        "user_agent": request.headers.get("user-agent", ""),
    }


def _outcome_fields(request: Request, status_code: int, started: float) -> dict[str, Any]:
    """Fields set while handling: principal, transaction fate and timing."""
    principal = getattr(request.state, "principal", None)
    principal_id = getattr(principal, "id", None)
    row_scope = getattr(request.state, "row_scope", None)
    return {
        "status_code": status_code,
        "duration_ms": round((perf_counter() - started) * 1000, 2),
        "user_id": str(principal_id) if principal_id is not None else None,
        "transaction": getattr(row_scope, "outcome", None),
    }


class LoggingMiddleware(BaseHTTPMiddleware):
    """Log completion of every request, at warning level for error statuses."""

    async def dispatch(self, request: Request, call_next) -> Response:
        started = perf_counter()
        fields = _request_fields(request)
        try:
            response = await call_next(request)
        except Exception:
            logger.exception(
                "request_completed", **fields, **_outcome_fields(request, 500, started)
            )
            raise

        log = logger.warning if response.status_code >= 400 else logger.info
        log(
            "request_completed",
            **fields,
            **_outcome_fields(request, response.status_code, started),
        )
        return response
