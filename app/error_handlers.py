"""Exception handlers rendering every failure as ``{"detail", "code"}``."""

from __future__ import annotations

from typing import Any

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.services.audit_service import extract_client_ip
from app.services.errors import ServiceError

logger = structlog.get_logger(__name__)

ERROR_CODES = frozenset(
    {
        "invalid_token",
        "token_expired",
        "invalid_credentials",
        "account_locked",
        "session_expired",
        "invalid_request",
        "not_found",
        "forbidden",
        "conflict",
        "rate_limited",
        "decryption_failed",
        "transaction_failed",
        "internal_error",
    }
)

_STATUS_FALLBACK_CODES: dict[int, str] = {
    400: "invalid_request",
    401: "invalid_token",
    403: "forbidden",
    404: "not_found",
    405: "invalid_request",
    409: "conflict",
    422: "invalid_request",
    429: "rate_limited",
}
_INTERNAL_DETAIL = "Internal server error."


def error_code_for(status_code: int, code: str | None = None) -> str:
    """Published error code, falling back on the status when ``code`` is unknown."""
    if code in ERROR_CODES:
        return code
    return _STATUS_FALLBACK_CODES.get(status_code, "internal_error")


def _split_http_detail(detail: Any) -> tuple[str, str | None]:
    """HTTPException detail may be a plain message or a ``{"detail", "code"}`` dict."""
    if isinstance(detail, dict):
        code = detail.get("code")
        return str(detail.get("detail", "Request failed.")), str(code) if code else None
    if isinstance(detail, str):
        return detail, None
    return "Request failed.", None


def _report_denial(request: Request, status_code: int, code: str, detail: str) -> None:
    """Log refused requests: all 401/403s plus any client error on auth routes."""
    on_auth_route = request.url.path.startswith("/api/auth")
    if status_code not in (401, 403) and not (on_auth_route and 400 <= status_code < 500):
        return
    principal = getattr(request.state, "principal", None)
    logger.warning(
        "auth_failure" if on_auth_route else "access_denied",
        status_code=status_code,
        code=code,
        detail=detail,
        method=request.method,
        path=request.url.path,
        ip_address=extract_client_ip(request),
        user_id=str(principal.id) if principal is not None else None,
    )


def _render(request: Request, status_code: int, detail: str, code: str | None) -> JSONResponse:
    resolved = error_code_for(status_code, code)
    _report_denial(request, status_code, resolved, detail)
    return JSONResponse(status_code=status_code, content={"detail": detail, "code": resolved})


def register_exception_handlers(app: FastAPI, environment: str) -> None:
    """Install handlers; ``environment`` decides whether 500 messages are exposed."""

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError) -> JSONResponse:
        return _render(request, exc.status_code, exc.detail, exc.code)

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_exception(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        detail, code = _split_http_detail(exc.detail)
        return _render(request, exc.status_code, detail, code)

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        """Report only the first validation message, as a 400."""
        errors = exc.errors()
        detail = "Invalid request payload."
        if errors:
            message = str(errors[0].get("msg", "validation error"))
            detail = f"{detail[:-1]}: {message.removeprefix('Value error, ')}"
        return _render(request, 400, detail, "invalid_request")

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
        logger.error(
            "unhandled_exception",
            # Runs outside the correlation middleware, so its binding is gone by now.
            correlation_id=getattr(request.state, "correlation_id", None),
            method=request.method,
            path=request.url.path,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        detail = str(exc) if environment == "development" else _INTERNAL_DETAIL
        return JSONResponse(status_code=500, content={"detail": detail, "code": "internal_error"})
