"""Security headers middleware."""

from __future__ import annotations

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

_BASE_HEADERS: dict[str, str] = {
    "Content-Security-Policy": "default-src 'self'; frame-ancestors 'none'; object-src 'none'",
    "X-Frame-Options": "DENY",
    "X-Content-Type-Options": "nosniff",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Cache-Control": "no-store",
}
_HSTS = ("Strict-Transport-Security", "max-age=31536000; includeSubDomains")


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add browser hardening headers unless a handler already set them."""

    def __init__(self, app, hsts: bool = True) -> None:
        super().__init__(app)
        self._headers = dict(_BASE_HEADERS)
        if hsts:
            self._headers[_HSTS[0]] = _HSTS[1]

    async def dispatch(self, request: Request, call_next) -> Response:
        """Append security headers to all application responses."""
        response = await call_next(request)
        for header_name, header_value in self._headers.items():
            response.headers.setdefault(header_name, header_value)
        return response
