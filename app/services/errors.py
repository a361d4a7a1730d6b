"""Shared service-layer error type rendered by the global exception handlers."""

from __future__ import annotations


class ServiceError(Exception):
    """Raised when a service operation fails validation or authorization."""

    def __init__(self, detail: str, code: str, status_code: int) -> None:
        super().__init__(detail)
        self.detail = detail
        self.code = code
        self.status_code = status_code
