"""Operator-facing schemas for security review and maintenance."""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel


class SecurityEventView(BaseModel):
    """One stored security event."""

    id: UUID
    event_type: str
    severity: str
    user_id: UUID | None
    ip_address: str | None
    details: dict[str, Any] | None
    resolved: bool
    created_at: datetime


class Pagination(BaseModel):
    limit: int
    offset: int
    has_more: bool


class SecurityEventListResponse(BaseModel):
    """A page of security events and the filtered total."""

    events: list[SecurityEventView]
    total: int
    pagination: Pagination


class MaintenanceJobResult(BaseModel):
    """Outcome of one maintenance job."""

    job: str
    deleted: int | None
    success: bool = True


class MaintenanceRunResponse(BaseModel):
    success: bool
    jobs: list[MaintenanceJobResult]


class SeveritySummary(BaseModel):
    severity: str
    event_count: int
    unresolved_count: int


class PoolStats(BaseModel):
    size: int
    checked_out: int
    overflow: int


class HealthMetricsResponse(BaseModel):
    """Thirty-day security summary and connection pool usage."""

    security: list[SeveritySummary]
    pools: dict[str, PoolStats]
