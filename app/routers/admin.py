"""Operator routes restricted to the admin role."""

from __future__ import annotations

from typing import Annotated

import structlog
from fastapi import APIRouter, Depends, Query

from app.core.auth_gate import Principal, require_role
from app.models.security_event import SecuritySeverity
from app.schemas.admin import (
    HealthMetricsResponse,
    MaintenanceJobResult,
    MaintenanceRunResponse,
    Pagination,
    SecurityEventListResponse,
    SecurityEventView,
)
from app.services.maintenance import (
    MAX_EVENT_PAGE,
    MaintenanceJob,
    MaintenanceService,
    get_maintenance_service,
)

router = APIRouter(prefix="/api/admin", tags=["admin"])
logger = structlog.get_logger(__name__)

AdminPrincipal = Annotated[Principal, Depends(require_role("admin"))]
MaintenanceServiceDep = Annotated[MaintenanceService, Depends(get_maintenance_service)]


@router.get("/security-events", response_model=SecurityEventListResponse)
async def list_security_events(
    admin: AdminPrincipal,
    maintenance_service: MaintenanceServiceDep,
    severity: SecuritySeverity | None = None,
    resolved: bool | None = None,
    limit: Annotated[int, Query(ge=1, le=MAX_EVENT_PAGE)] = 50,
    offset: Annotated[int, Query(ge=0)] = 0,
) -> SecurityEventListResponse:
    """Page through security events, newest first."""
    events, total = await maintenance_service.list_security_events(
        severity=severity, resolved=resolved, limit=limit, offset=offset
    )
    return SecurityEventListResponse(
        events=[SecurityEventView(**event) for event in events],
        total=total,
        pagination=Pagination(limit=limit, offset=offset, has_more=offset + len(events) < total),
    )


@router.get("/health/metrics", response_model=HealthMetricsResponse)
async def health_metrics(
    admin: AdminPrincipal, maintenance_service: MaintenanceServiceDep
) -> HealthMetricsResponse:
    """Security event summary and pool usage."""
    return HealthMetricsResponse(**await maintenance_service.health_metrics())


@router.post("/maintenance/full", response_model=MaintenanceRunResponse)
async def run_full_maintenance(
    admin: AdminPrincipal, maintenance_service: MaintenanceServiceDep
) -> MaintenanceRunResponse:
    """Run every maintenance job once."""
    logger.info("maintenance_requested", job="full", user_id=str(admin.id))
    return MaintenanceRunResponse(**await maintenance_service.run_all())


@router.post("/maintenance/{job}", response_model=MaintenanceJobResult)
async def run_maintenance_job(
    job: MaintenanceJob, admin: AdminPrincipal, maintenance_service: MaintenanceServiceDep
) -> MaintenanceJobResult:
    """Run one maintenance job on demand."""
    logger.info("maintenance_requested", job=job.value, user_id=str(admin.id))
    return MaintenanceJobResult(**await maintenance_service.run_job(job))
