"""Housekeeping jobs and security-event review for operators."""

from __future__ import annotations

import json
from enum import Enum
from functools import lru_cache
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncEngine

from app.core.system_hatch import SystemOperation, run_as_system
from app.db.session import get_engine, get_request_engine
from app.models.security_event import SecuritySeverity
from app.services.audit_service import SystemRunner

logger = structlog.get_logger(__name__)

MAX_EVENT_PAGE = 100


class MaintenanceJob(str, Enum):
    """Housekeeping jobs that run through the system path."""

    PURGE_REFRESH_TOKENS = "purge-refresh-tokens"
    PURGE_READ_NOTIFICATIONS = "purge-read-notifications"


_JOB_OPERATIONS: dict[MaintenanceJob, SystemOperation] = {
    MaintenanceJob.PURGE_REFRESH_TOKENS: SystemOperation.PURGE_REFRESH_TOKENS,
    MaintenanceJob.PURGE_READ_NOTIFICATIONS: SystemOperation.PURGE_READ_NOTIFICATIONS,
}


def _pool_stats(engine: AsyncEngine) -> dict[str, int]:
    pool: Any = engine.sync_engine.pool
    return {"size": pool.size(), "checked_out": pool.checkedout(), "overflow": pool.overflow()}


def _event_from_row(row: Any) -> dict[str, Any]:
    details = row["details"]
    return {
        "id": row["id"],
        "event_type": row["event_type"],
        "severity": row["severity"],
        "user_id": row["user_id"],
        "ip_address": row["ip_address"],
        "details": json.loads(details) if details is not None else None,
        "resolved": row["resolved"],
        "created_at": row["created_at"],
    }


class MaintenanceService:
    """Run purge jobs and read security evidence through reviewed system operations."""

    def __init__(self, runner: SystemRunner | None = None) -> None:
        self._run = runner or run_as_system

    async def run_job(self, job: MaintenanceJob) -> dict[str, Any]:
        """Run one maintenance job and return its summary."""
        job = MaintenanceJob(job)
        result = await self._run(_JOB_OPERATIONS[job], {})
        logger.info("maintenance_job_completed", job=job.value, deleted=result.rowcount)
        return {"job": job.value, "deleted": result.rowcount}

    async def run_all(self) -> dict[str, Any]:
        """Run every job; one failure does not stop the others."""
        outcomes: list[dict[str, Any]] = []
        for job in MaintenanceJob:
            try:
                summary = await self.run_job(job)
            except Exception as exc:
                logger.error("maintenance_job_failed", job=job.value, error=str(exc))
                outcomes.append({"job": job.value, "success": False, "deleted": None})
                continue
            outcomes.append({**summary, "success": True})
        return {"success": all(outcome["success"] for outcome in outcomes), "jobs": outcomes}

    async def list_security_events(
        self,
        severity: SecuritySeverity | None = None,
        resolved: bool | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[dict[str, Any]], int]:
        """Return one page of security events, newest first, plus the filtered total."""
        result = await self._run(
            SystemOperation.LIST_SECURITY_EVENTS,
            {
                "severity": SecuritySeverity(severity).value if severity else None,
                "resolved": resolved,
                "limit": max(1, min(limit, MAX_EVENT_PAGE)),
                "offset": max(0, offset),
            },
        )
        first = result.first()
        total = int(first["total_count"]) if first is not None else 0
        return [_event_from_row(row) for row in result.rows], total

    async def health_metrics(self) -> dict[str, Any]:
        """Summarize the last 30 days of security events and both connection pools."""
        result = await self._run(SystemOperation.SUMMARIZE_SECURITY_EVENTS, {})
        return {
            "security": [
                {
                    "severity": row["severity"],
                    "event_count": int(row["event_count"]),
                    "unresolved_count": int(row["unresolved_count"]),
                }
                for row in result.rows
            ],
            "pools": {
                "shared": _pool_stats(get_engine()),
                "request": _pool_stats(get_request_engine()),
            },
        }


@lru_cache
def get_maintenance_service() -> MaintenanceService:
    """Create and cache maintenance service dependency."""
    return MaintenanceService()
