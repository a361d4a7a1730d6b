"""Security event sink for tampering and escalation evidence."""

from __future__ import annotations

from functools import lru_cache
from typing import Any
from uuid import UUID, uuid4

import structlog
from fastapi import Request

from app.core.system_hatch import SystemOperation, run_as_system
from app.models.security_event import SecuritySeverity
from app.services.audit_service import SystemRunner, coerce_uuid, details_json, extract_client_ip

logger = structlog.get_logger(__name__)


class SecurityEventType:
    """Event type names written to the security event sink."""

    INVALID_TOKEN = "auth.invalid_token"
    ACCOUNT_LOCKED = "user.account_locked"
    ENCRYPTION_FAILURE = "note.encryption_failure"
    INTEGRITY_FAILURE = "note.integrity_failure"
    UNAUTHORIZED_SHARE = "share.unauthorized_attempt"
    PERMISSION_ESCALATION = "share.permission_escalation"


class SecurityEventService:
    """Append security events; a failing sink never aborts the triggering request."""

    def __init__(self, runner: SystemRunner | None = None) -> None:
        self._run = runner or run_as_system

    async def record(
        self,
        event_type: str,
        severity: SecuritySeverity,
        request: Request,
        user_id: str | UUID | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Persist one event through the system path and report it operationally."""
        severity_value = SecuritySeverity(severity).value
        params = {
            "id": uuid4(),
            "event_type": event_type,
            "severity": severity_value,
            "user_id": coerce_uuid(user_id),
            "ip_address": extract_client_ip(request),
            "details": details_json(details),
        }
        logger.warning(
            "security_event",
            event_type=event_type,
            severity=severity_value,
            user_id=str(user_id) if user_id else None,
            path=request.url.path,
        )
        try:
            await self._run(SystemOperation.INSERT_SECURITY_EVENT, params)
        except Exception as exc:
            logger.error(
                "security_event_write_failed",
                event_type=event_type,
                severity=severity_value,
                error=str(exc),
            )


@lru_cache
def get_security_event_service() -> SecurityEventService:
    """Create and cache security event service dependency."""
    return SecurityEventService()
