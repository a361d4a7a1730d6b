"""Append-only audit trail for account, friendship and note activity."""

from __future__ import annotations

import ipaddress
import json
from collections.abc import Awaitable, Callable, Mapping
from functools import lru_cache
from typing import TYPE_CHECKING, Any
from uuid import NAMESPACE_URL, UUID, uuid4, uuid5

import structlog
from fastapi import Request

from app.core.redaction import redact_mapping
from app.core.system_hatch import SystemOperation, SystemResult, run_as_system

if TYPE_CHECKING:
    from app.core.row_scope import RowScope

logger = structlog.get_logger(__name__)

SystemRunner = Callable[[SystemOperation, Mapping[str, Any]], Awaitable[SystemResult]]


def coerce_uuid(value: str | UUID | None, deterministic: bool = False) -> UUID | None:
    """Parse UUID-like input; with ``deterministic`` other text maps to a stable uuid5."""
    if value is None or isinstance(value, UUID):
        return value
    text = value.strip()
    if not text:
        return None
    try:
        return UUID(text)
    except ValueError:
        return uuid5(NAMESPACE_URL, text) if deterministic else None


def _canonical_ip(value: str | None) -> str | None:
    try:
        return str(ipaddress.ip_address((value or "").strip()))
    except ValueError:
        return None


def extract_client_ip(request: Request) -> str | None:
    """First X-Forwarded-For hop when it parses, otherwise the socket peer."""
    first_hop = request.headers.get("x-forwarded-for", "").split(",")[0]
    forwarded = _canonical_ip(first_hop)
    if forwarded is not None:
        return forwarded
    return _canonical_ip(request.client.host) if request.client else None


def details_json(details: Mapping[str, Any] | None) -> str | None:
    """Serialize event details for a JSONB column after masking them."""
    masked = redact_mapping(details)
    return json.dumps(masked) if masked is not None else None


class AuditService:
    """Persist audit records through the system path without affecting outcomes."""

    def __init__(self, runner: SystemRunner | None = None) -> None:
        self._run = runner or run_as_system

    async def record(
        self,
        action: str,
        request: Request,
        user_id: str | UUID | None = None,
        success: bool = True,
        resource_type: str | None = None,
        resource_id: str | UUID | None = None,
        details: dict[str, Any] | None = None,
        scope: RowScope | None = None,
    ) -> None:
        """Write one audit row; a failed write is logged and otherwise ignored.

        With ``scope`` the row is written once that request commits.
        """
        correlation_id = getattr(request.state, "correlation_id", None)
        params = {
            "id": uuid4(),
            "user_id": coerce_uuid(user_id),
            "action": action.strip(),
            "resource_type": resource_type.strip() if resource_type else None,
            "resource_id": coerce_uuid(resource_id),
            "ip_address": extract_client_ip(request),
            "user_agent": request.headers.get("user-agent"),
            # Client-chosen ids are not UUIDs; store a stable derivation of them.
            "correlation_id": coerce_uuid(correlation_id, deterministic=True),
            "success": success,
            "details": details_json(details),
        }

        async def _insert() -> None:
            try:
                await self._run(SystemOperation.INSERT_AUDIT_LOG, params)
            except Exception as exc:
                logger.error(
                    "audit_write_failed", action=action, success=success, error=str(exc)
                )

        if scope is None:
            await _insert()
        else:
            scope.after_commit(_insert)


@lru_cache
def get_audit_service() -> AuditService:
    return AuditService()
