"""Unscoped system transactions for reviewed cross-principal operations.

Every statement this module can run is listed in ``SystemOperation``. Callers
name an operation and pass parameters; arbitrary SQL is not accepted. The
connection comes from the shared engine, never from a request's row-scoped
connection, and no principal is bound, so only policies written for the
system path (``app_current_user_id() IS NULL``) admit these statements.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import structlog
from sqlalchemy import TextClause, text
from sqlalchemy.ext.asyncio import AsyncEngine

from app.db.session import get_engine

logger = structlog.get_logger(__name__)


class SystemOperation(str, Enum):
    """Allow-list of statements that may run without a bound principal."""

    INSERT_REFRESH_TOKEN = "insert_refresh_token"
    FIND_REFRESH_TOKEN = "find_refresh_token"
    REVOKE_REFRESH_TOKEN = "revoke_refresh_token"
    REVOKE_USER_REFRESH_TOKENS = "revoke_user_refresh_tokens"
    PURGE_REFRESH_TOKENS = "purge_refresh_tokens"
    INSERT_NOTIFICATION = "insert_notification"
    PURGE_READ_NOTIFICATIONS = "purge_read_notifications"
    INSERT_AUDIT_LOG = "insert_audit_log"
    INSERT_SECURITY_EVENT = "insert_security_event"
    LIST_SECURITY_EVENTS = "list_security_events"
    SUMMARIZE_SECURITY_EVENTS = "summarize_security_events"


_STATEMENTS: dict[SystemOperation, TextClause] = {
    SystemOperation.INSERT_REFRESH_TOKEN: text(
        "INSERT INTO refresh_tokens (id, user_id, token_hash, expires_at, ip_address) "
        "VALUES (:id, :user_id, :token_hash, :expires_at, CAST(:ip_address AS INET))"
    ),
    SystemOperation.FIND_REFRESH_TOKEN: text(
        "SELECT id, user_id, expires_at, revoked, revoked_at, revoked_reason "
        "FROM refresh_tokens WHERE token_hash = :token_hash"
    ),
    SystemOperation.REVOKE_REFRESH_TOKEN: text(
        "UPDATE refresh_tokens SET revoked = true, revoked_at = now(), revoked_reason = :reason "
        "WHERE token_hash = :token_hash AND revoked = false"
    ),
    SystemOperation.REVOKE_USER_REFRESH_TOKENS: text(
        "UPDATE refresh_tokens SET revoked = true, revoked_at = now(), revoked_reason = :reason "
        "WHERE user_id = :user_id AND revoked = false"
    ),
    SystemOperation.PURGE_REFRESH_TOKENS: text(
        "DELETE FROM refresh_tokens WHERE expires_at < now() "
        "OR (revoked = true AND revoked_at < now() - interval '7 days')"
    ),
    SystemOperation.INSERT_NOTIFICATION: text(
        "INSERT INTO notifications (id, user_id, type, from_user_id, related_id, message) "
        "VALUES (:id, :user_id, :type, :from_user_id, :related_id, :message)"
    ),
    SystemOperation.PURGE_READ_NOTIFICATIONS: text(
        "DELETE FROM notifications WHERE is_read = true "
        "AND created_at < now() - interval '90 days'"
    ),
    SystemOperation.INSERT_AUDIT_LOG: text(
        "INSERT INTO audit_logs (id, user_id, action, resource_type, resource_id, ip_address, "
        "user_agent, correlation_id, success, details) "
        "VALUES (:id, :user_id, :action, :resource_type, :resource_id, "
        "CAST(:ip_address AS INET), :user_agent, :correlation_id, :success, "
        "CAST(:details AS JSONB))"
    ),
    SystemOperation.INSERT_SECURITY_EVENT: text(
        "INSERT INTO security_events (id, event_type, severity, user_id, ip_address, details) "
        "VALUES (:id, :event_type, :severity, :user_id, CAST(:ip_address AS INET), "
        "CAST(:details AS JSONB))"
    ),
    SystemOperation.LIST_SECURITY_EVENTS: text(
        "SELECT id, event_type, severity, user_id, host(ip_address) AS ip_address, "
        "CAST(details AS TEXT) AS details, resolved, created_at, "
        "COUNT(*) OVER () AS total_count "
        "FROM security_events "
        "WHERE severity = COALESCE(CAST(:severity AS VARCHAR), severity) "
        "AND resolved = COALESCE(CAST(:resolved AS BOOLEAN), resolved) "
        "ORDER BY created_at DESC, id LIMIT :limit OFFSET :offset"
    ),
    SystemOperation.SUMMARIZE_SECURITY_EVENTS: text(
        "SELECT severity, COUNT(*) AS event_count, "
        "COUNT(*) FILTER (WHERE NOT resolved) AS unresolved_count "
        "FROM security_events WHERE created_at > now() - interval '30 days' "
        "GROUP BY severity ORDER BY severity"
    ),
}


@dataclass(frozen=True)
class SystemResult:
    """Rows and affected-row count produced by one system operation."""

    rowcount: int
    rows: Sequence[Mapping[str, Any]] = field(default_factory=tuple)

    def first(self) -> Mapping[str, Any] | None:
        """Return the first row or None."""
        return self.rows[0] if self.rows else None


def statement_for(operation: SystemOperation) -> TextClause:
    """Resolve the reviewed statement for an allow-listed operation."""
    return _STATEMENTS[SystemOperation(operation)]


async def run_as_system(
    operation: SystemOperation,
    params: Mapping[str, Any] | None = None,
    engine: AsyncEngine | None = None,
) -> SystemResult:
    """Run one allow-listed statement in its own committed transaction.

    Any failure rolls the transaction back and propagates to the caller.
    """
    statement = statement_for(operation)
    bound_engine = engine or get_engine()
    async with bound_engine.connect() as connection:
        transaction = await connection.begin()
        try:
            result = await connection.execute(statement, dict(params or {}))
            if result.returns_rows:
                rows = tuple(result.mappings().all())
                rowcount = len(rows)
            else:
                rows = ()
                rowcount = result.rowcount
            await transaction.commit()
        except Exception as exc:
            await transaction.rollback()
            logger.error(
                "system_operation_failed",
                operation=SystemOperation(operation).value,
                error=str(exc),
            )
            raise

    logger.debug(
        "system_operation_committed",
        operation=SystemOperation(operation).value,
        rowcount=rowcount,
    )
    return SystemResult(rowcount=rowcount, rows=rows)
