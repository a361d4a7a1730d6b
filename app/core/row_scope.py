"""Row-scoped request transactions bound to the authenticated principal.

``RowScopeMiddleware`` owns the transaction lifecycle for each HTTP request:
``get_row_scope`` acquires a dedicated connection, begins a transaction and binds
the principal id with ``SET LOCAL`` so row-level security policies apply to every
statement the handler runs through ``RowScope.session``. The middleware commits
when the response status is below 400 and does so before the response start
message is forwarded; any other outcome rolls back. The connection is returned
to the pool on every path, including client disconnects. Work queued with
``RowScope.after_commit`` runs only after a successful commit.
"""

from __future__ import annotations

import math
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Annotated, Any

import anyio
import structlog
from fastapi import Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, AsyncSession, AsyncTransaction
from starlette.responses import JSONResponse
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from app.core.auth_gate import Principal, require_principal
from app.db.session import get_request_engine

logger = structlog.get_logger(__name__)

ROW_SCOPE_STATE_KEY = "row_scope"
_CANONICAL_UUID = re.compile(
    r"[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}", re.IGNORECASE
)

SessionBuilder = Callable[[AsyncConnection], AsyncSession]
AfterCommit = Callable[[], Awaitable[None]]


class PrincipalBindError(Exception):
    """Raised when a principal id is unsafe to bind into the session."""


class RowScopeError(Exception):
    """Raised when the row-scoped transaction cannot be established."""


def build_bind_statement(principal_id: str) -> str:
    """Return the SET LOCAL statement binding a principal id.

    SET does not accept bind parameters, so the id is interpolated; only
    canonical 8-4-4-4-12 hex UUIDs are accepted.
    """
    if not isinstance(principal_id, str) or not _CANONICAL_UUID.fullmatch(principal_id):
        raise PrincipalBindError("Principal id is not a canonical UUID.")
    return f"SET LOCAL app.user_id = '{principal_id.lower()}'"


def _default_session_builder(connection: AsyncConnection) -> AsyncSession:
    """Bind an ORM session to the request connection without owning its transaction."""
    return AsyncSession(
        bind=connection,
        join_transaction_mode="conservative_savepoint",
        autoflush=False,
        expire_on_commit=False,
    )


class RowScopeTracker:
    """Per-request holder of the row-scoped connection, transaction and session."""

    def __init__(self, session_builder: SessionBuilder | None = None) -> None:
        self._session_builder = session_builder or _default_session_builder
        self._connection: AsyncConnection | None = None
        self._transaction: AsyncTransaction | None = None
        self._session: AsyncSession | None = None
        self._finalized = False
        self._released = False
        self._after_commit: list[AfterCommit] = []
        self.outcome: str | None = None

    @property
    def attached(self) -> bool:
        """True once a connection has been acquired for this request."""
        return self._connection is not None

    @property
    def finalized(self) -> bool:
        """True once commit or rollback has been claimed."""
        return self._finalized

    @property
    def session(self) -> AsyncSession:
        """ORM session bound to the request transaction."""
        if self._session is None:
            raise RowScopeError("Row scope is not attached.")
        return self._session

    def after_commit(self, callback: AfterCommit) -> None:
        """Queue work that may only run once this transaction is durable."""
        if self._finalized:
            raise RowScopeError("Row scope is already finalized.")
        self._after_commit.append(callback)

    async def attach(self, principal_id: str, engine: AsyncEngine) -> AsyncSession:
        """Acquire a connection, begin a transaction and bind the principal."""
        if self._session is not None:
            return self._session
        if self._released:
            raise RowScopeError("Row scope was already released.")

        statement = build_bind_statement(principal_id)
        try:
            self._connection = await engine.connect()
            self._transaction = await self._connection.begin()
            await self._connection.exec_driver_sql(statement)
            self._session = self._session_builder(self._connection)
        except Exception:
            logger.error("row_scope_attach_failed", exc_info=True)
            await self.release()
            raise
        logger.debug("row_scope_attached", user_id=principal_id.lower())
        return self._session

    def _claim(self) -> bool:
        """Claim the single terminal action; False when already claimed."""
        if self._finalized or self._transaction is None:
            return False
        self._finalized = True
        return True

    async def commit(self) -> bool:
        """Flush and commit the transaction; on failure roll back and re-raise."""
        if not self._claim():
            return False
        transaction = self._transaction
        if transaction is None:
            raise RowScopeError("Row scope has no open transaction.")
        try:
            if self._session is not None:
                await self._session.flush()
            await transaction.commit()
        except Exception:
            logger.error("row_scope_commit_failed", exc_info=True)
            self.outcome = "commit_failed"
            self._after_commit.clear()
            await self._rollback_quietly()
            raise
        self.outcome = "committed"
        logger.debug("row_scope_committed")
        await self._run_after_commit()
        return True

    async def rollback(self, reason: str) -> bool:
        """Roll back the transaction once; failures are logged, never raised."""
        if not self._claim():
            return False
        self.outcome = "rolled_back"
        dropped = len(self._after_commit)
        self._after_commit.clear()
        await self._rollback_quietly()
        logger.debug("row_scope_rolled_back", reason=reason, dropped_callbacks=dropped)
        return True

    async def release(self, reason: str = "request_aborted") -> None:
        """Roll back anything unfinished and return the connection to its pool."""
        if self._released:
            return
        self._released = True
        if self._transaction is not None and not self._finalized:
            await self.rollback(reason=reason)
        if self._session is not None:
            try:
                await self._session.close()
            except Exception:
                logger.error("row_scope_session_close_failed", exc_info=True)
        if self._connection is not None:
            try:
                await self._connection.close()
            except Exception:
                logger.error("row_scope_connection_close_failed", exc_info=True)
        logger.debug("row_scope_released", outcome=self.outcome)

    async def _run_after_commit(self) -> None:
        """Run queued callbacks; the commit already happened, so failures are only logged."""
        callbacks, self._after_commit = self._after_commit, []
        for callback in callbacks:
            try:
                await callback()
            except Exception:
                logger.error("row_scope_after_commit_failed", exc_info=True)

    async def _rollback_quietly(self) -> None:
        """Best-effort rollback used on failure paths."""
        if self._transaction is None:
            return
        try:
            await self._transaction.rollback()
        except Exception:
            logger.error("row_scope_rollback_failed", exc_info=True)


class RowScopeMiddleware:
    """Pure ASGI middleware that finalizes row-scoped transactions before responding."""

    def __init__(self, app: ASGIApp, session_builder: SessionBuilder | None = None) -> None:
        self.app = app
        self._session_builder = session_builder

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        tracker = RowScopeTracker(session_builder=self._session_builder)
        scope.setdefault("state", {})[ROW_SCOPE_STATE_KEY] = tracker
        replaced = False
        abort_reason = "request_aborted"

        async def send_with_commit(message: Message) -> None:
            nonlocal replaced
            if replaced:
                return
            if message["type"] == "http.response.start" and tracker.attached:
                if message["status"] < 400:
                    try:
                        await tracker.commit()
                    except Exception:
                        replaced = True
                        await _send_commit_failure(scope, send)
                        return
                else:
                    await tracker.rollback(reason=f"status_{message['status']}")
            await send(message)

        forward, inbound = anyio.create_memory_object_stream(math.inf)

        async def receive_forwarded() -> Message:
            return await inbound.receive()

        async def watch_disconnect(cancel_scope: anyio.CancelScope) -> None:
            nonlocal abort_reason
            while True:
                message = await receive()
                await forward.send(message)
                if message["type"] == "http.disconnect":
                    if tracker.attached and not tracker.finalized:
                        # The handler may be mid-query on the connection; stop it first
                        # and leave the rollback to release().
                        logger.info("row_scope_client_disconnected")
                        abort_reason = "client_disconnect"
                        cancel_scope.cancel()
                    return

        app_error: Exception | None = None
        try:
            async with anyio.create_task_group() as task_group:
                task_group.start_soon(watch_disconnect, task_group.cancel_scope)
                try:
                    await self.app(scope, receive_forwarded, send_with_commit)
                except Exception as exc:
                    app_error = exc
                    with anyio.CancelScope(shield=True):
                        await tracker.rollback(reason="handler_exception")
                finally:
                    task_group.cancel_scope.cancel()
        finally:
            with anyio.CancelScope(shield=True):
                await tracker.release(reason=abort_reason)
                forward.close()
                inbound.close()

        if app_error is not None:
            raise app_error


async def _send_commit_failure(scope: Scope, send: Send) -> None:
    """Replace the handler's response with a generic 500."""
    response = JSONResponse(
        status_code=500,
        content={"detail": "Failed to save changes.", "code": "transaction_failed"},
    )

    async def _no_receive() -> Message:
        return {"type": "http.disconnect"}

    await response(scope, _no_receive, send)


@dataclass(frozen=True)
class RowScope:
    """Principal plus the ORM session bound to its row-scoped transaction."""

    principal: Principal
    session: AsyncSession
    tracker: RowScopeTracker | None = None

    def after_commit(self, callback: AfterCommit) -> None:
        """Defer cross-user side effects until the request transaction commits."""
        if self.tracker is None:
            raise RowScopeError("Row scope has no transaction tracker.")
        self.tracker.after_commit(callback)


def _tracker_from_request(request: Request) -> RowScopeTracker:
    """Fetch the tracker installed by RowScopeMiddleware."""
    tracker: Any = getattr(request.state, ROW_SCOPE_STATE_KEY, None)
    if not isinstance(tracker, RowScopeTracker):
        raise RowScopeError("RowScopeMiddleware is not installed.")
    return tracker


async def get_row_scope(
    request: Request,
    principal: Annotated[Principal, Depends(require_principal)],
) -> RowScope:
    """Attach the request's row-scoped transaction for the authenticated principal."""
    tracker = _tracker_from_request(request)
    try:
        session = await tracker.attach(str(principal.id), engine=get_request_engine())
    except Exception as exc:
        raise HTTPException(
            status_code=500,
            detail={"detail": "Database initialization error.", "code": "internal_error"},
        ) from exc
    return RowScope(principal=principal, session=session, tracker=tracker)


CurrentRowScope = Annotated[RowScope, Depends(get_row_scope)]
