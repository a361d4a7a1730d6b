"""Unit tests for row-scoped request transactions."""

from __future__ import annotations

import json
from typing import Any
from uuid import UUID

import anyio
import pytest
from fastapi import Depends, FastAPI, HTTPException
from httpx import ASGITransport, AsyncClient

from app.core import row_scope as row_scope_module
from app.core.auth_gate import Principal, require_principal
from app.core.row_scope import (
    ROW_SCOPE_STATE_KEY,
    PrincipalBindError,
    RowScope,
    RowScopeError,
    RowScopeMiddleware,
    RowScopeTracker,
    build_bind_statement,
    get_row_scope,
)

PRINCIPAL_ID = "6e0f4a57-2c1d-4b8e-9f3a-7d5c2b1e0a94"


class _FakeTransaction:
    """AsyncTransaction stand-in recording terminal actions."""

    def __init__(self, fail_commit: bool = False) -> None:
        self.fail_commit = fail_commit
        self.commits = 0
        self.rollbacks = 0

    async def commit(self) -> None:
        self.commits += 1
        if self.fail_commit:
            raise RuntimeError("serialization failure")

    async def rollback(self) -> None:
        self.rollbacks += 1


class _FakeConnection:
    """AsyncConnection stand-in capturing executed SQL."""

    def __init__(self, transaction: _FakeTransaction, fail_bind: bool = False) -> None:
        self.transaction = transaction
        self.fail_bind = fail_bind
        self.statements: list[str] = []
        self.closed = False

    async def begin(self) -> _FakeTransaction:
        return self.transaction

    async def exec_driver_sql(self, statement: str) -> None:
        if self.fail_bind:
            raise RuntimeError("bind failed")
        self.statements.append(statement)

    async def close(self) -> None:
        self.closed = True


class _FakeEngine:
    """AsyncEngine stand-in handing out one fake connection."""

    def __init__(self, fail_commit: bool = False, fail_bind: bool = False) -> None:
        self.transaction = _FakeTransaction(fail_commit=fail_commit)
        self.connection = _FakeConnection(self.transaction, fail_bind=fail_bind)
        self.connects = 0

    async def connect(self) -> _FakeConnection:
        self.connects += 1
        return self.connection


class _FakeSession:
    """AsyncSession stand-in bound to a fake connection."""

    def __init__(self, connection: _FakeConnection) -> None:
        self.connection = connection
        self.flushes = 0
        self.closed = False

    async def flush(self) -> None:
        self.flushes += 1

    async def close(self) -> None:
        self.closed = True


def _http_scope() -> dict[str, Any]:
    return {
        "type": "http",
        "asgi": {"version": "3.0"},
        "http_version": "1.1",
        "method": "POST",
        "scheme": "http",
        "path": "/api/notes",
        "raw_path": b"/api/notes",
        "query_string": b"",
        "headers": [],
        "client": ("127.0.0.1", 5000),
        "server": ("testserver", 80),
    }


def _idle_receive() -> Any:
    """Deliver one request body, then block like an idle client."""
    messages = [{"type": "http.request", "body": b"", "more_body": False}]

    async def receive() -> dict[str, Any]:
        if messages:
            return messages.pop(0)
        await anyio.sleep_forever()
        return {"type": "http.disconnect"}

    return receive


def _handler(engine: _FakeEngine, status: int = 200, error: Exception | None = None):
    """Raw ASGI handler that attaches the row scope, then responds or fails."""

    async def app(scope, receive, send) -> None:
        tracker: RowScopeTracker = scope["state"][ROW_SCOPE_STATE_KEY]
        await tracker.attach(PRINCIPAL_ID, engine)  # type: ignore[arg-type]
        if error is not None:
            raise error
        await send(
            {
                "type": "http.response.start",
                "status": status,
                "headers": [(b"content-type", b"application/json")],
            }
        )
        await send({"type": "http.response.body", "body": b'{"ok": true}'})

    return app


async def _run(middleware: RowScopeMiddleware, receive=None) -> list[dict[str, Any]]:
    sent: list[dict[str, Any]] = []

    async def send(message: dict[str, Any]) -> None:
        sent.append(message)

    await middleware(_http_scope(), receive or _idle_receive(), send)
    return sent


def test_bind_statement_lowercases_canonical_uuid() -> None:
    """Canonical UUIDs of either case bind in lowercase."""
    statement = build_bind_statement(PRINCIPAL_ID.upper())

    assert statement == f"SET LOCAL app.user_id = '{PRINCIPAL_ID}'"


@pytest.mark.parametrize(
    "value",
    [
        "",
        "not-a-uuid",
        "6e0f4a572c1d4b8e9f3a7d5c2b1e0a94",
        f"{PRINCIPAL_ID}'; RESET app.user_id; --",
        "{" + PRINCIPAL_ID + "}",
        f"{PRINCIPAL_ID}\n",
        f"\n{PRINCIPAL_ID}",
        None,
    ],
)
def test_bind_statement_rejects_non_canonical_input(value: Any) -> None:
    """Anything but an 8-4-4-4-12 hex UUID is refused before reaching SQL."""
    with pytest.raises(PrincipalBindError):
        build_bind_statement(value)


async def test_tracker_attach_binds_principal_inside_transaction() -> None:
    """attach() connects, begins and sets the session-local principal once."""
    engine = _FakeEngine()
    tracker = RowScopeTracker(session_builder=_FakeSession)  # type: ignore[arg-type]

    session = await tracker.attach(PRINCIPAL_ID, engine)  # type: ignore[arg-type]
    again = await tracker.attach(PRINCIPAL_ID, engine)  # type: ignore[arg-type]

    assert session is again
    assert engine.connects == 1
    assert engine.connection.statements == [f"SET LOCAL app.user_id = '{PRINCIPAL_ID}'"]
    assert tracker.attached and not tracker.finalized


async def test_tracker_attach_failure_releases_connection() -> None:
    """A failed bind rolls back and returns the connection."""
    engine = _FakeEngine(fail_bind=True)
    tracker = RowScopeTracker(session_builder=_FakeSession)  # type: ignore[arg-type]

    with pytest.raises(RuntimeError):
        await tracker.attach(PRINCIPAL_ID, engine)  # type: ignore[arg-type]

    assert engine.transaction.rollbacks == 1
    assert engine.transaction.commits == 0
    assert engine.connection.closed


async def test_tracker_runs_exactly_one_terminal_action() -> None:
    """Second commit or rollback after the first is a no-op."""
    engine = _FakeEngine()
    tracker = RowScopeTracker(session_builder=_FakeSession)  # type: ignore[arg-type]
    await tracker.attach(PRINCIPAL_ID, engine)  # type: ignore[arg-type]

    assert await tracker.commit() is True
    assert await tracker.rollback(reason="late") is False
    assert await tracker.commit() is False
    await tracker.release()
    await tracker.release()

    assert engine.transaction.commits == 1
    assert engine.transaction.rollbacks == 0
    assert tracker.outcome == "committed"
    assert engine.connection.closed


async def test_middleware_commits_before_forwarding_success() -> None:
    """2xx responses commit before the response start message leaves."""
    engine = _FakeEngine()
    observed: list[int] = []

    async def send(message: dict[str, Any]) -> None:
        if message["type"] == "http.response.start":
            observed.append(engine.transaction.commits)

    middleware = RowScopeMiddleware(_handler(engine), session_builder=_FakeSession)
    await middleware(_http_scope(), _idle_receive(), send)

    assert observed == [1]
    assert engine.transaction.rollbacks == 0
    assert engine.connection.closed


async def test_middleware_rolls_back_error_status() -> None:
    """Status 400 and above rolls back and still forwards the handler response."""
    engine = _FakeEngine()
    middleware = RowScopeMiddleware(_handler(engine, status=404), session_builder=_FakeSession)

    sent = await _run(middleware)

    assert sent[0]["status"] == 404
    assert engine.transaction.commits == 0
    assert engine.transaction.rollbacks == 1
    assert engine.connection.closed


async def test_middleware_replaces_response_when_commit_fails() -> None:
    """A failed commit turns a success into a generic 500."""
    engine = _FakeEngine(fail_commit=True)
    middleware = RowScopeMiddleware(_handler(engine), session_builder=_FakeSession)

    sent = await _run(middleware)

    starts = [message for message in sent if message["type"] == "http.response.start"]
    bodies = [message for message in sent if message["type"] == "http.response.body"]
    assert [start["status"] for start in starts] == [500]
    payload = json.loads(b"".join(body.get("body", b"") for body in bodies))
    assert payload == {"detail": "Failed to save changes.", "code": "transaction_failed"}
    assert engine.transaction.rollbacks == 1
    assert engine.connection.closed


async def test_middleware_rolls_back_and_reraises_handler_exception() -> None:
    """Unhandled handler errors roll back and propagate unchanged."""
    engine = _FakeEngine()
    middleware = RowScopeMiddleware(
        _handler(engine, error=LookupError("boom")), session_builder=_FakeSession
    )

    with pytest.raises(LookupError):
        await _run(middleware)

    assert engine.transaction.commits == 0
    assert engine.transaction.rollbacks == 1
    assert engine.connection.closed


async def test_middleware_rolls_back_on_client_disconnect() -> None:
    """A disconnect before the response rolls back, cancels the handler and releases."""
    engine = _FakeEngine()
    attached = anyio.Event()
    handler_finished = False

    async def app(scope, receive, send) -> None:
        nonlocal handler_finished
        tracker: RowScopeTracker = scope["state"][ROW_SCOPE_STATE_KEY]
        await tracker.attach(PRINCIPAL_ID, engine)  # type: ignore[arg-type]
        attached.set()
        await anyio.sleep_forever()
        handler_finished = True

    messages = [{"type": "http.request", "body": b"", "more_body": False}]

    async def receive() -> dict[str, Any]:
        if messages:
            return messages.pop(0)
        await attached.wait()
        return {"type": "http.disconnect"}

    middleware = RowScopeMiddleware(app, session_builder=_FakeSession)
    with anyio.fail_after(5):
        sent = await _run(middleware, receive=receive)

    assert sent == []
    assert handler_finished is False
    assert engine.transaction.commits == 0
    assert engine.transaction.rollbacks == 1
    assert engine.connection.closed


async def test_middleware_without_attach_touches_no_connection() -> None:
    """Unauthenticated requests never acquire a row-scoped connection."""

    async def app(scope, receive, send) -> None:
        await send({"type": "http.response.start", "status": 200, "headers": []})
        await send({"type": "http.response.body", "body": b""})

    middleware = RowScopeMiddleware(app, session_builder=_FakeSession)

    sent = await _run(middleware)

    assert sent[0]["status"] == 200


async def test_get_row_scope_dependency_commits_through_fastapi(monkeypatch) -> None:
    """Routes depending on the row scope commit on success and roll back on errors."""
    engines: list[_FakeEngine] = []

    def _engine_factory() -> _FakeEngine:
        engine = _FakeEngine()
        engines.append(engine)
        return engine

    monkeypatch.setattr(row_scope_module, "get_request_engine", _engine_factory)
    principal = Principal(
        id=UUID(PRINCIPAL_ID), display_name="alice", email="alice@example.com", role="user"
    )

    app = FastAPI()
    app.add_middleware(RowScopeMiddleware, session_builder=_FakeSession)
    app.dependency_overrides[require_principal] = lambda: principal

    @app.get("/ok")
    async def ok(scope: RowScope = Depends(get_row_scope)) -> dict[str, str]:
        return {"user": str(scope.principal.id)}

    @app.get("/missing")
    async def missing(scope: RowScope = Depends(get_row_scope)) -> dict[str, str]:
        raise HTTPException(status_code=404, detail="Note not found.")

    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://testserver"
    ) as client:
        ok_response = await client.get("/ok")
        missing_response = await client.get("/missing")

    assert ok_response.status_code == 200
    assert ok_response.json() == {"user": PRINCIPAL_ID}
    assert missing_response.status_code == 404
    assert [engine.transaction.commits for engine in engines] == [1, 0]
    assert [engine.transaction.rollbacks for engine in engines] == [0, 1]
    assert all(engine.connection.closed for engine in engines)


async def test_disconnect_during_query_cancels_handler_before_rolling_back() -> None:
    """Rollback on disconnect waits until the handler has let go of the connection."""
    engine = _FakeEngine()
    in_query = anyio.Event()
    busy = False
    busy_at_rollback: list[bool] = []

    original_rollback = engine.transaction.rollback

    async def rollback() -> None:
        busy_at_rollback.append(busy)
        await original_rollback()

    engine.transaction.rollback = rollback  # type: ignore[method-assign]

    async def app(scope, receive, send) -> None:
        nonlocal busy
        tracker: RowScopeTracker = scope["state"][ROW_SCOPE_STATE_KEY]
        await tracker.attach(PRINCIPAL_ID, engine)  # type: ignore[arg-type]
        busy = True
        try:
            in_query.set()
            await anyio.sleep_forever()
        finally:
            busy = False

    messages = [{"type": "http.request", "body": b"", "more_body": False}]

    async def receive() -> dict[str, Any]:
        if messages:
            return messages.pop(0)
        await in_query.wait()
        return {"type": "http.disconnect"}

    middleware = RowScopeMiddleware(app, session_builder=_FakeSession)
    with anyio.fail_after(5):
        sent = await _run(middleware, receive=receive)

    assert sent == []
    assert busy_at_rollback == [False]
    assert engine.transaction.commits == 0
    assert engine.connection.closed


async def test_after_commit_callbacks_run_once_the_commit_lands() -> None:
    """Queued work observes a committed transaction and runs exactly once."""
    engine = _FakeEngine()
    tracker = RowScopeTracker(session_builder=_FakeSession)  # type: ignore[arg-type]
    await tracker.attach(PRINCIPAL_ID, engine)  # type: ignore[arg-type]
    commits_seen: list[int] = []

    async def callback() -> None:
        commits_seen.append(engine.transaction.commits)

    tracker.after_commit(callback)
    assert commits_seen == []

    await tracker.commit()
    await tracker.release()

    assert commits_seen == [1]


@pytest.mark.parametrize("fail_commit", [False, True])
async def test_after_commit_callbacks_are_dropped_without_a_commit(fail_commit: bool) -> None:
    """Rolled back or failed transactions never run queued work."""
    engine = _FakeEngine(fail_commit=fail_commit)
    tracker = RowScopeTracker(session_builder=_FakeSession)  # type: ignore[arg-type]
    await tracker.attach(PRINCIPAL_ID, engine)  # type: ignore[arg-type]
    calls: list[str] = []

    async def callback() -> None:
        calls.append("ran")

    tracker.after_commit(callback)
    if fail_commit:
        with pytest.raises(RuntimeError):
            await tracker.commit()
    else:
        await tracker.rollback(reason="status_400")
    await tracker.release()

    assert calls == []
    assert engine.transaction.rollbacks == 1


async def test_failing_after_commit_callback_does_not_undo_the_commit() -> None:
    """One failing callback is logged; the rest still run and the outcome stays committed."""
    engine = _FakeEngine()
    tracker = RowScopeTracker(session_builder=_FakeSession)  # type: ignore[arg-type]
    await tracker.attach(PRINCIPAL_ID, engine)  # type: ignore[arg-type]
    calls: list[str] = []

    async def broken() -> None:
        raise RuntimeError("inbox unavailable")

    async def healthy() -> None:
        calls.append("healthy")

    tracker.after_commit(broken)
    tracker.after_commit(healthy)

    assert await tracker.commit() is True
    assert calls == ["healthy"]
    assert tracker.outcome == "committed"
    assert engine.transaction.rollbacks == 0


async def test_after_commit_refused_once_finalized() -> None:
    """Work queued after the terminal action would never run, so it is rejected."""
    engine = _FakeEngine()
    tracker = RowScopeTracker(session_builder=_FakeSession)  # type: ignore[arg-type]
    await tracker.attach(PRINCIPAL_ID, engine)  # type: ignore[arg-type]
    await tracker.commit()

    async def late() -> None:
        return None

    with pytest.raises(RowScopeError):
        tracker.after_commit(late)


async def test_error_response_drops_deferred_work_through_middleware() -> None:
    """A handler that queues work and then answers 4xx leaves no side effect behind."""
    engine = _FakeEngine()
    calls: list[str] = []

    async def app(scope, receive, send) -> None:
        tracker: RowScopeTracker = scope["state"][ROW_SCOPE_STATE_KEY]
        await tracker.attach(PRINCIPAL_ID, engine)  # type: ignore[arg-type]

        async def notify() -> None:
            calls.append("notified")

        tracker.after_commit(notify)
        await send({"type": "http.response.start", "status": 409, "headers": []})
        await send({"type": "http.response.body", "body": b""})

    middleware = RowScopeMiddleware(app, session_builder=_FakeSession)
    sent = await _run(middleware)

    assert sent[0]["status"] == 409
    assert calls == []
