"""Unit tests for maintenance CLI jobs."""

from __future__ import annotations

from typing import Any

import pytest

from app import cli
from app.core.system_hatch import SystemOperation, SystemResult


async def test_run_job_runs_mapped_operation_and_disposes_engine(monkeypatch) -> None:
    """Each job maps to one system operation and always releases the pool."""
    calls: list[Any] = []

    async def _fake_run(operation: SystemOperation, params: Any = None) -> SystemResult:
        calls.append(operation)
        return SystemResult(rowcount=4)

    async def _fake_dispose() -> None:
        calls.append("disposed")

    monkeypatch.setattr(cli, "run_as_system", _fake_run)
    monkeypatch.setattr(cli, "dispose_engine", _fake_dispose)

    summary = await cli.run_job(cli.MaintenanceJob.PURGE_READ_NOTIFICATIONS)

    assert summary == {"job": "purge-read-notifications", "deleted": 4}
    assert calls == [SystemOperation.PURGE_READ_NOTIFICATIONS, "disposed"]


async def test_run_job_disposes_engine_on_failure(monkeypatch) -> None:
    """The pool is released even when the job fails."""
    disposed: list[bool] = []

    async def _failing_run(operation: SystemOperation, params: Any = None) -> SystemResult:
        raise RuntimeError("database unavailable")

    async def _fake_dispose() -> None:
        disposed.append(True)

    monkeypatch.setattr(cli, "run_as_system", _failing_run)
    monkeypatch.setattr(cli, "dispose_engine", _fake_dispose)

    with pytest.raises(RuntimeError):
        await cli.run_job(cli.MaintenanceJob.PURGE_REFRESH_TOKENS)

    assert disposed == [True]


def test_parser_rejects_unknown_jobs() -> None:
    """Only declared maintenance jobs are accepted."""
    with pytest.raises(SystemExit):
        cli.main(["run-job", "drop-everything"])
