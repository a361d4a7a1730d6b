"""CLI entrypoints for notes service maintenance tasks."""

from __future__ import annotations

import argparse
import asyncio
import json
from collections.abc import Sequence

from app.config import configure_structlog, get_settings
from app.core.system_hatch import run_as_system
from app.db.session import dispose_engine
from app.services.maintenance import MaintenanceJob, MaintenanceService


async def run_job(job: MaintenanceJob) -> dict[str, object]:
    """Run one maintenance job and release the pools afterwards."""
    try:
        return await MaintenanceService(runner=run_as_system).run_job(job)
    finally:
        await dispose_engine()


def _build_parser() -> argparse.ArgumentParser:
    """Build command-line parser for supported operational commands."""
    parser = argparse.ArgumentParser(prog="python -m app.cli")
    subcommands = parser.add_subparsers(dest="command", required=True)

    job_parser = subcommands.add_parser("run-job")
    job_parser.add_argument(
        "job",
        choices=[job.value for job in MaintenanceJob],
        help="Maintenance job to run once.",
    )
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    """Run CLI command."""
    parser = _build_parser()
    args = parser.parse_args(argv)
    if args.command == "run-job":
        configure_structlog(get_settings())
        summary = asyncio.run(run_job(MaintenanceJob(args.job)))
        print(json.dumps(summary))
        return 0
    parser.error("Unsupported command")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
