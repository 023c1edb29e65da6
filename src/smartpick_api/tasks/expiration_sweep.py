"""CLI + helpers for reservation expiration sweeps.

External schedulers (Celery beat, cron, Kubernetes CronJobs) call these
helpers to run the same sweep the in-process worker runs, without importing
FastAPI. The session factory stays injectable for tests and queue runners.
"""

from __future__ import annotations

import argparse
import asyncio
import json

from loguru import logger

from smartpick_api.core.settings import settings
from smartpick_api.db.session import async_session
from smartpick_api.workers.expiration_sweep import ExpirationSweepWorker, SessionFactory


def _default_session_factory():
    return async_session()


async def run_expiration_sweep_once(
    *,
    limit: int | None = None,
    triggered_by: str | None = None,
    session_factory: SessionFactory | None = None,
) -> dict[str, object]:
    """Run one sweep and return counts plus per-reservation outcomes."""

    worker = ExpirationSweepWorker(
        session_factory or _default_session_factory,
        interval_seconds=settings.expiration_sweep_interval_seconds,
        limit=limit or settings.expiration_sweep_batch_size,
        trigger_label=settings.expiration_sweep_trigger_label,
    )
    outcomes = await worker.run_once(triggered_by=triggered_by)
    summary: dict[str, object] = dict(worker.last_summary)
    summary["outcomes"] = [outcome.as_dict() for outcome in outcomes]
    logger.info("Expiration sweep finished", trigger=triggered_by, processed=summary["processed"])
    return summary


def run_expiration_sweep_sync(
    *,
    limit: int | None = None,
    triggered_by: str | None = None,
    session_factory: SessionFactory | None = None,
) -> dict[str, object]:
    """Synchronous helper so Celery/cron jobs can reuse the async worker."""

    return asyncio.run(
        run_expiration_sweep_once(
            limit=limit,
            triggered_by=triggered_by,
            session_factory=session_factory,
        )
    )


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Expire overdue reservations once.")
    parser.add_argument("--limit", type=int, default=None, help="Max reservations to process.")
    parser.add_argument("--trigger", default="cli", help="Label recorded on the sweep run.")
    return parser


def cli() -> None:
    args = _build_parser().parse_args()
    summary = run_expiration_sweep_sync(limit=args.limit, triggered_by=args.trigger)
    print(json.dumps(summary, indent=2))


if __name__ == "__main__":  # pragma: no cover
    cli()
