"""Expire overdue reservations once and escalate no-show penalties.

Intended usage: schedule via cron when neither the in-process worker nor
Celery beat is running, or invoke manually after an outage.

Example:
    python tooling/scripts/run_expiration_sweep.py --trigger cron --limit 500
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

from loguru import logger


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Execute the reservation expiration sweep once")
    parser.add_argument(
        "--trigger",
        default="manual",
        help="Label recorded on the sweep run to describe the invocation source.",
    )
    parser.add_argument(
        "--limit",
        type=int,
        default=None,
        help="Override the number of reservations processed in this sweep.",
    )
    return parser.parse_args()


async def _run(trigger: str, limit: int | None) -> dict[str, int]:
    repo_root = Path(__file__).resolve().parents[2]
    api_src = repo_root / "src"
    if str(api_src) not in sys.path:
        sys.path.insert(0, str(api_src))

    from smartpick_api.core.settings import settings  # type: ignore import-position
    from smartpick_api.db.session import async_session  # type: ignore import-position
    from smartpick_api.workers import ExpirationSweepWorker  # type: ignore import-position

    worker = ExpirationSweepWorker(
        async_session,  # type: ignore[arg-type]
        interval_seconds=settings.expiration_sweep_interval_seconds,
        limit=limit or settings.expiration_sweep_batch_size,
    )
    outcomes = await worker.run_once(triggered_by=trigger)
    for outcome in outcomes:
        if outcome.action == "failed":
            logger.warning("Reservation not expired", **outcome.as_dict())
    return worker.last_summary


def main() -> int:
    args = parse_args()
    summary = asyncio.run(_run(args.trigger, args.limit))
    logger.success(
        "Expiration sweep run completed",
        processed=summary.get("processed", 0),
        expired=summary.get("expired", 0),
        penalties=summary.get("penalty_applied", 0),
        banned=summary.get("banned", 0),
        failed=summary.get("failed", 0),
        trigger=args.trigger,
    )
    return 1 if summary.get("failed") else 0


if __name__ == "__main__":
    sys.exit(main())
