"""Worker wiring for periodic reservation expiration sweeps."""

from __future__ import annotations

import asyncio
from collections import Counter
from datetime import datetime
from typing import Awaitable, Callable, Dict

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from smartpick_api.core.clock import utcnow
from smartpick_api.core.settings import settings
from smartpick_api.models.expiration_sweep import ExpirationSweepRun
from smartpick_api.services.reservations import SweepOutcome, run_expiration_sweep

SessionFactory = Callable[[], Awaitable[AsyncSession]] | Callable[[], AsyncSession]


class ExpirationSweepWorker:
    """Periodically expires overdue reservations and escalates no-show penalties."""

    def __init__(
        self,
        session_factory: SessionFactory,
        *,
        interval_seconds: int | None = None,
        limit: int | None = None,
        trigger_label: str | None = None,
    ) -> None:
        self._session_factory = session_factory
        self.interval_seconds = interval_seconds or settings.expiration_sweep_interval_seconds
        self._limit = limit or settings.expiration_sweep_batch_size
        self._trigger_label = trigger_label or settings.expiration_sweep_trigger_label
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task | None = None
        self.is_running: bool = False
        self.last_run_at: datetime | None = None
        self.last_summary: Dict[str, int] = {}

    def start(self) -> None:
        if self._task and not self._task.done():
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run_loop())
        self.is_running = True
        logger.info(
            "Expiration sweep worker started",
            interval_seconds=self.interval_seconds,
            limit=self._limit,
        )

    async def stop(self) -> None:
        if not self._task:
            return
        self._stop_event.set()
        await self._task
        self._task = None
        self.is_running = False
        logger.info("Expiration sweep worker stopped")

    async def run_once(
        self,
        *,
        triggered_by: str | None = None,
        now: datetime | None = None,
    ) -> list[SweepOutcome]:
        """Execute a single sweep and persist an ``ExpirationSweepRun`` row for it."""

        trigger = triggered_by or self._trigger_label
        session = await self._ensure_session()
        async with session as managed_session:
            run = ExpirationSweepRun(triggered_by=trigger, status="running")
            managed_session.add(run)
            await managed_session.commit()

            try:
                sweep_session = await self._ensure_session()
                async with sweep_session as managed_sweep_session:
                    outcomes = await run_expiration_sweep(managed_sweep_session, limit=self._limit, now=now)
            except Exception as exc:
                run.status = "failed"
                run.completed_at = utcnow()
                run.error_message = str(exc)
                run.metadata_json = self._build_run_metadata(trigger, error=str(exc))
                await managed_session.commit()
                logger.exception("Expiration sweep failed", run_id=str(run.id), error=str(exc))
                raise

            summary = self.summarize(outcomes)
            run.status = "completed"
            run.completed_at = utcnow()
            run.processed_count = summary["processed"]
            run.expired_count = summary["expired"]
            run.penalty_count = summary["penalty_applied"]
            run.banned_count = summary["banned"]
            run.failed_count = summary["failed"]
            run.metadata_json = self._build_run_metadata(trigger, skipped=summary["skipped"], settled=summary["settled"])
            await managed_session.commit()
            logger.info(
                "Expiration sweep completed",
                run_id=str(run.id),
                trigger=trigger,
                **summary,
            )

        self.last_run_at = utcnow()
        self.last_summary = summary
        return outcomes

    @staticmethod
    def summarize(outcomes: list[SweepOutcome]) -> Dict[str, int]:
        counts = Counter(outcome.action for outcome in outcomes)
        return {
            "processed": len(outcomes),
            "expired": counts["expired"],
            "penalty_applied": counts["penalty_applied"],
            "banned": counts["banned"],
            "settled": counts["settled"],
            "skipped": counts["skipped"],
            "failed": counts["failed"],
        }

    async def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.run_once()
            except Exception as exc:  # pragma: no cover
                logger.exception("Expiration sweep iteration failed", error=str(exc))
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                continue

    async def _ensure_session(self) -> AsyncSession:
        maybe_session = self._session_factory()
        if isinstance(maybe_session, AsyncSession):
            return maybe_session
        return await maybe_session

    def _build_run_metadata(
        self,
        trigger: str,
        *,
        skipped: int = 0,
        settled: int = 0,
        error: str | None = None,
    ) -> Dict[str, object | None]:
        metadata: Dict[str, object | None] = {
            "limit": self._limit,
            "triggered_by": trigger,
            "skipped": skipped,
            "settled": settled,
        }
        if error:
            metadata["error"] = error
        return metadata
