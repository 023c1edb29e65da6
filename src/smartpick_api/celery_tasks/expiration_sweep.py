from __future__ import annotations

from loguru import logger

from smartpick_api.celery_app import celery_app
from smartpick_api.core.settings import settings
from smartpick_api.tasks.expiration_sweep import run_expiration_sweep_sync


@celery_app.task(
    name="reservations.run_expiration_sweep",
    queue=settings.expiration_sweep_task_queue,
)
def run_reservation_expiration_sweep(limit: int | None = None) -> dict[str, object]:
    """Execute one reservation expiration sweep via Celery."""

    if not settings.expiration_sweep_worker_enabled:
        logger.info("Expiration sweep disabled; skipping Celery task.")
        return {"processed": 0, "skipped": True}
    return run_expiration_sweep_sync(limit=limit, triggered_by="celery")
