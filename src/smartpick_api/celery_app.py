"""Celery application setup for reservation sweeps and other background jobs."""

from __future__ import annotations

from celery import Celery

from smartpick_api.core.settings import settings


def _resolve_backend_url() -> str:
    if settings.celery_result_backend:
        return settings.celery_result_backend
    return settings.redis_url


def _resolve_broker_url() -> str:
    if settings.celery_broker_url:
        return settings.celery_broker_url
    return settings.redis_url


celery_app = Celery(
    "smartpick_api",
    broker=_resolve_broker_url(),
    backend=_resolve_backend_url(),
)

celery_app.conf.update(
    task_default_queue=settings.celery_default_queue,
    timezone="UTC",
    broker_connection_retry_on_startup=True,
    beat_schedule={
        "reservations-expiration-sweep": {
            "task": "reservations.run_expiration_sweep",
            "schedule": float(settings.expiration_sweep_interval_seconds),
        }
    },
)

celery_app.autodiscover_tasks(["smartpick_api.celery_tasks"])

__all__ = ["celery_app"]
