from __future__ import annotations

from typing import Dict, Literal

from fastapi import APIRouter, Depends, Request
from loguru import logger
from pydantic import BaseModel, Field
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from smartpick_api.core.clock import isoformat
from smartpick_api.core.settings import settings
from smartpick_api.db.session import get_session


router = APIRouter()


class ComponentStatus(BaseModel):
    status: Literal["ready", "starting", "disabled", "error", "degraded"]
    detail: str | None = Field(default=None, description="Human readable status detail")
    last_success_at: str | None = Field(default=None, description="ISO timestamp of most recent success")


class ReadinessPayload(BaseModel):
    status: Literal["ready", "degraded", "error"]
    components: Dict[str, ComponentStatus]


@router.get("/healthz", summary="Service health check")
async def service_health() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/readyz", summary="Service readiness", response_model=ReadinessPayload)
async def service_readiness(
    request: Request,
    session: AsyncSession = Depends(get_session),
) -> ReadinessPayload:
    components: Dict[str, ComponentStatus] = {}
    status: Literal["ready", "degraded", "error"] = "ready"

    try:
        await session.execute(text("SELECT 1"))
        components["database"] = ComponentStatus(status="ready")
    except Exception as exc:
        logger.exception("Readiness database check failed", error=str(exc))
        components["database"] = ComponentStatus(status="error", detail=str(exc))
        status = "error"

    sweep_worker = getattr(request.app.state, "expiration_sweep_worker", None)
    if settings.expiration_sweep_worker_enabled and settings.celery_broker_url:
        components["expiration_sweep"] = ComponentStatus(
            status="ready",
            detail=f"Managed by Celery queue {settings.expiration_sweep_task_queue}",
        )
    elif settings.expiration_sweep_worker_enabled and sweep_worker is not None:
        running = bool(getattr(sweep_worker, "is_running", False))
        detail = None if running else "Expiration sweep worker not running"
        if not running:
            status = "degraded" if status != "error" else status
        components["expiration_sweep"] = ComponentStatus(
            status="ready" if running else "starting",
            detail=detail,
            last_success_at=isoformat(getattr(sweep_worker, "last_run_at", None)),
        )
    else:
        components["expiration_sweep"] = ComponentStatus(
            status="disabled",
            detail="Expiration sweep worker disabled via settings",
        )

    return ReadinessPayload(status=status, components=components)
