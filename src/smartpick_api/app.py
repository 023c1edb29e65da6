from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from loguru import logger

from smartpick_api.core.settings import settings
from smartpick_api.db.session import async_session
from smartpick_api.domain.errors import RateLimited, ReservationDomainError
from .api.routes import api_router
from .core.logging import configure_logging
from .observability.tracing import configure_tracing
from .workers import ExpirationSweepWorker


APP_VERSION = "0.1.0"


def _session_factory():
    return async_session()


@asynccontextmanager
async def lifespan(app: FastAPI):
    sweep_worker = ExpirationSweepWorker(
        session_factory=_session_factory,
        interval_seconds=settings.expiration_sweep_interval_seconds,
        limit=settings.expiration_sweep_batch_size,
        trigger_label=settings.expiration_sweep_trigger_label,
    )
    app.state.expiration_sweep_worker = sweep_worker

    sweep_worker_started = False
    if settings.expiration_sweep_worker_enabled and not settings.celery_broker_url:
        sweep_worker.start()
        sweep_worker_started = True
        logger.info(
            "Expiration sweep worker enabled (in-process)",
            interval_seconds=sweep_worker.interval_seconds,
            limit=settings.expiration_sweep_batch_size,
        )
    elif settings.expiration_sweep_worker_enabled and settings.celery_broker_url:
        logger.info(
            "Expiration sweep Celery worker enabled",
            queue=settings.expiration_sweep_task_queue,
        )
    else:
        logger.info(
            "Expiration sweep worker disabled",
            reason="expiration_sweep_worker_enabled is false",
        )

    try:
        yield
    finally:
        if sweep_worker_started and sweep_worker.is_running:
            await sweep_worker.stop()


async def handle_domain_error(request: Request, exc: ReservationDomainError) -> JSONResponse:
    headers: dict[str, str] = {}
    if isinstance(exc, RateLimited):
        headers["Retry-After"] = str(exc.retry_after)
    logger.info(
        "Reservation request rejected",
        path=request.url.path,
        code=exc.code,
        status_code=exc.status_code,
    )
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "code": exc.code},
        headers=headers or None,
    )


def create_app() -> FastAPI:
    """Application factory for the SmartPick reservation API."""
    configure_logging(
        service_name="smartpick-api",
        environment=settings.environment,
        version=APP_VERSION,
        level=settings.log_level,
    )

    app = FastAPI(
        title="SmartPick API",
        version=APP_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    configure_tracing(
        app,
        service_name="smartpick-api",
        service_version=APP_VERSION,
        environment=settings.environment,
    )

    app.add_exception_handler(ReservationDomainError, handle_domain_error)
    app.include_router(api_router)

    @app.get("/healthz", tags=["Health"])
    async def health_check() -> dict[str, str]:
        return {
            "status": "ok",
            "environment": settings.environment,
            "version": APP_VERSION,
        }

    return app
