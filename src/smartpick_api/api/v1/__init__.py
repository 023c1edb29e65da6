from fastapi import APIRouter

from .endpoints import (
    health,
    internal_sweeps,
    observability,
    penalties,
    pickups,
    points,
    reservations,
)

router = APIRouter()
router.include_router(health.router, tags=["Health"])
router.include_router(reservations.router)
router.include_router(pickups.router)
router.include_router(penalties.router)
router.include_router(points.router)
router.include_router(internal_sweeps.router)
router.include_router(observability.router)
