"""Scheduler-facing trigger for the reservation expiration sweep."""

from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from smartpick_api.api.dependencies.security import require_internal_api_key
from smartpick_api.db.session import get_session
from smartpick_api.services.reservations import run_expiration_sweep


router = APIRouter(
    prefix="/internal/sweeps",
    tags=["internal"],
    dependencies=[Depends(require_internal_api_key)],
)


class SweepOutcomeResponse(BaseModel):
    reservationId: str
    action: str
    message: str


@router.post("/expiration", response_model=List[SweepOutcomeResponse])
async def trigger_expiration_sweep(
    limit: Optional[int] = Query(None, ge=1, le=1000),
    session: AsyncSession = Depends(get_session),
) -> List[SweepOutcomeResponse]:
    outcomes = await run_expiration_sweep(session, limit=limit)
    return [SweepOutcomeResponse(**outcome.as_dict()) for outcome in outcomes]
