"""Partner-facing pickup scanning endpoints."""

from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from smartpick_api.api.dependencies.redis_clients import get_pickup_publisher, get_rate_limiter
from smartpick_api.api.dependencies.session import require_partner_session
from smartpick_api.db.session import get_session
from smartpick_api.models.reservation import ReservationStatusEnum
from smartpick_api.models.user import Partner
from smartpick_api.services.abuse import RateLimiter
from smartpick_api.services.pickups import PickupConfirmationService, PickupEventPublisher
from smartpick_api.services.reservations import ReservationStateMachine

from .reservations import (
    PickupConfirmationResponse,
    ReservationResponse,
    client_ip,
    serialize_confirmation,
    serialize_reservation,
)


router = APIRouter(prefix="/pickups", tags=["pickups"])


class PickupScanRequest(BaseModel):
    qrCode: str = Field(..., min_length=8, max_length=64, description="Token decoded from the customer's QR code")


@router.post("/scan", response_model=PickupConfirmationResponse)
async def scan_pickup(
    payload: PickupScanRequest,
    request: Request,
    partner: Partner = Depends(require_partner_session),
    session: AsyncSession = Depends(get_session),
    rate_limiter: RateLimiter = Depends(get_rate_limiter),
    publisher: PickupEventPublisher = Depends(get_pickup_publisher),
) -> PickupConfirmationResponse:
    service = PickupConfirmationService(session, rate_limiter=rate_limiter, publisher=publisher)
    confirmation = await service.confirm_by_qr(payload.qrCode, partner.id, client_ip=client_ip(request))
    return serialize_confirmation(confirmation)


@router.get("/pending", response_model=List[ReservationResponse])
async def list_pending_pickups(
    limit: int = Query(50, ge=1, le=200),
    partner: Partner = Depends(require_partner_session),
    session: AsyncSession = Depends(get_session),
) -> List[ReservationResponse]:
    machine = ReservationStateMachine(session)
    reservations = await machine.list_for_partner(
        partner.id,
        statuses=[ReservationStatusEnum.ACTIVE],
        limit=limit,
    )
    return [serialize_reservation(item, include_qr=False) for item in reservations]
