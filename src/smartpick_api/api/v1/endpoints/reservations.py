"""API endpoints for customer reservations and partner pickup confirmation."""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request, status
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from smartpick_api.api.dependencies.redis_clients import get_pickup_publisher, get_rate_limiter
from smartpick_api.api.dependencies.session import require_member_session, require_partner_session
from smartpick_api.core.clock import ensure_aware
from smartpick_api.db.session import get_session
from smartpick_api.domain.errors import NotOwner
from smartpick_api.models.reservation import Reservation, ReservationStatusEnum
from smartpick_api.models.user import Partner, User
from smartpick_api.services.abuse import RateLimiter
from smartpick_api.services.pickups import PickupConfirmation, PickupConfirmationService, PickupEventPublisher
from smartpick_api.services.reservations import ReservationStateMachine


router = APIRouter(prefix="/reservations", tags=["reservations"])


class ReservationCreateRequest(BaseModel):
    offerId: UUID = Field(..., description="Offer to reserve")
    quantity: int = Field(1, ge=1, description="Number of units to reserve")


class ReservationResponse(BaseModel):
    reservationId: UUID
    offerId: UUID
    customerId: UUID
    partnerId: UUID
    quantity: int
    totalPrice: float
    savedAmount: float
    pointsHeld: int
    status: ReservationStatusEnum
    qrCode: Optional[str] = Field(None, description="Pickup token; only returned to the customer")
    expiresAt: datetime
    createdAt: Optional[datetime] = None
    pickedUpAt: Optional[datetime] = None
    cancelledAt: Optional[datetime] = None
    expiredAt: Optional[datetime] = None


class ReservationEventResponse(BaseModel):
    fromStatus: Optional[str]
    toStatus: str
    actorType: str
    actorId: Optional[str]
    notes: Optional[str]
    createdAt: datetime


class PickupConfirmationResponse(BaseModel):
    reservationId: UUID
    status: ReservationStatusEnum
    pickedUpAt: datetime
    replayed: bool = False


def _optional_aware(value: datetime | None) -> datetime | None:
    return ensure_aware(value) if value is not None else None


def serialize_reservation(reservation: Reservation, *, include_qr: bool) -> ReservationResponse:
    return ReservationResponse(
        reservationId=reservation.id,
        offerId=reservation.offer_id,
        customerId=reservation.customer_id,
        partnerId=reservation.partner_id,
        quantity=reservation.quantity,
        totalPrice=float(reservation.total_price),
        savedAmount=float(reservation.saved_amount or 0),
        pointsHeld=int(reservation.points_held or 0),
        status=reservation.status,
        qrCode=reservation.qr_code if include_qr else None,
        expiresAt=ensure_aware(reservation.expires_at),
        createdAt=_optional_aware(reservation.created_at),
        pickedUpAt=_optional_aware(reservation.picked_up_at),
        cancelledAt=_optional_aware(reservation.cancelled_at),
        expiredAt=_optional_aware(reservation.expired_at),
    )


def serialize_confirmation(confirmation: PickupConfirmation) -> PickupConfirmationResponse:
    return PickupConfirmationResponse(
        reservationId=confirmation.reservation_id,
        status=confirmation.status,
        pickedUpAt=confirmation.picked_up_at,
        replayed=confirmation.replayed,
    )


async def _partner_for(session: AsyncSession, user_id: UUID) -> Partner | None:
    result = await session.execute(select(Partner).where(Partner.user_id == user_id))
    return result.scalar_one_or_none()


def client_ip(request: Request) -> str | None:
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip() or None
    return request.client.host if request.client else None


@router.post("", response_model=ReservationResponse, status_code=status.HTTP_201_CREATED)
async def create_reservation(
    payload: ReservationCreateRequest,
    user: User = Depends(require_member_session),
    session: AsyncSession = Depends(get_session),
) -> ReservationResponse:
    machine = ReservationStateMachine(session)
    reservation = await machine.create(offer_id=payload.offerId, customer_id=user.id, quantity=payload.quantity)
    return serialize_reservation(reservation, include_qr=True)


@router.get("", response_model=List[ReservationResponse])
async def list_my_reservations(
    status_filter: Optional[List[ReservationStatusEnum]] = Query(None, alias="status"),
    limit: int = Query(50, ge=1, le=200),
    user: User = Depends(require_member_session),
    session: AsyncSession = Depends(get_session),
) -> List[ReservationResponse]:
    machine = ReservationStateMachine(session)
    reservations = await machine.list_for_customer(user.id, statuses=status_filter, limit=limit)
    return [serialize_reservation(item, include_qr=True) for item in reservations]


@router.get("/{reservation_id}", response_model=ReservationResponse)
async def get_reservation(
    reservation_id: UUID,
    user: User = Depends(require_member_session),
    session: AsyncSession = Depends(get_session),
) -> ReservationResponse:
    machine = ReservationStateMachine(session)
    reservation = await machine.get(reservation_id)
    if reservation.customer_id == user.id:
        return serialize_reservation(reservation, include_qr=True)
    partner = await _partner_for(session, user.id)
    if partner is not None and partner.id == reservation.partner_id:
        return serialize_reservation(reservation, include_qr=False)
    raise NotOwner("Reservation belongs to another account")


@router.get("/{reservation_id}/events", response_model=List[ReservationEventResponse])
async def list_reservation_events(
    reservation_id: UUID,
    user: User = Depends(require_member_session),
    session: AsyncSession = Depends(get_session),
) -> List[ReservationEventResponse]:
    machine = ReservationStateMachine(session)
    reservation = await machine.get(reservation_id)
    partner = await _partner_for(session, user.id)
    if reservation.customer_id != user.id and (partner is None or partner.id != reservation.partner_id):
        raise NotOwner("Reservation belongs to another account")
    events = await machine.list_events(reservation_id)
    return [
        ReservationEventResponse(
            fromStatus=event.from_status,
            toStatus=event.to_status,
            actorType=event.actor_type.value,
            actorId=event.actor_id,
            notes=event.notes,
            createdAt=ensure_aware(event.created_at),
        )
        for event in events
    ]


@router.post("/{reservation_id}/cancel", response_model=ReservationResponse)
async def cancel_reservation(
    reservation_id: UUID,
    user: User = Depends(require_member_session),
    session: AsyncSession = Depends(get_session),
) -> ReservationResponse:
    machine = ReservationStateMachine(session)
    reservation = await machine.cancel(reservation_id, user.id)
    return serialize_reservation(reservation, include_qr=False)


@router.post("/{reservation_id}/confirm", response_model=PickupConfirmationResponse)
async def confirm_pickup(
    reservation_id: UUID,
    request: Request,
    partner: Partner = Depends(require_partner_session),
    session: AsyncSession = Depends(get_session),
    rate_limiter: RateLimiter = Depends(get_rate_limiter),
    publisher: PickupEventPublisher = Depends(get_pickup_publisher),
) -> PickupConfirmationResponse:
    service = PickupConfirmationService(session, rate_limiter=rate_limiter, publisher=publisher)
    confirmation = await service.confirm(reservation_id, partner.id, client_ip=client_ip(request))
    return serialize_confirmation(confirmation)
