"""Read-only views over the points ledger."""

from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from smartpick_api.api.dependencies.session import require_member_session, require_partner_session
from smartpick_api.core.clock import ensure_aware
from smartpick_api.db.session import get_session
from smartpick_api.models.points import PointsAccountOwnerEnum, PointsHistory
from smartpick_api.models.user import Partner, User
from smartpick_api.services.points import PointsBalance, PointsLedgerService


router = APIRouter(prefix="/points", tags=["points"])


class PointsBalanceResponse(BaseModel):
    ownerType: str
    ownerId: UUID
    balance: int
    escrowHeld: int
    available: int


class PointsHistoryResponse(BaseModel):
    id: UUID
    delta: int
    reasonCode: str
    balanceAfter: int
    relatedReservationId: Optional[UUID]
    relatedPenaltyId: Optional[UUID]
    metadata: Optional[dict[str, Any]]
    createdAt: datetime


def _balance_response(balance: PointsBalance) -> PointsBalanceResponse:
    return PointsBalanceResponse(
        ownerType=balance.owner_type.value,
        ownerId=balance.owner_id,
        balance=balance.balance,
        escrowHeld=balance.escrow_held,
        available=balance.available,
    )


def _history_response(entry: PointsHistory) -> PointsHistoryResponse:
    return PointsHistoryResponse(
        id=entry.id,
        delta=entry.delta,
        reasonCode=entry.reason_code.value,
        balanceAfter=entry.balance_after,
        relatedReservationId=entry.related_reservation_id,
        relatedPenaltyId=entry.related_penalty_id,
        metadata=entry.metadata_json,
        createdAt=ensure_aware(entry.created_at),
    )


@router.get("/balance", response_model=PointsBalanceResponse)
async def get_my_balance(
    user: User = Depends(require_member_session),
    session: AsyncSession = Depends(get_session),
) -> PointsBalanceResponse:
    ledger = PointsLedgerService(session)
    return _balance_response(await ledger.get_balance(PointsAccountOwnerEnum.CUSTOMER, user.id))


@router.get("/history", response_model=List[PointsHistoryResponse])
async def get_my_history(
    limit: int = Query(50, ge=1, le=200),
    user: User = Depends(require_member_session),
    session: AsyncSession = Depends(get_session),
) -> List[PointsHistoryResponse]:
    ledger = PointsLedgerService(session)
    entries = await ledger.list_history(PointsAccountOwnerEnum.CUSTOMER, user.id, limit=limit)
    return [_history_response(entry) for entry in entries]


@router.get("/partner/balance", response_model=PointsBalanceResponse)
async def get_partner_balance(
    partner: Partner = Depends(require_partner_session),
    session: AsyncSession = Depends(get_session),
) -> PointsBalanceResponse:
    ledger = PointsLedgerService(session)
    return _balance_response(await ledger.get_balance(PointsAccountOwnerEnum.PARTNER, partner.id))
