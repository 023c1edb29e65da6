"""API endpoints for no-show penalties, cancellation cooldowns, point lifting, and forgiveness."""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from smartpick_api.api.dependencies.session import require_member_session, require_partner_session
from smartpick_api.core.clock import ensure_aware
from smartpick_api.db.session import get_session
from smartpick_api.models.penalty import Penalty
from smartpick_api.models.user import Partner, User
from smartpick_api.services.penalties import CancellationCooldownService, CooldownStatus, PenaltyPolicyEngine


router = APIRouter(prefix="/penalties", tags=["penalties"])


class PenaltyResponse(BaseModel):
    id: UUID
    reservationId: Optional[UUID]
    partnerId: Optional[UUID]
    offenseNumber: int
    penaltyType: str
    suspendedUntil: Optional[datetime]
    isActive: bool
    acknowledged: bool
    canLiftWithPoints: bool
    pointsRequired: int
    liftedWithPoints: bool
    forgivenessStatus: Optional[str]
    forgivenessExpiresAt: Optional[datetime]
    createdAt: Optional[datetime]


class OffenseSummaryResponse(BaseModel):
    missedCount: int
    warningsShown: int
    isSuspended: bool
    suspendedUntil: Optional[datetime]
    nextPenaltyType: str
    activePenalty: Optional[PenaltyResponse]


class PenaltyLiftResponse(BaseModel):
    penaltyId: UUID
    newBalance: int


class CooldownStatusResponse(BaseModel):
    inCooldown: bool
    cooldownUntil: Optional[datetime]
    cancellationCount: int
    liftCount: int


class CooldownLiftResponse(BaseModel):
    cooldown: CooldownStatusResponse
    pointsSpent: int
    newBalance: int


class ForgivenessRequest(BaseModel):
    message: str = Field(..., min_length=1, max_length=1000, description="Explanation sent to the partner")


class ForgivenessDecisionRequest(BaseModel):
    grant: bool = Field(..., description="Whether the partner waives the penalty")
    response: Optional[str] = Field(None, max_length=1000)


def _aware(value: datetime | None) -> datetime | None:
    return ensure_aware(value) if value is not None else None


def serialize_cooldown(status: CooldownStatus) -> CooldownStatusResponse:
    return CooldownStatusResponse(
        inCooldown=status.in_cooldown,
        cooldownUntil=status.cooldown_until,
        cancellationCount=status.cancellation_count,
        liftCount=status.lift_count,
    )


def serialize_penalty(penalty: Penalty) -> PenaltyResponse:
    return PenaltyResponse(
        id=penalty.id,
        reservationId=penalty.reservation_id,
        partnerId=penalty.partner_id,
        offenseNumber=penalty.offense_number,
        penaltyType=penalty.penalty_type.value,
        suspendedUntil=_aware(penalty.suspended_until),
        isActive=bool(penalty.is_active),
        acknowledged=bool(penalty.acknowledged),
        canLiftWithPoints=bool(penalty.can_lift_with_points),
        pointsRequired=int(penalty.points_required or 0),
        liftedWithPoints=bool(penalty.lifted_with_points),
        forgivenessStatus=penalty.forgiveness_status.value if penalty.forgiveness_status else None,
        forgivenessExpiresAt=_aware(penalty.forgiveness_expires_at),
        createdAt=_aware(penalty.created_at),
    )


@router.get("", response_model=List[PenaltyResponse])
async def list_my_penalties(
    active_only: bool = Query(False, alias="activeOnly"),
    user: User = Depends(require_member_session),
    session: AsyncSession = Depends(get_session),
) -> List[PenaltyResponse]:
    engine = PenaltyPolicyEngine(session)
    penalties = await engine.list_penalties(user.id, active_only=active_only)
    return [serialize_penalty(item) for item in penalties]


@router.get("/summary", response_model=OffenseSummaryResponse)
async def get_offense_summary(
    user: User = Depends(require_member_session),
    session: AsyncSession = Depends(get_session),
) -> OffenseSummaryResponse:
    engine = PenaltyPolicyEngine(session)
    summary = await engine.get_offense_summary(user.id)
    return OffenseSummaryResponse(
        missedCount=summary.missed_count,
        warningsShown=summary.warnings_shown,
        isSuspended=summary.is_suspended,
        suspendedUntil=summary.suspended_until,
        nextPenaltyType=summary.next_penalty_type.value,
        activePenalty=serialize_penalty(summary.active_penalty) if summary.active_penalty else None,
    )


@router.get("/cooldown", response_model=CooldownStatusResponse)
async def get_cancellation_cooldown(
    user: User = Depends(require_member_session),
    session: AsyncSession = Depends(get_session),
) -> CooldownStatusResponse:
    status = await CancellationCooldownService(session).get_status(user.id)
    return serialize_cooldown(status)


@router.post("/cooldown/lift", response_model=CooldownLiftResponse)
async def lift_cancellation_cooldown(
    user: User = Depends(require_member_session),
    session: AsyncSession = Depends(get_session),
) -> CooldownLiftResponse:
    result = await CancellationCooldownService(session).lift_with_points(user.id)
    return CooldownLiftResponse(
        cooldown=serialize_cooldown(result.status),
        pointsSpent=result.points_spent,
        newBalance=result.new_balance,
    )


@router.post("/{penalty_id}/lift", response_model=PenaltyLiftResponse)
async def lift_penalty(
    penalty_id: UUID,
    user: User = Depends(require_member_session),
    session: AsyncSession = Depends(get_session),
) -> PenaltyLiftResponse:
    engine = PenaltyPolicyEngine(session)
    result = await engine.lift_with_points(penalty_id, user.id)
    return PenaltyLiftResponse(penaltyId=penalty_id, newBalance=result.new_balance)


@router.post("/{penalty_id}/acknowledge", response_model=PenaltyResponse)
async def acknowledge_penalty(
    penalty_id: UUID,
    user: User = Depends(require_member_session),
    session: AsyncSession = Depends(get_session),
) -> PenaltyResponse:
    engine = PenaltyPolicyEngine(session)
    penalty = await engine.acknowledge(penalty_id, user.id)
    return serialize_penalty(penalty)


@router.post("/{penalty_id}/forgiveness", response_model=PenaltyResponse)
async def request_forgiveness(
    penalty_id: UUID,
    payload: ForgivenessRequest,
    user: User = Depends(require_member_session),
    session: AsyncSession = Depends(get_session),
) -> PenaltyResponse:
    engine = PenaltyPolicyEngine(session)
    penalty = await engine.request_forgiveness(penalty_id, user.id, payload.message)
    return serialize_penalty(penalty)


@router.post("/{penalty_id}/forgiveness/decision", response_model=PenaltyResponse)
async def decide_forgiveness(
    penalty_id: UUID,
    payload: ForgivenessDecisionRequest,
    partner: Partner = Depends(require_partner_session),
    session: AsyncSession = Depends(get_session),
) -> PenaltyResponse:
    engine = PenaltyPolicyEngine(session)
    penalty = await engine.decide_forgiveness(
        penalty_id,
        partner.id,
        grant=payload.grant,
        response=payload.response,
    )
    return serialize_penalty(penalty)
