"""Cancellation cooldown: repeated cancellations temporarily block new reservations.

``cancellation_cooldown_threshold`` cancellations inside a
``cancellation_cooldown_window_minutes`` window start a cooldown lasting
``cancellation_cooldown_minutes`` from the last of them. A paid lift or an
administrative reset ends the cooldown; only cancellations after the latest
lift count towards the next one.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from uuid import UUID

from loguru import logger
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from smartpick_api.core.clock import ensure_aware, utcnow
from smartpick_api.core.settings import settings
from smartpick_api.domain.errors import CancellationCooldownActive, InvalidState
from smartpick_api.models.cancellation import (
    CancellationCooldownLift,
    CooldownLiftType,
    ReservationCancellation,
)
from smartpick_api.models.points import PointsAccountOwnerEnum, PointsReasonCode
from smartpick_api.services.points import PointsLedgerService


@dataclass(slots=True)
class CooldownStatus:
    user_id: UUID
    in_cooldown: bool
    cooldown_until: datetime | None
    cancellation_count: int
    lift_count: int


@dataclass(slots=True)
class CooldownLiftResult:
    status: CooldownStatus
    points_spent: int
    new_balance: int


class CancellationCooldownService:
    def __init__(self, session: AsyncSession, *, ledger: PointsLedgerService | None = None) -> None:
        self._session = session
        self._ledger = ledger or PointsLedgerService(session)
        self._threshold = max(settings.cancellation_cooldown_threshold, 1)
        self._window = timedelta(minutes=settings.cancellation_cooldown_window_minutes)
        self._duration = timedelta(minutes=settings.cancellation_cooldown_minutes)

    async def record_cancellation(self, user_id: UUID, reservation_id: UUID, *, now: datetime | None = None) -> None:
        """Count a customer cancellation inside the caller's transaction."""

        self._session.add(
            ReservationCancellation(
                user_id=user_id,
                reservation_id=reservation_id,
                cancelled_at=now or utcnow(),
            )
        )
        await self._session.flush()

    async def get_status(self, user_id: UUID, *, now: datetime | None = None) -> CooldownStatus:
        moment = now or utcnow()
        last_lift_at, lift_count = await self._lift_state(user_id)

        horizon = moment - self._window - self._duration
        if last_lift_at is not None and last_lift_at > horizon:
            horizon = last_lift_at

        stmt = (
            select(ReservationCancellation.cancelled_at)
            .where(
                ReservationCancellation.user_id == user_id,
                ReservationCancellation.cancelled_at > horizon,
            )
            .order_by(ReservationCancellation.cancelled_at.asc())
        )
        result = await self._session.execute(stmt)
        cancelled = [ensure_aware(value) for value in result.scalars()]

        cooldown_until: datetime | None = None
        for index in range(self._threshold - 1, len(cancelled)):
            if cancelled[index] - cancelled[index - self._threshold + 1] <= self._window:
                cooldown_until = cancelled[index] + self._duration
        in_cooldown = cooldown_until is not None and cooldown_until > moment

        return CooldownStatus(
            user_id=user_id,
            in_cooldown=in_cooldown,
            cooldown_until=cooldown_until if in_cooldown else None,
            cancellation_count=sum(1 for value in cancelled if value >= moment - self._window),
            lift_count=lift_count,
        )

    async def ensure_can_reserve(self, user_id: UUID, *, now: datetime | None = None) -> None:
        status = await self.get_status(user_id, now=now)
        if status.in_cooldown:
            raise CancellationCooldownActive(
                f"Too many cancellations; reservations unlock at {status.cooldown_until.isoformat()}",
                cooldown_until=status.cooldown_until,
            )

    async def lift_with_points(self, user_id: UUID, *, now: datetime | None = None) -> CooldownLiftResult:
        """Spend ``cancellation_cooldown_lift_points`` to end the running cooldown."""

        moment = now or utcnow()
        status = await self.get_status(user_id, now=moment)
        if not status.in_cooldown:
            raise InvalidState("No cancellation cooldown to lift")

        cost = settings.cancellation_cooldown_lift_points
        try:
            debit = await self._ledger.debit(
                PointsAccountOwnerEnum.CUSTOMER,
                user_id,
                cost,
                reason_code=PointsReasonCode.COOLDOWN_LIFT,
                key=f"cooldown:{user_id}:{status.cooldown_until.isoformat()}:{PointsReasonCode.COOLDOWN_LIFT.value}",
            )
            self._session.add(
                CancellationCooldownLift(
                    user_id=user_id,
                    lift_type=CooldownLiftType.PAID,
                    cancellation_count=status.cancellation_count,
                    points_spent=cost,
                    lifted_at=moment,
                )
            )
            await self._session.commit()
        except Exception:
            await self._session.rollback()
            raise

        logger.info("Cancellation cooldown lifted with points", user_id=str(user_id), points=cost)
        return CooldownLiftResult(
            status=await self.get_status(user_id, now=moment),
            points_spent=cost,
            new_balance=int(debit.customer_balance or 0),
        )

    async def reset(self, user_id: UUID, *, now: datetime | None = None) -> CooldownStatus:
        """Administrative reset; clears the cooldown without charging points."""

        moment = now or utcnow()
        status = await self.get_status(user_id, now=moment)
        self._session.add(
            CancellationCooldownLift(
                user_id=user_id,
                lift_type=CooldownLiftType.RESET,
                cancellation_count=status.cancellation_count,
                points_spent=0,
                lifted_at=moment,
            )
        )
        await self._session.commit()
        logger.info("Cancellation cooldown reset", user_id=str(user_id))
        return await self.get_status(user_id, now=moment)

    async def _lift_state(self, user_id: UUID) -> tuple[datetime | None, int]:
        stmt = select(func.max(CancellationCooldownLift.lifted_at), func.count(CancellationCooldownLift.id)).where(
            CancellationCooldownLift.user_id == user_id
        )
        last_lift_at, lift_count = (await self._session.execute(stmt)).one()
        return (ensure_aware(last_lift_at) if last_lift_at is not None else None), int(lift_count or 0)
