"""Escalating no-show penalty policy.

Missed pickups are counted per customer. The first three produce
non-blocking warnings; from the fourth onwards the offense number selects a
suspension tier. Suspensions can be lifted by spending points or, within the
forgiveness window, waived by the partner that reported the no-show.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Literal, Sequence
from uuid import UUID

from loguru import logger
from sqlalchemy import and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from smartpick_api.core.clock import ensure_aware, utcnow
from smartpick_api.core.settings import settings
from smartpick_api.domain.errors import (
    InvalidState,
    NotOwner,
    PenaltyNotActive,
    PenaltyNotFound,
    PenaltyNotLiftable,
    UserSuspended,
    WindowClosed,
)
from smartpick_api.models.penalty import ForgivenessStatus, MissedPickupCounter, Penalty, PenaltyType
from smartpick_api.models.points import PointsAccountOwnerEnum, PointsReasonCode
from smartpick_api.models.user import User, UserStatusEnum
from smartpick_api.services.points import PointsLedgerService

WARNING_LIMIT = 3

NoShowAction = Literal["expired", "penalty_applied", "banned"]


@dataclass(frozen=True, slots=True)
class PenaltyTier:
    penalty_type: PenaltyType
    duration: timedelta | None
    points_required: int
    can_lift_with_points: bool


WARNING_TIER = PenaltyTier(PenaltyType.WARNING, None, 0, False)
SUSPEND_1H_TIER = PenaltyTier(PenaltyType.SUSPEND_1H, timedelta(hours=1), 100, True)
SUSPEND_24H_TIER = PenaltyTier(PenaltyType.SUSPEND_24H, timedelta(hours=24), 500, True)
# No expiry; ends only when lifted or forgiven.
PERMANENT_TIER = PenaltyTier(PenaltyType.PERMANENT, None, 1000, True)


def select_penalty_tier(offense_number: int) -> PenaltyTier:
    """Map a missed-pickup count onto its penalty tier."""

    if offense_number <= WARNING_LIMIT:
        return WARNING_TIER
    if offense_number == 4:
        return SUSPEND_1H_TIER
    if offense_number == 5:
        return SUSPEND_24H_TIER
    return PERMANENT_TIER


@dataclass(slots=True)
class NoShowOutcome:
    missed_count: int
    action: NoShowAction
    penalty: Penalty | None = None
    warning_issued: bool = False
    suppressed: bool = False


@dataclass(slots=True)
class PenaltyLiftResult:
    penalty: Penalty
    new_balance: int
    replayed: bool = False


@dataclass(slots=True)
class OffenseSummary:
    user_id: UUID
    missed_count: int
    warnings_shown: int
    active_penalty: Penalty | None
    next_penalty_type: PenaltyType
    is_suspended: bool
    suspended_until: datetime | None


class PenaltyPolicyEngine:
    """Counts no-shows, issues and lifts penalties, and gates new reservations."""

    def __init__(self, session: AsyncSession, *, ledger: PointsLedgerService | None = None) -> None:
        self._session = session
        self._ledger = ledger or PointsLedgerService(session)
        self._cooldown = timedelta(seconds=settings.penalty_lift_cooldown_seconds)
        self._forgiveness_window = timedelta(hours=settings.forgiveness_window_hours)

    async def record_no_show(
        self,
        *,
        user_id: UUID,
        reservation_id: UUID | None,
        partner_id: UUID | None,
        now: datetime | None = None,
    ) -> NoShowOutcome:
        """Count a missed pickup and issue the warning or suspension it earns.

        Runs inside the caller's transaction; the sweep commits per reservation.
        """

        moment = now or utcnow()
        counter = await self._increment_counter(user_id, moment)
        count = int(counter.missed_count)

        if count <= WARNING_LIMIT:
            warning_issued = False
            if int(counter.warnings_shown) < count:
                penalty = self._build_penalty(
                    user_id=user_id,
                    reservation_id=reservation_id,
                    partner_id=partner_id,
                    offense_number=count,
                    tier=WARNING_TIER,
                    now=moment,
                )
                penalty.is_active = False
                self._session.add(penalty)
                await self._session.execute(
                    update(MissedPickupCounter)
                    .where(MissedPickupCounter.user_id == user_id, MissedPickupCounter.warnings_shown < count)
                    .values(warnings_shown=count)
                    .execution_options(synchronize_session=False)
                )
                await self._session.flush()
                warning_issued = True
                logger.info("No-show warning issued", user_id=str(user_id), missed_count=count)
            return NoShowOutcome(missed_count=count, action="expired", warning_issued=warning_issued)

        tier = select_penalty_tier(count)
        if await self._within_cooldown(user_id, count, moment):
            logger.info(
                "Penalty creation suppressed by cooldown",
                user_id=str(user_id),
                offense_number=count,
            )
            return NoShowOutcome(missed_count=count, action="expired", suppressed=True)

        await self._session.execute(
            update(Penalty)
            .where(Penalty.user_id == user_id, Penalty.is_active.is_(True))
            .values(is_active=False, superseded_at=moment)
            .execution_options(synchronize_session=False)
        )
        penalty = self._build_penalty(
            user_id=user_id,
            reservation_id=reservation_id,
            partner_id=partner_id,
            offense_number=count,
            tier=tier,
            now=moment,
        )
        self._session.add(penalty)
        if tier.penalty_type == PenaltyType.PERMANENT:
            await self._set_user_status(user_id, UserStatusEnum.SUSPENDED)
        await self._session.flush()

        action: NoShowAction = "banned" if tier.penalty_type == PenaltyType.PERMANENT else "penalty_applied"
        logger.warning(
            "Penalty applied for missed pickup",
            user_id=str(user_id),
            offense_number=count,
            penalty_type=tier.penalty_type.value,
            suspended_until=penalty.suspended_until.isoformat() if penalty.suspended_until else None,
        )
        return NoShowOutcome(missed_count=count, action=action, penalty=penalty)

    async def lift_with_points(
        self,
        penalty_id: UUID,
        user_id: UUID,
        *,
        now: datetime | None = None,
    ) -> PenaltyLiftResult:
        """Spend ``points_required`` to deactivate a suspension; returns the new balance.

        A suspension whose ``suspended_until`` has passed is retired free of charge.
        """

        moment = now or utcnow()
        penalty = await self._get_owned_penalty(penalty_id, user_id)
        if not penalty.is_active:
            raise PenaltyNotActive(f"Penalty {penalty_id} is not active")
        if not penalty.can_lift_with_points:
            raise PenaltyNotLiftable(f"Penalty {penalty_id} cannot be lifted with points")
        if self._is_elapsed(penalty, moment):
            return await self._retire_elapsed(penalty, user_id, moment)

        try:
            result = await self._session.execute(
                update(Penalty)
                .where(Penalty.id == penalty_id, Penalty.is_active.is_(True))
                .values(is_active=False, lifted_with_points=True, lifted_at=moment)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise PenaltyNotActive(f"Penalty {penalty_id} is not active")

            debit = await self._ledger.debit(
                PointsAccountOwnerEnum.CUSTOMER,
                user_id,
                int(penalty.points_required),
                reason_code=PointsReasonCode.PENALTY_LIFT,
                key=f"penalty:{penalty_id}:{PointsReasonCode.PENALTY_LIFT.value}",
                penalty_id=penalty_id,
            )
            await self._session.execute(
                update(Penalty)
                .where(Penalty.id == penalty_id)
                .values(acknowledged=True, acknowledged_at=moment)
                .execution_options(synchronize_session=False)
            )
            if penalty.penalty_type == PenaltyType.PERMANENT:
                await self._set_user_status(user_id, UserStatusEnum.ACTIVE)
            await self._session.commit()
        except Exception:
            await self._session.rollback()
            raise

        await self._session.refresh(penalty)
        logger.info(
            "Penalty lifted with points",
            penalty_id=str(penalty_id),
            user_id=str(user_id),
            points=int(penalty.points_required),
        )
        return PenaltyLiftResult(
            penalty=penalty,
            new_balance=int(debit.customer_balance or 0),
            replayed=debit.replayed,
        )

    async def acknowledge(self, penalty_id: UUID, user_id: UUID, *, now: datetime | None = None) -> Penalty:
        """Mark a penalty as seen; warnings and elapsed suspensions stop being active."""

        moment = now or utcnow()
        penalty = await self._get_owned_penalty(penalty_id, user_id)
        if not penalty.acknowledged:
            penalty.acknowledged = True
            penalty.acknowledged_at = moment
        if penalty.is_active and self._is_elapsed(penalty, moment):
            penalty.is_active = False
        await self._session.commit()
        await self._session.refresh(penalty)
        return penalty

    async def get_active_suspension(self, user_id: UUID, *, now: datetime | None = None) -> Penalty | None:
        """Return the active suspension still in force at ``now``, if any."""

        moment = now or utcnow()
        stmt = (
            select(Penalty)
            .where(
                Penalty.user_id == user_id,
                Penalty.is_active.is_(True),
                Penalty.penalty_type != PenaltyType.WARNING,
                or_(Penalty.suspended_until.is_(None), Penalty.suspended_until > moment),
            )
            .order_by(Penalty.created_at.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def can_reserve(self, user_id: UUID, *, now: datetime | None = None) -> bool:
        try:
            await self.ensure_can_reserve(user_id, now=now)
        except UserSuspended:
            return False
        return True

    async def ensure_can_reserve(self, user_id: UUID, *, now: datetime | None = None) -> None:
        user = await self._session.get(User, user_id, populate_existing=True)
        if user is not None and user.status == UserStatusEnum.SUSPENDED.value:
            raise UserSuspended("Account is suspended")
        penalty = await self.get_active_suspension(user_id, now=now)
        if penalty is not None:
            until = ensure_aware(penalty.suspended_until) if penalty.suspended_until else None
            message = f"Suspended until {until.isoformat()}" if until else "Suspended until the penalty is lifted"
            raise UserSuspended(message, suspended_until=until, penalty_id=penalty.id)

    async def request_forgiveness(
        self,
        penalty_id: UUID,
        user_id: UUID,
        message: str,
        *,
        now: datetime | None = None,
    ) -> Penalty:
        """Ask the reporting partner to waive a suspension within the forgiveness window."""

        moment = now or utcnow()
        penalty = await self._get_owned_penalty(penalty_id, user_id)
        if not penalty.is_active:
            raise PenaltyNotActive(f"Penalty {penalty_id} is not active")
        if penalty.forgiveness_status is not None:
            raise InvalidState("Forgiveness has already been requested for this penalty")
        expires_at = penalty.forgiveness_expires_at
        if expires_at is not None and moment > ensure_aware(expires_at):
            raise WindowClosed("The forgiveness window for this penalty has closed")

        penalty.forgiveness_status = ForgivenessStatus.PENDING
        penalty.forgiveness_message = message
        penalty.forgiveness_requested_at = moment
        await self._session.commit()
        await self._session.refresh(penalty)
        logger.info("Penalty forgiveness requested", penalty_id=str(penalty_id), user_id=str(user_id))
        return penalty

    async def decide_forgiveness(
        self,
        penalty_id: UUID,
        partner_id: UUID,
        *,
        grant: bool,
        response: str | None = None,
        now: datetime | None = None,
    ) -> Penalty:
        """Record the partner's decision; a granted request lifts the penalty free of charge."""

        moment = now or utcnow()
        penalty = await self._session.get(Penalty, penalty_id, populate_existing=True)
        if penalty is None:
            raise PenaltyNotFound(f"Penalty {penalty_id} not found")
        if penalty.partner_id != partner_id:
            raise NotOwner("Only the reporting partner can decide on forgiveness")
        if penalty.forgiveness_status != ForgivenessStatus.PENDING:
            raise InvalidState("No pending forgiveness request for this penalty")

        penalty.forgiveness_decided_at = moment
        penalty.forgiveness_response = response
        if grant:
            penalty.forgiveness_status = ForgivenessStatus.GRANTED
            penalty.is_active = False
            penalty.acknowledged = True
            penalty.acknowledged_at = penalty.acknowledged_at or moment
            if penalty.penalty_type == PenaltyType.PERMANENT:
                await self._set_user_status(penalty.user_id, UserStatusEnum.ACTIVE)
        else:
            penalty.forgiveness_status = ForgivenessStatus.DENIED
        await self._session.commit()
        await self._session.refresh(penalty)
        logger.info(
            "Penalty forgiveness decided",
            penalty_id=str(penalty_id),
            partner_id=str(partner_id),
            granted=grant,
        )
        return penalty

    async def list_penalties(self, user_id: UUID, *, active_only: bool = False) -> Sequence[Penalty]:
        stmt = select(Penalty).where(Penalty.user_id == user_id)
        if active_only:
            stmt = stmt.where(Penalty.is_active.is_(True))
        stmt = stmt.order_by(Penalty.created_at.desc(), Penalty.offense_number.desc()).execution_options(
            populate_existing=True
        )
        result = await self._session.execute(stmt)
        return list(result.scalars())

    async def get_offense_summary(self, user_id: UUID, *, now: datetime | None = None) -> OffenseSummary:
        moment = now or utcnow()
        counter = await self._session.get(MissedPickupCounter, user_id, populate_existing=True)
        missed = int(counter.missed_count) if counter else 0
        warnings = int(counter.warnings_shown) if counter else 0
        active = await self.get_active_suspension(user_id, now=moment)
        until = ensure_aware(active.suspended_until) if active and active.suspended_until else None
        return OffenseSummary(
            user_id=user_id,
            missed_count=missed,
            warnings_shown=warnings,
            active_penalty=active,
            next_penalty_type=select_penalty_tier(missed + 1).penalty_type,
            is_suspended=active is not None,
            suspended_until=until,
        )

    async def reset_missed_pickups(self, user_id: UUID, *, now: datetime | None = None) -> None:
        """Administrative reset of the lifetime missed pickup counter."""

        moment = now or utcnow()
        await self._session.execute(
            update(MissedPickupCounter)
            .where(MissedPickupCounter.user_id == user_id)
            .values(missed_count=0, warnings_shown=0, reset_at=moment)
            .execution_options(synchronize_session=False)
        )
        await self._session.commit()
        logger.info("Missed pickup counter reset", user_id=str(user_id))

    async def _increment_counter(self, user_id: UUID, moment: datetime) -> MissedPickupCounter:
        counter = await self._session.get(MissedPickupCounter, user_id, populate_existing=True)
        if counter is None:
            counter = MissedPickupCounter(user_id=user_id, missed_count=0, warnings_shown=0)
            self._session.add(counter)
            await self._session.flush()
        await self._session.execute(
            update(MissedPickupCounter)
            .where(MissedPickupCounter.user_id == user_id)
            .values(missed_count=MissedPickupCounter.missed_count + 1, last_missed_at=moment)
            .execution_options(synchronize_session=False)
        )
        await self._session.refresh(counter)
        return counter

    async def _within_cooldown(self, user_id: UUID, offense_number: int, moment: datetime) -> bool:
        stmt = (
            select(Penalty.id)
            .where(
                Penalty.user_id == user_id,
                Penalty.offense_number == offense_number,
                Penalty.penalty_type != PenaltyType.WARNING,
                or_(
                    and_(
                        Penalty.is_active.is_(True),
                        or_(Penalty.suspended_until.is_(None), Penalty.suspended_until > moment),
                    ),
                    and_(Penalty.lifted_at.is_not(None), Penalty.lifted_at >= moment - self._cooldown),
                ),
            )
            .limit(1)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none() is not None

    async def _retire_elapsed(self, penalty: Penalty, user_id: UUID, moment: datetime) -> PenaltyLiftResult:
        # Suspension already ran out; deactivate it without charging points.
        try:
            await self._session.execute(
                update(Penalty)
                .where(Penalty.id == penalty.id, Penalty.is_active.is_(True))
                .values(is_active=False, acknowledged=True, acknowledged_at=moment)
                .execution_options(synchronize_session=False)
            )
            await self._session.commit()
        except Exception:
            await self._session.rollback()
            raise

        await self._session.refresh(penalty)
        balance = await self._ledger.get_balance(PointsAccountOwnerEnum.CUSTOMER, user_id)
        logger.info("Elapsed penalty retired without charge", penalty_id=str(penalty.id), user_id=str(user_id))
        return PenaltyLiftResult(penalty=penalty, new_balance=balance.balance)

    async def _get_owned_penalty(self, penalty_id: UUID, user_id: UUID) -> Penalty:
        penalty = await self._session.get(Penalty, penalty_id, populate_existing=True)
        if penalty is None:
            raise PenaltyNotFound(f"Penalty {penalty_id} not found")
        if penalty.user_id != user_id:
            raise NotOwner("Penalty belongs to another user")
        return penalty

    async def _set_user_status(self, user_id: UUID, status: UserStatusEnum) -> None:
        await self._session.execute(
            update(User)
            .where(User.id == user_id)
            .values(status=status.value)
            .execution_options(synchronize_session=False)
        )

    def _build_penalty(
        self,
        *,
        user_id: UUID,
        reservation_id: UUID | None,
        partner_id: UUID | None,
        offense_number: int,
        tier: PenaltyTier,
        now: datetime,
    ) -> Penalty:
        return Penalty(
            user_id=user_id,
            reservation_id=reservation_id,
            partner_id=partner_id,
            offense_number=offense_number,
            penalty_type=tier.penalty_type,
            suspended_until=now + tier.duration if tier.duration else None,
            is_active=True,
            acknowledged=False,
            can_lift_with_points=tier.can_lift_with_points,
            points_required=tier.points_required,
            forgiveness_expires_at=now + self._forgiveness_window,
        )

    @staticmethod
    def _is_elapsed(penalty: Penalty, moment: datetime) -> bool:
        if penalty.penalty_type == PenaltyType.WARNING:
            return True
        if penalty.suspended_until is None:
            return False
        return ensure_aware(penalty.suspended_until) <= moment
