"""Batch expiry of overdue ACTIVE reservations and settlement of unpaid pickups."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Literal
from uuid import UUID

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from smartpick_api.core.clock import utcnow
from smartpick_api.core.settings import settings
from smartpick_api.models.points import PointsOperation, PointsReasonCode
from smartpick_api.models.reservation import Reservation, ReservationStatusEnum
from smartpick_api.observability.reservations import get_reservation_store
from smartpick_api.observability.tracing import get_tracer
from smartpick_api.services.penalties import PenaltyPolicyEngine
from smartpick_api.services.points import PointsLedgerService
from smartpick_api.services.reservations.state_machine import ReservationStateMachine

SweepAction = Literal["expired", "penalty_applied", "banned", "settled", "skipped", "failed"]


@dataclass(slots=True)
class SweepOutcome:
    reservation_id: UUID
    action: SweepAction
    message: str

    def as_dict(self) -> dict[str, str]:
        return {
            "reservationId": str(self.reservation_id),
            "action": self.action,
            "message": self.message,
        }


async def run_expiration_sweep(
    session: AsyncSession,
    *,
    limit: int | None = None,
    now: datetime | None = None,
) -> list[SweepOutcome]:
    """Expire overdue reservations one row per transaction and report each outcome.

    A failing row is rolled back and reported as ``failed`` without stopping
    the batch; a row resolved concurrently (picked up or already expired) is
    reported as ``skipped``. Pickups whose escrow release failed after commit
    are settled afterwards and reported as ``settled``.
    """

    moment = now or utcnow()
    batch_size = limit or settings.expiration_sweep_batch_size
    ledger = PointsLedgerService(session)
    penalties = PenaltyPolicyEngine(session, ledger=ledger)
    state_machine = ReservationStateMachine(session, ledger=ledger, penalties=penalties)

    stmt = (
        select(Reservation.id)
        .where(
            Reservation.status == ReservationStatusEnum.ACTIVE,
            Reservation.expires_at < moment,
        )
        .order_by(Reservation.expires_at.asc())
        .limit(batch_size)
    )
    result = await session.execute(stmt)
    reservation_ids = list(result.scalars())

    outcomes: list[SweepOutcome] = []
    with get_tracer().start_as_current_span("reservation.expiration_sweep") as span:
        span.set_attribute("sweep.candidates", len(reservation_ids))
        for reservation_id in reservation_ids:
            outcome = await _expire_reservation(
                session,
                reservation_id,
                state_machine=state_machine,
                ledger=ledger,
                penalties=penalties,
                now=moment,
            )
            outcomes.append(outcome)

        outcomes.extend(await settle_unsettled_pickups(session, ledger=ledger, limit=batch_size, now=moment))

    get_reservation_store().record_sweep(outcome.action for outcome in outcomes)
    logger.info(
        "Expiration sweep processed batch",
        candidates=len(reservation_ids),
        expired=sum(1 for outcome in outcomes if outcome.action in ("expired", "penalty_applied", "banned")),
        failed=sum(1 for outcome in outcomes if outcome.action == "failed"),
        settled=sum(1 for outcome in outcomes if outcome.action == "settled"),
    )
    return outcomes


async def _expire_reservation(
    session: AsyncSession,
    reservation_id: UUID,
    *,
    state_machine: ReservationStateMachine,
    ledger: PointsLedgerService,
    penalties: PenaltyPolicyEngine,
    now: datetime,
) -> SweepOutcome:
    try:
        reservation = await state_machine.get(reservation_id)
        if reservation.status != ReservationStatusEnum.ACTIVE:
            return SweepOutcome(reservation_id, "skipped", f"Already {reservation.status.value}")

        won = await state_machine.expire_if_active(reservation, now=now)
        if not won:
            await session.rollback()
            return SweepOutcome(reservation_id, "skipped", "Resolved concurrently")

        await ledger.forfeit_to_partner(reservation_id)
        no_show = await penalties.record_no_show(
            user_id=reservation.customer_id,
            reservation_id=reservation_id,
            partner_id=reservation.partner_id,
            now=now,
        )
        await session.commit()
    except Exception as exc:
        await session.rollback()
        logger.exception(
            "Failed to expire reservation",
            reservation_id=str(reservation_id),
            error=str(exc),
        )
        return SweepOutcome(reservation_id, "failed", str(exc))

    store = get_reservation_store()
    store.record_transition(ReservationStatusEnum.EXPIRED.value)
    if no_show.penalty is not None:
        penalty_type = no_show.penalty.penalty_type.value
        store.record_penalty(penalty_type)
        message = f"{penalty_type} issued for missed pickup #{no_show.missed_count}"
    elif no_show.warning_issued:
        store.record_penalty("WARNING")
        message = f"Warning recorded for missed pickup #{no_show.missed_count}"
    elif no_show.suppressed:
        message = f"Missed pickup #{no_show.missed_count} counted; penalty suppressed by cooldown"
    else:
        message = f"Missed pickup #{no_show.missed_count} counted"

    logger.info(
        "Reservation expired",
        reservation_id=str(reservation_id),
        action=no_show.action,
        missed_count=no_show.missed_count,
    )
    return SweepOutcome(reservation_id, no_show.action, message)


async def settle_unsettled_pickups(
    session: AsyncSession,
    *,
    ledger: PointsLedgerService | None = None,
    limit: int | None = None,
    now: datetime | None = None,
) -> list[SweepOutcome]:
    """Release escrow for PICKED_UP reservations that never received their pickup reward."""

    moment = now or utcnow()
    ledger = ledger or PointsLedgerService(session)
    rewarded = select(PointsOperation.id).where(
        PointsOperation.related_reservation_id == Reservation.id,
        PointsOperation.reason_code == PointsReasonCode.PICKUP_REWARD,
    )
    stmt = (
        select(Reservation.id, Reservation.points_held)
        .where(
            Reservation.status == ReservationStatusEnum.PICKED_UP,
            Reservation.picked_up_at < moment - timedelta(seconds=settings.pickup_settlement_grace_seconds),
            ~rewarded.exists(),
        )
        .order_by(Reservation.picked_up_at.asc())
        .limit(limit or settings.expiration_sweep_batch_size)
    )
    rows = (await session.execute(stmt)).all()

    outcomes: list[SweepOutcome] = []
    for reservation_id, points_held in rows:
        try:
            result = await ledger.release_to_partner(reservation_id, int(points_held or 0))
            await session.commit()
        except Exception as exc:
            await session.rollback()
            logger.exception("Failed to settle picked up reservation", reservation_id=str(reservation_id), error=str(exc))
            outcomes.append(SweepOutcome(reservation_id, "failed", str(exc)))
            continue
        logger.info("Settled picked up reservation", reservation_id=str(reservation_id), amount=result.amount)
        outcomes.append(SweepOutcome(reservation_id, "settled", f"Released {result.amount} escrowed points to partner"))
    return outcomes
