"""Reservation lifecycle: creation, cancellation, pickup, and expiry transitions.

Every transition out of ACTIVE is a compare-and-swap ``UPDATE`` guarded by
``status = 'ACTIVE'``; whichever writer's statement matches the row first
wins and every other writer observes zero affected rows.
"""

from __future__ import annotations

import secrets
from datetime import datetime
from decimal import Decimal
from typing import Iterable, Sequence
from uuid import UUID, uuid4

from loguru import logger
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from smartpick_api.core.clock import ensure_aware, utcnow
from smartpick_api.core.settings import settings
from smartpick_api.domain.errors import (
    ActiveReservationLimit,
    InvalidState,
    NotOwner,
    OfferNotFound,
    OfferUnavailable,
    ReservationNotFound,
    WindowClosed,
)
from smartpick_api.models.offer import Offer, OfferStatusEnum
from smartpick_api.models.reservation import (
    Reservation,
    ReservationActorTypeEnum,
    ReservationStateEvent,
    ReservationStatusEnum,
)
from smartpick_api.models.user import Partner, User
from smartpick_api.observability.reservations import get_reservation_store
from smartpick_api.services.penalties import CancellationCooldownService, PenaltyPolicyEngine
from smartpick_api.services.points import PointsLedgerService, points_for_amount


def generate_qr_code() -> str:
    """Opaque, unguessable pickup token encoded into the customer's QR code."""

    return secrets.token_urlsafe(24)


class ReservationStateMachine:
    """Single authority for moving reservations between lifecycle states."""

    def __init__(
        self,
        session: AsyncSession,
        *,
        ledger: PointsLedgerService | None = None,
        penalties: PenaltyPolicyEngine | None = None,
        cooldowns: CancellationCooldownService | None = None,
    ) -> None:
        self._session = session
        self._ledger = ledger or PointsLedgerService(session)
        self._penalties = penalties or PenaltyPolicyEngine(session, ledger=self._ledger)
        self._cooldowns = cooldowns or CancellationCooldownService(session, ledger=self._ledger)

    async def create(
        self,
        *,
        offer_id: UUID,
        customer_id: UUID,
        quantity: int,
        now: datetime | None = None,
    ) -> Reservation:
        """Reserve ``quantity`` units of an offer and escrow the matching points."""

        moment = now or utcnow()
        if quantity < 1 or quantity > settings.max_reservation_quantity:
            raise OfferUnavailable(
                f"Quantity must be between 1 and {settings.max_reservation_quantity}"
            )

        await self._penalties.ensure_can_reserve(customer_id, now=moment)
        await self._cooldowns.ensure_can_reserve(customer_id, now=moment)
        await self._ensure_below_active_limit(customer_id)

        offer = await self._session.get(Offer, offer_id, populate_existing=True)
        if offer is None:
            raise OfferNotFound(f"Offer {offer_id} not found")
        display_status = offer.display_status(moment)
        if display_status != OfferStatusEnum.ACTIVE:
            raise OfferUnavailable(f"Offer is {display_status.value.lower().replace('_', ' ')}")
        if moment < ensure_aware(offer.pickup_start):
            raise OfferUnavailable("Offer pickup window has not opened yet")
        if moment >= ensure_aware(offer.pickup_end):
            raise OfferUnavailable("Offer pickup window has ended")

        try:
            decrement = await self._session.execute(
                update(Offer)
                .where(
                    Offer.id == offer_id,
                    Offer.status == OfferStatusEnum.ACTIVE,
                    Offer.quantity_available >= quantity,
                )
                .values(quantity_available=Offer.quantity_available - quantity)
                .execution_options(synchronize_session=False)
            )
            if decrement.rowcount != 1:
                raise OfferUnavailable("Not enough units left on this offer")

            smart_price = Decimal(offer.smart_price)
            total_price = smart_price * quantity
            saved_amount = max(Decimal(offer.original_price) - smart_price, Decimal("0")) * quantity
            points = points_for_amount(total_price)

            reservation = Reservation(
                id=uuid4(),
                offer_id=offer.id,
                customer_id=customer_id,
                partner_id=offer.partner_id,
                quantity=quantity,
                total_price=total_price,
                saved_amount=saved_amount,
                points_held=points,
                status=ReservationStatusEnum.ACTIVE,
                qr_code=generate_qr_code(),
                expires_at=ensure_aware(offer.pickup_end),
            )
            self._session.add(reservation)
            await self._session.flush()

            await self._ledger.hold(customer_id, points, reservation.id)
            self._record_event(
                reservation,
                from_status=None,
                to_status=ReservationStatusEnum.ACTIVE,
                actor_type=ReservationActorTypeEnum.CUSTOMER,
                actor_id=str(customer_id),
            )
            await self._session.commit()
        except Exception:
            await self._session.rollback()
            raise

        await self._session.refresh(reservation)
        get_reservation_store().record_transition(ReservationStatusEnum.ACTIVE.value)
        logger.info(
            "Reservation created",
            reservation_id=str(reservation.id),
            offer_id=str(offer_id),
            customer_id=str(customer_id),
            quantity=quantity,
            points_held=points,
        )
        return reservation

    async def cancel(
        self,
        reservation_id: UUID,
        customer_id: UUID,
        *,
        now: datetime | None = None,
    ) -> Reservation:
        """Customer cancellation before the pickup window ends; no penalty applies."""

        moment = now or utcnow()
        reservation = await self.get(reservation_id)
        if reservation.customer_id != customer_id:
            raise NotOwner("Reservation belongs to another customer")
        if reservation.status != ReservationStatusEnum.ACTIVE:
            raise InvalidState(f"Cannot cancel a {reservation.status.value} reservation")
        if moment > ensure_aware(reservation.expires_at):
            raise WindowClosed("The pickup window has already closed")

        try:
            won = await self._compare_and_swap(
                reservation_id,
                ReservationStatusEnum.CANCELLED,
                cancelled_at=moment,
            )
            if not won:
                raise InvalidState("Reservation is no longer active")

            await self._session.execute(
                update(Offer)
                .where(
                    Offer.id == reservation.offer_id,
                    Offer.quantity_available + reservation.quantity <= Offer.quantity_total,
                )
                .values(quantity_available=Offer.quantity_available + reservation.quantity)
                .execution_options(synchronize_session=False)
            )
            await self._ledger.release_to_customer(reservation_id)
            await self._cooldowns.record_cancellation(customer_id, reservation_id, now=moment)
            self._record_event(
                reservation,
                from_status=ReservationStatusEnum.ACTIVE,
                to_status=ReservationStatusEnum.CANCELLED,
                actor_type=ReservationActorTypeEnum.CUSTOMER,
                actor_id=str(customer_id),
            )
            await self._session.commit()
        except Exception:
            await self._session.rollback()
            raise

        await self._session.refresh(reservation)
        get_reservation_store().record_transition(ReservationStatusEnum.CANCELLED.value)
        logger.info("Reservation cancelled", reservation_id=str(reservation_id), customer_id=str(customer_id))
        return reservation

    async def mark_picked_up(
        self,
        reservation: Reservation,
        *,
        partner_id: UUID,
        now: datetime | None = None,
    ) -> bool:
        """Attempt ACTIVE -> PICKED_UP and commit; returns False when another writer won."""

        moment = now or utcnow()
        won = await self._compare_and_swap(reservation.id, ReservationStatusEnum.PICKED_UP, picked_up_at=moment)
        if not won:
            await self._session.rollback()
            return False

        await self._session.execute(
            update(Partner)
            .where(Partner.id == reservation.partner_id)
            .values(completed_pickups=Partner.completed_pickups + 1)
            .execution_options(synchronize_session=False)
        )
        await self._session.execute(
            update(User)
            .where(User.id == reservation.customer_id)
            .values(completed_pickups=User.completed_pickups + 1)
            .execution_options(synchronize_session=False)
        )
        self._record_event(
            reservation,
            from_status=ReservationStatusEnum.ACTIVE,
            to_status=ReservationStatusEnum.PICKED_UP,
            actor_type=ReservationActorTypeEnum.PARTNER,
            actor_id=str(partner_id),
        )
        await self._session.commit()
        await self._session.refresh(reservation)
        get_reservation_store().record_transition(ReservationStatusEnum.PICKED_UP.value)
        logger.info(
            "Reservation picked up",
            reservation_id=str(reservation.id),
            partner_id=str(partner_id),
        )
        return True

    async def expire_if_active(self, reservation: Reservation, *, now: datetime | None = None) -> bool:
        """Attempt ACTIVE -> EXPIRED for an overdue reservation inside the caller's transaction."""

        moment = now or utcnow()
        result = await self._session.execute(
            update(Reservation)
            .where(
                Reservation.id == reservation.id,
                Reservation.status == ReservationStatusEnum.ACTIVE,
                Reservation.expires_at < moment,
            )
            .values(status=ReservationStatusEnum.EXPIRED, expired_at=moment)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return False
        self._record_event(
            reservation,
            from_status=ReservationStatusEnum.ACTIVE,
            to_status=ReservationStatusEnum.EXPIRED,
            actor_type=ReservationActorTypeEnum.SYSTEM,
            actor_id=None,
            notes="Pickup window elapsed without confirmation",
        )
        await self._session.flush()
        return True

    async def _ensure_below_active_limit(self, customer_id: UUID) -> None:
        limit = settings.max_active_reservations
        active = await self._session.scalar(
            select(func.count(Reservation.id)).where(
                Reservation.customer_id == customer_id,
                Reservation.status == ReservationStatusEnum.ACTIVE,
            )
        )
        if int(active or 0) >= limit:
            raise ActiveReservationLimit(
                f"Only {limit} active reservation(s) allowed at a time; pick up or cancel first"
            )

    async def get(self, reservation_id: UUID) -> Reservation:
        reservation = await self._session.get(Reservation, reservation_id, populate_existing=True)
        if reservation is None:
            raise ReservationNotFound(f"Reservation {reservation_id} not found")
        return reservation

    async def get_by_qr_code(self, qr_code: str) -> Reservation:
        stmt = select(Reservation).where(Reservation.qr_code == qr_code)
        result = await self._session.execute(stmt)
        reservation = result.scalar_one_or_none()
        if reservation is None:
            raise ReservationNotFound("No reservation matches this code")
        return reservation

    async def list_for_customer(
        self,
        customer_id: UUID,
        *,
        statuses: Iterable[ReservationStatusEnum] | None = None,
        limit: int = 50,
    ) -> Sequence[Reservation]:
        stmt = select(Reservation).where(Reservation.customer_id == customer_id)
        if statuses:
            stmt = stmt.where(Reservation.status.in_(list(statuses)))
        stmt = stmt.order_by(Reservation.created_at.desc()).limit(limit)
        result = await self._session.execute(stmt)
        return list(result.scalars())

    async def list_for_partner(
        self,
        partner_id: UUID,
        *,
        statuses: Iterable[ReservationStatusEnum] | None = None,
        limit: int = 50,
    ) -> Sequence[Reservation]:
        stmt = select(Reservation).where(Reservation.partner_id == partner_id)
        if statuses:
            stmt = stmt.where(Reservation.status.in_(list(statuses)))
        stmt = stmt.order_by(Reservation.expires_at.asc()).limit(limit)
        result = await self._session.execute(stmt)
        return list(result.scalars())

    async def list_events(self, reservation_id: UUID) -> Sequence[ReservationStateEvent]:
        """Return the reservation's transitions, oldest first."""

        stmt = (
            select(ReservationStateEvent)
            .where(ReservationStateEvent.reservation_id == reservation_id)
            .order_by(ReservationStateEvent.created_at.asc())
        )
        result = await self._session.execute(stmt)
        return list(result.scalars())

    async def _compare_and_swap(
        self,
        reservation_id: UUID,
        target: ReservationStatusEnum,
        **values: object,
    ) -> bool:
        result = await self._session.execute(
            update(Reservation)
            .where(Reservation.id == reservation_id, Reservation.status == ReservationStatusEnum.ACTIVE)
            .values(status=target, **values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def _record_event(
        self,
        reservation: Reservation,
        *,
        from_status: ReservationStatusEnum | None,
        to_status: ReservationStatusEnum,
        actor_type: ReservationActorTypeEnum,
        actor_id: str | None,
        notes: str | None = None,
    ) -> None:
        self._session.add(
            ReservationStateEvent(
                reservation_id=reservation.id,
                from_status=from_status.value if from_status else None,
                to_status=to_status.value,
                actor_type=actor_type,
                actor_id=actor_id,
                notes=notes,
            )
        )
