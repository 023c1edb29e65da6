"""Partner-side pickup confirmation with replay protection."""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from uuid import UUID

from loguru import logger
from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncSession

from smartpick_api.core.clock import ensure_aware
from smartpick_api.core.settings import settings
from smartpick_api.domain.errors import InvalidState, NotOwner, RateLimited, ReservationNotFound
from smartpick_api.models.reservation import Reservation, ReservationStatusEnum
from smartpick_api.observability.reservations import get_reservation_store
from smartpick_api.observability.tracing import get_tracer
from smartpick_api.services.abuse import RateLimiter
from smartpick_api.services.points import PointsLedgerService
from smartpick_api.services.reservations.state_machine import ReservationStateMachine

PICKUP_ACTION = "pickup_confirm"


@dataclass(slots=True)
class PickupConfirmation:
    reservation_id: UUID
    status: ReservationStatusEnum
    picked_up_at: datetime
    replayed: bool = False


class PickupEventPublisher:
    """Broadcasts pickup confirmations on the reservation's pub/sub channel."""

    def __init__(self, redis_client: Redis | None = None, *, timeout_seconds: float | None = None) -> None:
        self._redis = redis_client or Redis.from_url(
            settings.redis_url,
            encoding="utf-8",
            decode_responses=True,
        )
        self._timeout = timeout_seconds or settings.pickup_publish_timeout_seconds

    @staticmethod
    def channel(reservation_id: UUID) -> str:
        return f"pickup-{reservation_id}"

    async def publish_pickup_confirmed(self, reservation_id: UUID, saved_amount: Decimal | float) -> bool:
        """Publish once; failures and timeouts are logged and reported as False."""

        payload = json.dumps({"event": "pickup_confirmed", "savedAmount": float(saved_amount or 0)})
        channel = self.channel(reservation_id)
        try:
            await asyncio.wait_for(self._redis.publish(channel, payload), timeout=self._timeout)
        except asyncio.TimeoutError:
            logger.warning("Pickup event publish timed out", channel=channel, timeout=self._timeout)
            return False
        except Exception as exc:
            logger.exception("Pickup event publish failed", channel=channel, error=str(exc))
            return False
        return True


class PickupConfirmationService:
    """Performs the exactly-once ACTIVE -> PICKED_UP transition for a scanning partner."""

    def __init__(
        self,
        session: AsyncSession,
        *,
        rate_limiter: RateLimiter,
        publisher: PickupEventPublisher,
        ledger: PointsLedgerService | None = None,
        state_machine: ReservationStateMachine | None = None,
    ) -> None:
        self._session = session
        self._rate_limiter = rate_limiter
        self._publisher = publisher
        self._ledger = ledger or PointsLedgerService(session)
        self._state_machine = state_machine or ReservationStateMachine(session, ledger=self._ledger)

    async def confirm(
        self,
        reservation_id: UUID,
        caller_partner_id: UUID,
        *,
        client_ip: str | None = None,
        now: datetime | None = None,
    ) -> PickupConfirmation:
        await self._guard(caller_partner_id, reservation_id, client_ip)
        reservation = await self._state_machine.get(reservation_id)
        return await self._confirm_reservation(reservation, caller_partner_id, now=now)

    async def confirm_by_qr(
        self,
        qr_code: str,
        caller_partner_id: UUID,
        *,
        client_ip: str | None = None,
        now: datetime | None = None,
    ) -> PickupConfirmation:
        """Resolve the scanned token, then run the same guarded confirmation flow.

        The replay bucket is keyed by reservation id so scans and id confirmations
        share one counter and the token never reaches Redis.
        """

        try:
            reservation = await self._state_machine.get_by_qr_code(qr_code)
        except ReservationNotFound:
            await self._guard(caller_partner_id, None, client_ip)
            raise
        await self._guard(caller_partner_id, reservation.id, client_ip)
        return await self._confirm_reservation(reservation, caller_partner_id, now=now)

    async def _guard(self, partner_id: UUID, reservation_id: UUID | None, client_ip: str | None) -> None:
        decision = await self._rate_limiter.check(
            PICKUP_ACTION,
            partner_id=partner_id,
            reference=reservation_id,
            client_ip=client_ip,
        )
        if not decision.allowed:
            get_reservation_store().record_rate_limited(decision.reason or "unknown")
            raise RateLimited(
                "Too many pickup confirmations, slow down",
                retry_after=decision.retry_after_seconds or settings.rate_limit_window_seconds,
            )

    async def _confirm_reservation(
        self,
        reservation: Reservation,
        caller_partner_id: UUID,
        *,
        now: datetime | None,
    ) -> PickupConfirmation:
        if reservation.partner_id != caller_partner_id:
            raise NotOwner("Reservation belongs to another partner")
        if reservation.status == ReservationStatusEnum.PICKED_UP:
            return await self._replayed(reservation)
        if reservation.status != ReservationStatusEnum.ACTIVE:
            raise InvalidState(f"Cannot confirm a {reservation.status.value} reservation")

        with get_tracer().start_as_current_span("reservation.confirm_pickup") as span:
            span.set_attribute("reservation.id", str(reservation.id))
            won = await self._state_machine.mark_picked_up(reservation, partner_id=caller_partner_id, now=now)
            if not won:
                await self._session.refresh(reservation)
                if reservation.status == ReservationStatusEnum.PICKED_UP:
                    return await self._replayed(reservation)
                raise InvalidState(f"Cannot confirm a {reservation.status.value} reservation")

            reservation_id = reservation.id
            picked_up_at = ensure_aware(reservation.picked_up_at)
            saved_amount = reservation.saved_amount
            await self._settle(reservation_id, int(reservation.points_held or 0))
            await self._publisher.publish_pickup_confirmed(reservation_id, saved_amount)

        get_reservation_store().record_pickup("confirmed")
        return PickupConfirmation(
            reservation_id=reservation_id,
            status=ReservationStatusEnum.PICKED_UP,
            picked_up_at=picked_up_at,
        )

    async def _settle(self, reservation_id: UUID, points: int) -> bool:
        # The pickup is already committed; release failures are logged, not raised.
        try:
            await self._ledger.release_to_partner(reservation_id, points)
            await self._session.commit()
        except Exception as exc:
            await self._session.rollback()
            get_reservation_store().record_pickup("settlement_failed")
            logger.exception(
                "Escrow release after pickup failed",
                reservation_id=str(reservation_id),
                error=str(exc),
            )
            return False
        return True

    async def _replayed(self, reservation: Reservation) -> PickupConfirmation:
        reservation_id = reservation.id
        picked_up_at = ensure_aware(reservation.picked_up_at)
        # Retries finish a settlement that failed after the pickup committed.
        await self._settle(reservation_id, int(reservation.points_held or 0))
        get_reservation_store().record_pickup("replayed")
        logger.info("Pickup confirmation replayed", reservation_id=str(reservation_id))
        return PickupConfirmation(
            reservation_id=reservation_id,
            status=ReservationStatusEnum.PICKED_UP,
            picked_up_at=picked_up_at,
            replayed=True,
        )
