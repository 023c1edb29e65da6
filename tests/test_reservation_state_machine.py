from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import select

from smartpick_api.core.settings import settings
from smartpick_api.domain.errors import (
    ActiveReservationLimit,
    CancellationCooldownActive,
    InsufficientBalance,
    InvalidState,
    NotOwner,
    OfferNotFound,
    OfferUnavailable,
    UserSuspended,
    WindowClosed,
)
from smartpick_api.models.offer import Offer, OfferStatusEnum
from smartpick_api.models.points import PointsAccountOwnerEnum, PointsHistory, PointsReasonCode
from smartpick_api.models.reservation import ReservationStatusEnum
from smartpick_api.services.penalties import CancellationCooldownService, PenaltyPolicyEngine
from smartpick_api.services.points import PointsLedgerService
from smartpick_api.services.reservations import ReservationStateMachine

from conftest import seed_marketplace


@pytest.mark.asyncio
async def test_create_reservation_holds_points_and_decrements_stock(session_factory, marketplace):
    async with session_factory() as session:
        machine = ReservationStateMachine(session)
        reservation = await machine.create(
            offer_id=marketplace.offer_id,
            customer_id=marketplace.customer_id,
            quantity=2,
        )

        assert reservation.status == ReservationStatusEnum.ACTIVE
        assert reservation.partner_id == marketplace.partner_id
        assert Decimal(reservation.total_price) == Decimal("9.00")
        assert Decimal(reservation.saved_amount) == Decimal("11.00")
        assert reservation.points_held == 9
        assert len(reservation.qr_code) >= 24

        offer = await session.get(Offer, marketplace.offer_id, populate_existing=True)
        assert offer.quantity_available == 3

        balance = await PointsLedgerService(session).get_balance(
            PointsAccountOwnerEnum.CUSTOMER, marketplace.customer_id
        )
        assert balance.balance == 1000
        assert balance.escrow_held == 9

        events = await machine.list_events(reservation.id)
        assert [(event.from_status, event.to_status) for event in events] == [(None, "ACTIVE")]


@pytest.mark.asyncio
async def test_create_rejects_quantity_above_stock(session_factory, marketplace):
    async with session_factory() as session:
        machine = ReservationStateMachine(session)
        with pytest.raises(OfferUnavailable):
            await machine.create(offer_id=marketplace.offer_id, customer_id=marketplace.customer_id, quantity=6)

        offer = await session.get(Offer, marketplace.offer_id, populate_existing=True)
        assert offer.quantity_available == 5


@pytest.mark.asyncio
async def test_create_rejects_zero_quantity_and_unknown_offer(session_factory, marketplace):
    async with session_factory() as session:
        machine = ReservationStateMachine(session)
        with pytest.raises(OfferUnavailable):
            await machine.create(offer_id=marketplace.offer_id, customer_id=marketplace.customer_id, quantity=0)
        with pytest.raises(OfferNotFound):
            await machine.create(offer_id=uuid4(), customer_id=marketplace.customer_id, quantity=1)


@pytest.mark.asyncio
async def test_create_rejects_offer_after_pickup_window(session_factory, marketplace):
    async with session_factory() as session:
        machine = ReservationStateMachine(session)
        with pytest.raises(OfferUnavailable):
            await machine.create(
                offer_id=marketplace.offer_id,
                customer_id=marketplace.customer_id,
                quantity=1,
                now=marketplace.now + timedelta(hours=3),
            )


@pytest.mark.asyncio
async def test_create_rejects_offer_before_pickup_window(session_factory, marketplace):
    async with session_factory() as session:
        machine = ReservationStateMachine(session)
        with pytest.raises(OfferUnavailable) as excinfo:
            await machine.create(
                offer_id=marketplace.offer_id,
                customer_id=marketplace.customer_id,
                quantity=1,
                now=marketplace.now - timedelta(hours=1),
            )
        assert str(excinfo.value) == "Offer pickup window has not opened yet"

        offer = await session.get(Offer, marketplace.offer_id, populate_existing=True)
        assert offer.quantity_available == 5


@pytest.mark.asyncio
async def test_create_without_points_rolls_back_stock(session_factory):
    async with session_factory() as session:
        seeded = await seed_marketplace(session, points=0)

    async with session_factory() as session:
        machine = ReservationStateMachine(session)
        with pytest.raises(InsufficientBalance):
            await machine.create(offer_id=seeded.offer_id, customer_id=seeded.customer_id, quantity=1)

        offer = await session.get(Offer, seeded.offer_id, populate_existing=True)
        assert offer.quantity_available == 5
        assert await machine.list_for_customer(seeded.customer_id) == []


@pytest.mark.asyncio
async def test_create_rejects_suspended_customer(session_factory, marketplace):
    async with session_factory() as session:
        engine = PenaltyPolicyEngine(session)
        for _ in range(4):
            await engine.record_no_show(
                user_id=marketplace.customer_id,
                reservation_id=None,
                partner_id=marketplace.partner_id,
                now=marketplace.now - timedelta(minutes=5),
            )
        await session.commit()

        machine = ReservationStateMachine(session)
        with pytest.raises(UserSuspended) as excinfo:
            await machine.create(offer_id=marketplace.offer_id, customer_id=marketplace.customer_id, quantity=1)
        assert excinfo.value.suspended_until is not None
        assert excinfo.value.penalty_id is not None


@pytest.mark.asyncio
async def test_cancel_releases_escrow_and_restores_stock(session_factory, marketplace):
    async with session_factory() as session:
        machine = ReservationStateMachine(session)
        reservation = await machine.create(
            offer_id=marketplace.offer_id,
            customer_id=marketplace.customer_id,
            quantity=2,
        )
        cancelled = await machine.cancel(reservation.id, marketplace.customer_id)

        assert cancelled.status == ReservationStatusEnum.CANCELLED
        assert cancelled.cancelled_at is not None

        offer = await session.get(Offer, marketplace.offer_id, populate_existing=True)
        assert offer.quantity_available == 5

        balance = await PointsLedgerService(session).get_balance(
            PointsAccountOwnerEnum.CUSTOMER, marketplace.customer_id
        )
        assert balance.balance == 1000
        assert balance.escrow_held == 0

        with pytest.raises(InvalidState):
            await machine.cancel(reservation.id, marketplace.customer_id)


@pytest.mark.asyncio
async def test_cancel_enforces_ownership_and_window(session_factory, marketplace):
    async with session_factory() as session:
        machine = ReservationStateMachine(session)
        reservation = await machine.create(
            offer_id=marketplace.offer_id,
            customer_id=marketplace.customer_id,
            quantity=1,
        )

        with pytest.raises(NotOwner):
            await machine.cancel(reservation.id, uuid4())
        with pytest.raises(WindowClosed):
            await machine.cancel(
                reservation.id,
                marketplace.customer_id,
                now=marketplace.now + timedelta(hours=3),
            )

        current = await machine.get(reservation.id)
        assert current.status == ReservationStatusEnum.ACTIVE


@pytest.mark.asyncio
async def test_pickup_after_cancel_loses_compare_and_swap(session_factory, marketplace):
    async with session_factory() as session:
        machine = ReservationStateMachine(session)
        reservation = await machine.create(
            offer_id=marketplace.offer_id,
            customer_id=marketplace.customer_id,
            quantity=1,
        )

    async with session_factory() as partner_session:
        stale = await ReservationStateMachine(partner_session).get(reservation.id)
        assert stale.status == ReservationStatusEnum.ACTIVE

        async with session_factory() as customer_session:
            await ReservationStateMachine(customer_session).cancel(reservation.id, marketplace.customer_id)

        won = await ReservationStateMachine(partner_session).mark_picked_up(
            stale,
            partner_id=marketplace.partner_id,
        )
        assert won is False

    async with session_factory() as session:
        final = await ReservationStateMachine(session).get(reservation.id)
        assert final.status == ReservationStatusEnum.CANCELLED
        assert final.picked_up_at is None


@pytest.mark.asyncio
async def test_expire_if_active_only_applies_after_deadline(session_factory, marketplace):
    async with session_factory() as session:
        machine = ReservationStateMachine(session)
        reservation = await machine.create(
            offer_id=marketplace.offer_id,
            customer_id=marketplace.customer_id,
            quantity=1,
        )

        assert await machine.expire_if_active(reservation, now=marketplace.now + timedelta(hours=1)) is False
        assert await machine.expire_if_active(reservation, now=marketplace.now + timedelta(hours=3)) is True
        await session.commit()

        expired = await machine.get(reservation.id)
        assert expired.status == ReservationStatusEnum.EXPIRED
        assert expired.expired_at is not None
        assert await machine.expire_if_active(expired, now=marketplace.now + timedelta(hours=4)) is False


def test_offer_display_status_prefers_time_then_stock() -> None:
    now = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)
    offer = Offer(
        status=OfferStatusEnum.PAUSED,
        quantity_total=5,
        quantity_available=0,
        expires_at=now - timedelta(minutes=1),
    )
    assert offer.display_status(now) == OfferStatusEnum.EXPIRED

    offer.expires_at = now + timedelta(hours=1)
    assert offer.display_status(now) == OfferStatusEnum.SOLD_OUT

    offer.quantity_available = 2
    assert offer.display_status(now) == OfferStatusEnum.PAUSED


@pytest.mark.asyncio
async def test_create_reports_sold_out_and_paused_offers(session_factory, marketplace):
    async with session_factory() as session:
        offer = await session.get(Offer, marketplace.offer_id)
        offer.quantity_available = 0
        await session.commit()

        machine = ReservationStateMachine(session)
        with pytest.raises(OfferUnavailable) as excinfo:
            await machine.create(offer_id=marketplace.offer_id, customer_id=marketplace.customer_id, quantity=1)
        assert str(excinfo.value) == "Offer is sold out"

        offer = await session.get(Offer, marketplace.offer_id, populate_existing=True)
        offer.quantity_available = 5
        offer.status = OfferStatusEnum.PAUSED
        await session.commit()

        with pytest.raises(OfferUnavailable) as excinfo:
            await machine.create(offer_id=marketplace.offer_id, customer_id=marketplace.customer_id, quantity=1)
        assert str(excinfo.value) == "Offer is paused"


@pytest.mark.asyncio
async def test_create_enforces_active_reservation_limit(session_factory, marketplace, monkeypatch):
    async with session_factory() as session:
        machine = ReservationStateMachine(session)
        first = await machine.create(offer_id=marketplace.offer_id, customer_id=marketplace.customer_id, quantity=1)

        with pytest.raises(ActiveReservationLimit):
            await machine.create(offer_id=marketplace.offer_id, customer_id=marketplace.customer_id, quantity=1)

        offer = await session.get(Offer, marketplace.offer_id, populate_existing=True)
        assert offer.quantity_available == 4

        monkeypatch.setattr(settings, "max_active_reservations", 2)
        second = await machine.create(offer_id=marketplace.offer_id, customer_id=marketplace.customer_id, quantity=1)
        with pytest.raises(ActiveReservationLimit):
            await machine.create(offer_id=marketplace.offer_id, customer_id=marketplace.customer_id, quantity=1)

        await machine.cancel(first.id, marketplace.customer_id)
        third = await machine.create(offer_id=marketplace.offer_id, customer_id=marketplace.customer_id, quantity=1)

        active = await machine.list_for_customer(marketplace.customer_id, statuses=[ReservationStatusEnum.ACTIVE])
        assert {reservation.id for reservation in active} == {second.id, third.id}


async def _reserve_and_cancel(machine, marketplace, *, minutes: int):
    moment = marketplace.now + timedelta(minutes=minutes)
    reservation = await machine.create(
        offer_id=marketplace.offer_id,
        customer_id=marketplace.customer_id,
        quantity=1,
        now=moment,
    )
    await machine.cancel(reservation.id, marketplace.customer_id, now=moment + timedelta(minutes=1))


@pytest.mark.asyncio
async def test_repeated_cancellations_start_a_cooldown(session_factory, marketplace):
    async with session_factory() as session:
        machine = ReservationStateMachine(session)
        cooldowns = CancellationCooldownService(session)
        await _reserve_and_cancel(machine, marketplace, minutes=0)
        await _reserve_and_cancel(machine, marketplace, minutes=5)

        status = await cooldowns.get_status(marketplace.customer_id, now=marketplace.now + timedelta(minutes=7))
        assert status.in_cooldown is False
        assert status.cancellation_count == 2

        await _reserve_and_cancel(machine, marketplace, minutes=10)

        with pytest.raises(CancellationCooldownActive) as excinfo:
            await machine.create(
                offer_id=marketplace.offer_id,
                customer_id=marketplace.customer_id,
                quantity=1,
                now=marketplace.now + timedelta(minutes=15),
            )
        assert excinfo.value.cooldown_until == marketplace.now + timedelta(minutes=71)

        elapsed = await cooldowns.get_status(marketplace.customer_id, now=marketplace.now + timedelta(minutes=72))
        assert elapsed.in_cooldown is False
        reservation = await machine.create(
            offer_id=marketplace.offer_id,
            customer_id=marketplace.customer_id,
            quantity=1,
            now=marketplace.now + timedelta(minutes=72),
        )
        assert reservation.status == ReservationStatusEnum.ACTIVE


@pytest.mark.asyncio
async def test_cooldown_lift_costs_points_and_reset_is_free(session_factory, marketplace):
    async with session_factory() as session:
        machine = ReservationStateMachine(session)
        cooldowns = CancellationCooldownService(session)
        for minutes in (0, 5, 10):
            await _reserve_and_cancel(machine, marketplace, minutes=minutes)

        lifted = await cooldowns.lift_with_points(marketplace.customer_id, now=marketplace.now + timedelta(minutes=15))
        assert lifted.points_spent == 100
        assert lifted.new_balance == 900
        assert lifted.status.in_cooldown is False
        assert lifted.status.lift_count == 1

        with pytest.raises(InvalidState):
            await cooldowns.lift_with_points(marketplace.customer_id, now=marketplace.now + timedelta(minutes=16))

        for minutes in (20, 25, 30):
            await _reserve_and_cancel(machine, marketplace, minutes=minutes)
        blocked = await cooldowns.get_status(marketplace.customer_id, now=marketplace.now + timedelta(minutes=35))
        assert blocked.in_cooldown is True

        reset = await cooldowns.reset(marketplace.customer_id, now=marketplace.now + timedelta(minutes=35))
        assert reset.in_cooldown is False
        assert reset.lift_count == 2

        await machine.create(
            offer_id=marketplace.offer_id,
            customer_id=marketplace.customer_id,
            quantity=1,
            now=marketplace.now + timedelta(minutes=36),
        )

        balance = await PointsLedgerService(session).get_balance(
            PointsAccountOwnerEnum.CUSTOMER, marketplace.customer_id
        )
        assert balance.balance == 900

        lifts = (
            await session.execute(select(PointsHistory).where(PointsHistory.reason_code == PointsReasonCode.COOLDOWN_LIFT))
        ).scalars().all()
        assert [row.delta for row in lifts] == [-100]
