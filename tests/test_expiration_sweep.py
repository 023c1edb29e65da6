from __future__ import annotations

from datetime import timedelta
from uuid import uuid4

import pytest
from sqlalchemy import select

from smartpick_api.core.settings import settings
from smartpick_api.domain.errors import InvalidState
from smartpick_api.models.expiration_sweep import ExpirationSweepRun
from smartpick_api.models.penalty import MissedPickupCounter, Penalty, PenaltyType
from smartpick_api.models.points import PointsAccountOwnerEnum, PointsHistory, PointsReasonCode
from smartpick_api.models.reservation import ReservationStatusEnum
from smartpick_api.observability.reservations import get_reservation_store
from smartpick_api.services.abuse import RateLimiter
from smartpick_api.services.pickups import PickupConfirmationService, PickupEventPublisher
from smartpick_api.services.points import PointsLedgerService
from smartpick_api.services.reservations import ReservationStateMachine, SweepOutcome, run_expiration_sweep
from smartpick_api.workers.expiration_sweep import ExpirationSweepWorker


@pytest.fixture(autouse=True)
def _allow_parallel_reservations(monkeypatch):
    monkeypatch.setattr(settings, "max_active_reservations", 10)


async def _reserve(session_factory, marketplace, count: int = 1):
    ids = []
    async with session_factory() as session:
        machine = ReservationStateMachine(session)
        for _ in range(count):
            reservation = await machine.create(
                offer_id=marketplace.offer_id,
                customer_id=marketplace.customer_id,
                quantity=1,
            )
            ids.append(reservation.id)
    return ids


@pytest.mark.asyncio
async def test_sweep_expires_overdue_reservation_and_compensates_partner(session_factory, marketplace):
    [reservation_id] = await _reserve(session_factory, marketplace)

    async with session_factory() as session:
        outcomes = await run_expiration_sweep(session, now=marketplace.now + timedelta(hours=3))

    assert [outcome.action for outcome in outcomes] == ["expired"]
    assert outcomes[0].as_dict()["reservationId"] == str(reservation_id)

    async with session_factory() as session:
        reservation = await ReservationStateMachine(session).get(reservation_id)
        assert reservation.status == ReservationStatusEnum.EXPIRED

        ledger = PointsLedgerService(session)
        partner = await ledger.get_balance(PointsAccountOwnerEnum.PARTNER, marketplace.partner_id)
        customer = await ledger.get_balance(PointsAccountOwnerEnum.CUSTOMER, marketplace.customer_id)
        assert partner.balance == 5
        assert customer.balance == 995
        assert customer.escrow_held == 0

        warnings = (await session.execute(select(Penalty))).scalars().all()
        assert [penalty.penalty_type for penalty in warnings] == [PenaltyType.WARNING]

    snapshot = get_reservation_store().snapshot()
    assert snapshot.sweeps["runs"] == 1
    assert snapshot.sweeps["expired"] == 1
    assert snapshot.penalties == {"WARNING": 1}


@pytest.mark.asyncio
async def test_sweep_ignores_reservations_inside_window(session_factory, marketplace):
    await _reserve(session_factory, marketplace)

    async with session_factory() as session:
        outcomes = await run_expiration_sweep(session, now=marketplace.now + timedelta(hours=1))

    assert outcomes == []


@pytest.mark.asyncio
async def test_fourth_missed_pickup_applies_suspension(session_factory, marketplace):
    await _reserve(session_factory, marketplace, count=4)

    async with session_factory() as session:
        outcomes = await run_expiration_sweep(session, now=marketplace.now + timedelta(hours=3))

    assert [outcome.action for outcome in outcomes] == ["expired", "expired", "expired", "penalty_applied"]
    assert "SUSPEND_1H" in outcomes[3].message


@pytest.mark.asyncio
async def test_sweep_is_idempotent_across_runs(session_factory, marketplace):
    await _reserve(session_factory, marketplace, count=2)
    later = marketplace.now + timedelta(hours=3)

    async with session_factory() as session:
        first = await run_expiration_sweep(session, now=later)
    async with session_factory() as session:
        second = await run_expiration_sweep(session, now=later)

    assert len(first) == 2
    assert second == []

    async with session_factory() as session:
        partner = await PointsLedgerService(session).get_balance(PointsAccountOwnerEnum.PARTNER, marketplace.partner_id)
        assert partner.balance == 10


@pytest.mark.asyncio
async def test_sweep_respects_batch_limit(session_factory, marketplace):
    await _reserve(session_factory, marketplace, count=3)

    async with session_factory() as session:
        outcomes = await run_expiration_sweep(session, limit=2, now=marketplace.now + timedelta(hours=3))

    assert len(outcomes) == 2


@pytest.mark.asyncio
async def test_worker_run_once_records_run_row(session_factory, marketplace):
    await _reserve(session_factory, marketplace, count=2)

    worker = ExpirationSweepWorker(session_factory, interval_seconds=5, limit=10, trigger_label="unit-default")
    outcomes = await worker.run_once(triggered_by="unit-test", now=marketplace.now + timedelta(hours=3))

    assert len(outcomes) == 2
    assert worker.last_summary["processed"] == 2
    assert worker.last_summary["expired"] == 2
    assert worker.last_run_at is not None

    async with session_factory() as session:
        runs = (await session.execute(select(ExpirationSweepRun))).scalars().all()
        assert len(runs) == 1
        run = runs[0]
        assert run.status == "completed"
        assert run.triggered_by == "unit-test"
        assert run.processed_count == 2
        assert run.expired_count == 2
        assert run.failed_count == 0
        assert run.metadata_json["limit"] == 10
        assert run.completed_at is not None


def test_summarize_counts_each_action() -> None:
    outcomes = [
        SweepOutcome(uuid4(), "expired", ""),
        SweepOutcome(uuid4(), "penalty_applied", ""),
        SweepOutcome(uuid4(), "banned", ""),
        SweepOutcome(uuid4(), "failed", "boom"),
    ]
    summary = ExpirationSweepWorker.summarize(outcomes)
    assert summary == {
        "processed": 4,
        "expired": 1,
        "penalty_applied": 1,
        "banned": 1,
        "settled": 0,
        "skipped": 0,
        "failed": 1,
    }


def _confirmation_service(session, redis) -> PickupConfirmationService:
    return PickupConfirmationService(
        session,
        rate_limiter=RateLimiter(redis),
        publisher=PickupEventPublisher(redis, timeout_seconds=0.5),
    )


@pytest.mark.asyncio
async def test_picked_up_reservation_is_not_swept(session_factory, marketplace, fake_redis):
    [reservation_id] = await _reserve(session_factory, marketplace)

    async with session_factory() as session:
        await _confirmation_service(session, fake_redis).confirm(reservation_id, marketplace.partner_id)

    async with session_factory() as session:
        outcomes = await run_expiration_sweep(session, now=marketplace.now + timedelta(hours=3))

    assert outcomes == []


@pytest.mark.asyncio
async def test_confirm_after_sweep_is_rejected(session_factory, marketplace, fake_redis):
    [reservation_id] = await _reserve(session_factory, marketplace)

    async with session_factory() as session:
        await run_expiration_sweep(session, now=marketplace.now + timedelta(hours=3))

    async with session_factory() as session:
        with pytest.raises(InvalidState):
            await _confirmation_service(session, fake_redis).confirm(reservation_id, marketplace.partner_id)

        partner = await PointsLedgerService(session).get_balance(PointsAccountOwnerEnum.PARTNER, marketplace.partner_id)
        assert partner.balance == 5


@pytest.mark.asyncio
async def test_pickup_racing_the_sweep_is_skipped_without_penalty(session_factory, marketplace, fake_redis, monkeypatch):
    [reservation_id] = await _reserve(session_factory, marketplace)
    original = ReservationStateMachine.expire_if_active

    async def pickup_lands_first(self, reservation, *, now=None):
        await _confirmation_service(self._session, fake_redis).confirm(reservation.id, marketplace.partner_id)
        return await original(self, reservation, now=now)

    monkeypatch.setattr(ReservationStateMachine, "expire_if_active", pickup_lands_first)

    async with session_factory() as session:
        outcomes = await run_expiration_sweep(session, now=marketplace.now + timedelta(hours=3))

    assert [(outcome.action, outcome.message) for outcome in outcomes] == [("skipped", "Resolved concurrently")]

    async with session_factory() as session:
        reservation = await ReservationStateMachine(session).get(reservation_id)
        assert reservation.status == ReservationStatusEnum.PICKED_UP
        assert reservation.expired_at is None

        reasons = (
            await session.execute(
                select(PointsHistory.reason_code).where(PointsHistory.related_reservation_id == reservation_id)
            )
        ).scalars().all()
        assert PointsReasonCode.PICKUP_REWARD in reasons
        assert PointsReasonCode.NO_SHOW_COMPENSATION not in reasons

        assert await session.get(MissedPickupCounter, marketplace.customer_id) is None
        assert (await session.execute(select(Penalty))).scalars().all() == []

    assert get_reservation_store().snapshot().sweeps == {"runs": 1, "skipped": 1}


@pytest.mark.asyncio
async def test_failing_row_does_not_stop_the_batch(session_factory, marketplace, monkeypatch):
    ids = await _reserve(session_factory, marketplace, count=3)
    broken_id = ids[1]
    original = PointsLedgerService.forfeit_to_partner

    async def forfeit(self, reservation_id):
        if reservation_id == broken_id:
            raise RuntimeError("ledger write failed")
        return await original(self, reservation_id)

    monkeypatch.setattr(PointsLedgerService, "forfeit_to_partner", forfeit)

    async with session_factory() as session:
        outcomes = await run_expiration_sweep(session, now=marketplace.now + timedelta(hours=3))

    actions = {outcome.reservation_id: outcome.action for outcome in outcomes}
    assert actions == {ids[0]: "expired", broken_id: "failed", ids[2]: "expired"}

    async with session_factory() as session:
        machine = ReservationStateMachine(session)
        assert (await machine.get(broken_id)).status == ReservationStatusEnum.ACTIVE
        assert (await machine.get(ids[0])).status == ReservationStatusEnum.EXPIRED

        counter = await session.get(MissedPickupCounter, marketplace.customer_id)
        assert counter.missed_count == 2

        partner = await PointsLedgerService(session).get_balance(PointsAccountOwnerEnum.PARTNER, marketplace.partner_id)
        assert partner.balance == 10
