from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from smartpick_api.celery_tasks import expiration_sweep as tasks
from smartpick_api.core.settings import settings
from smartpick_api.models.reservation import Reservation, ReservationStatusEnum
from smartpick_api.services.reservations import ReservationStateMachine
from smartpick_api.tasks.expiration_sweep import run_expiration_sweep_once


def test_sweep_task_skips_when_disabled(monkeypatch):
    monkeypatch.setattr(settings, "expiration_sweep_worker_enabled", False)
    result = tasks.run_reservation_expiration_sweep()
    assert result["skipped"] is True
    assert result["processed"] == 0


def test_sweep_task_invokes_helper(monkeypatch):
    monkeypatch.setattr(settings, "expiration_sweep_worker_enabled", True)

    captured = {}

    def fake_run(limit=None, triggered_by=None, session_factory=None):
        captured["limit"] = limit
        captured["triggered_by"] = triggered_by
        return {"processed": 3, "expired": 2, "penalty_applied": 1, "failed": 0}

    monkeypatch.setattr(tasks, "run_expiration_sweep_sync", fake_run)

    result = tasks.run_reservation_expiration_sweep(limit=25)
    assert result["processed"] == 3
    assert captured == {"limit": 25, "triggered_by": "celery"}


@pytest.mark.asyncio
async def test_run_expiration_sweep_once_returns_outcomes(session_factory, marketplace):
    async with session_factory() as session:
        reservation = await ReservationStateMachine(session).create(
            offer_id=marketplace.offer_id,
            customer_id=marketplace.customer_id,
            quantity=1,
        )
        # Pull the deadline into the past so the helper's wall-clock sweep picks it up.
        stored = await session.get(Reservation, reservation.id)
        stored.expires_at = datetime.now(timezone.utc) - timedelta(minutes=1)
        await session.commit()

    summary = await run_expiration_sweep_once(limit=10, triggered_by="cron", session_factory=session_factory)

    assert summary["processed"] == 1
    assert summary["expired"] == 1
    assert summary["outcomes"] == [
        {
            "reservationId": str(reservation.id),
            "action": "expired",
            "message": "Warning recorded for missed pickup #1",
        }
    ]

    async with session_factory() as session:
        stored = await ReservationStateMachine(session).get(reservation.id)
        assert stored.status == ReservationStatusEnum.EXPIRED
