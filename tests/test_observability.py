from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient

from smartpick_api.app import create_app
from smartpick_api.core.settings import settings
from smartpick_api.observability.reservations import get_reservation_store


def test_reservation_store_snapshot_aggregates_counters() -> None:
    store = get_reservation_store()
    store.record_transition("ACTIVE")
    store.record_transition("ACTIVE")
    store.record_transition("EXPIRED")
    store.record_pickup("confirmed")
    store.record_sweep(["expired", "penalty_applied"])
    store.record_penalty("SUSPEND_1H")
    store.record_rate_limited("")

    snapshot = store.snapshot().as_dict()
    assert snapshot == {
        "transitions": {"ACTIVE": 2, "EXPIRED": 1},
        "pickups": {"confirmed": 1},
        "sweeps": {"runs": 1, "expired": 1, "penalty_applied": 1},
        "penalties": {"SUSPEND_1H": 1},
        "rateLimits": {"unknown": 1},
    }


@pytest.mark.asyncio
async def test_reservation_snapshot_requires_key() -> None:
    app = create_app()

    previous_key = settings.internal_api_key
    settings.internal_api_key = "snapshot-key"

    try:
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            denied = await client.get("/api/v1/observability/reservations")
            allowed = await client.get(
                "/api/v1/observability/reservations",
                headers={"X-API-Key": "snapshot-key"},
            )
        assert denied.status_code == 401
        assert allowed.status_code == 200
        assert set(allowed.json()) == {"transitions", "pickups", "sweeps", "penalties", "rateLimits"}
    finally:
        settings.internal_api_key = previous_key


@pytest.mark.asyncio
async def test_prometheus_endpoint_renders_counters() -> None:
    app = create_app()
    store = get_reservation_store()
    store.record_transition("PICKED_UP")
    store.record_penalty("PERMANENT")

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.get("/api/v1/observability/prometheus")

    assert response.status_code == 200
    body = response.text
    assert 'smartpick_reservation_transitions_total{status="PICKED_UP"} 1' in body
    assert 'smartpick_penalties_issued_total{type="PERMANENT"} 1' in body
    assert "# TYPE smartpick_penalties_issued_total counter" in body
