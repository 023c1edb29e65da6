"""Observability endpoints for reservation lifecycle telemetry and Prometheus metrics."""

from __future__ import annotations

from fastapi import APIRouter, Depends
from fastapi.responses import PlainTextResponse

from smartpick_api.api.dependencies.security import require_internal_api_key
from smartpick_api.observability.reservations import get_reservation_store


router = APIRouter(
    prefix="/observability",
    tags=["Observability"],
    dependencies=[Depends(require_internal_api_key)],
)


@router.get("/reservations", summary="Reservation lifecycle telemetry snapshot")
async def get_reservation_snapshot() -> dict[str, object]:
    return get_reservation_store().snapshot().as_dict()


def _format_metric(name: str, description: str, value: int | float, labels: dict[str, str] | None = None) -> list[str]:
    label_fragment = ""
    if labels:
        formatted = ",".join(f'{key}="{val}"' for key, val in sorted(labels.items()))
        label_fragment = f"{{{formatted}}}"
    return [
        f"# HELP {name} {description}",
        f"# TYPE {name} counter",
        f"{name}{label_fragment} {value}",
    ]


@router.get(
    "/prometheus",
    summary="Prometheus-formatted reservation metrics",
    response_class=PlainTextResponse,
)
async def get_prometheus_metrics() -> PlainTextResponse:
    snapshot = get_reservation_store().snapshot()
    lines: list[str] = []
    for status, value in sorted(snapshot.transitions.items()):
        lines.extend(
            _format_metric(
                "smartpick_reservation_transitions_total",
                "Reservation transitions by target status",
                value,
                {"status": status},
            )
        )
    for outcome, value in sorted(snapshot.pickups.items()):
        lines.extend(
            _format_metric(
                "smartpick_pickup_confirmations_total",
                "Pickup confirmations by outcome",
                value,
                {"outcome": outcome},
            )
        )
    for action, value in sorted(snapshot.sweeps.items()):
        lines.extend(
            _format_metric(
                "smartpick_expiration_sweep_total",
                "Expiration sweep runs and per-reservation actions",
                value,
                {"action": action},
            )
        )
    for penalty_type, value in sorted(snapshot.penalties.items()):
        lines.extend(
            _format_metric(
                "smartpick_penalties_issued_total",
                "Penalties issued by type",
                value,
                {"type": penalty_type},
            )
        )
    for reason, value in sorted(snapshot.rate_limits.items()):
        lines.extend(
            _format_metric(
                "smartpick_rate_limited_total",
                "Requests rejected by the pickup rate limiter",
                value,
                {"reason": reason},
            )
        )
    return PlainTextResponse("\n".join(lines) + "\n")
