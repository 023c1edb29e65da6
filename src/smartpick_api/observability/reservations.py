from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from threading import Lock
from typing import Dict, Iterable


@dataclass
class ReservationTelemetrySnapshot:
    transitions: Dict[str, int]
    pickups: Dict[str, int]
    sweeps: Dict[str, int]
    penalties: Dict[str, int]
    rate_limits: Dict[str, int]

    def as_dict(self) -> Dict[str, object]:
        return {
            "transitions": dict(self.transitions),
            "pickups": dict(self.pickups),
            "sweeps": dict(self.sweeps),
            "penalties": dict(self.penalties),
            "rateLimits": dict(self.rate_limits),
        }


class ReservationObservabilityStore:
    """In-process counters for reservation lifecycle dashboards."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._transitions: Dict[str, int] = defaultdict(int)
        self._pickups: Dict[str, int] = defaultdict(int)
        self._sweeps: Dict[str, int] = defaultdict(int)
        self._penalties: Dict[str, int] = defaultdict(int)
        self._rate_limits: Dict[str, int] = defaultdict(int)

    def record_transition(self, to_status: str) -> None:
        with self._lock:
            self._transitions[to_status] += 1

    def record_pickup(self, outcome: str) -> None:
        with self._lock:
            self._pickups[outcome] += 1

    def record_sweep(self, actions: Iterable[str]) -> None:
        with self._lock:
            self._sweeps["runs"] += 1
            for action in actions:
                self._sweeps[action] += 1

    def record_penalty(self, penalty_type: str) -> None:
        with self._lock:
            self._penalties[penalty_type] += 1

    def record_rate_limited(self, reason: str) -> None:
        with self._lock:
            self._rate_limits[reason or "unknown"] += 1

    def snapshot(self) -> ReservationTelemetrySnapshot:
        with self._lock:
            return ReservationTelemetrySnapshot(
                transitions=dict(self._transitions),
                pickups=dict(self._pickups),
                sweeps=dict(self._sweeps),
                penalties=dict(self._penalties),
                rate_limits=dict(self._rate_limits),
            )

    def reset(self) -> None:
        with self._lock:
            self._transitions.clear()
            self._pickups.clear()
            self._sweeps.clear()
            self._penalties.clear()
            self._rate_limits.clear()


_STORE = ReservationObservabilityStore()


def get_reservation_store() -> ReservationObservabilityStore:
    return _STORE


__all__ = ["get_reservation_store", "ReservationObservabilityStore", "ReservationTelemetrySnapshot"]
