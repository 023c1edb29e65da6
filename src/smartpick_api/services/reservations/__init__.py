"""Reservation lifecycle services."""

from .state_machine import ReservationStateMachine, generate_qr_code
from .sweep import SweepOutcome, run_expiration_sweep, settle_unsettled_pickups

__all__ = [
    "ReservationStateMachine",
    "SweepOutcome",
    "generate_qr_code",
    "run_expiration_sweep",
    "settle_unsettled_pickups",
]
