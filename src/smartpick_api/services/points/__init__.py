"""Points ledger services."""

from .ledger import LedgerResult, PointsBalance, PointsLedgerService, idempotency_key, points_for_amount

__all__ = [
    "LedgerResult",
    "PointsBalance",
    "PointsLedgerService",
    "idempotency_key",
    "points_for_amount",
]
