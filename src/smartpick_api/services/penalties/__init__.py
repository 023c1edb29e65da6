"""Penalty policy services."""

from .cooldown import CancellationCooldownService, CooldownLiftResult, CooldownStatus
from .policy import (
    NoShowOutcome,
    OffenseSummary,
    PenaltyLiftResult,
    PenaltyPolicyEngine,
    PenaltyTier,
    select_penalty_tier,
)

__all__ = [
    "CancellationCooldownService",
    "CooldownLiftResult",
    "CooldownStatus",
    "NoShowOutcome",
    "OffenseSummary",
    "PenaltyLiftResult",
    "PenaltyPolicyEngine",
    "PenaltyTier",
    "select_penalty_tier",
]
