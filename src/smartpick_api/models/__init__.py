"""SQLAlchemy models package."""

from .cancellation import CancellationCooldownLift, CooldownLiftType, ReservationCancellation  # noqa: F401
from .expiration_sweep import ExpirationSweepRun  # noqa: F401
from .offer import Offer, OfferStatusEnum  # noqa: F401
from .penalty import ForgivenessStatus, MissedPickupCounter, Penalty, PenaltyType  # noqa: F401
from .points import (  # noqa: F401
    PointsAccount,
    PointsAccountOwnerEnum,
    PointsHistory,
    PointsOperation,
    PointsReasonCode,
)
from .reservation import (  # noqa: F401
    TERMINAL_RESERVATION_STATUSES,
    Reservation,
    ReservationActorTypeEnum,
    ReservationStateEvent,
    ReservationStatusEnum,
)
from .user import Partner, User, UserRoleEnum, UserStatusEnum  # noqa: F401
