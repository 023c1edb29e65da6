"""Domain exceptions raised by the reservation, points, and penalty services."""

from __future__ import annotations


class ReservationDomainError(RuntimeError):
    """Base exception carrying a stable error code and HTTP status."""

    code = "reservation_error"
    status_code = 400

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.code.replace("_", " "))
        self.message = message or self.code.replace("_", " ")


class OfferUnavailable(ReservationDomainError):
    code = "offer_unavailable"
    status_code = 409


class InsufficientBalance(ReservationDomainError):
    """Raised when available points cannot cover an escrow hold."""

    code = "insufficient_balance"
    status_code = 402


class InsufficientPoints(ReservationDomainError):
    """Raised when a penalty lift costs more than the available points."""

    code = "insufficient_points"
    status_code = 402


class InvalidState(ReservationDomainError):
    code = "invalid_state"
    status_code = 409


class PenaltyNotActive(InvalidState):
    code = "penalty_not_active"


class Forbidden(ReservationDomainError):
    code = "forbidden"
    status_code = 403


class NotOwner(Forbidden):
    code = "not_owner"


class UserSuspended(Forbidden):
    """Raised when a customer with an active suspension tries to reserve."""

    code = "user_suspended"

    def __init__(self, message: str | None = None, *, suspended_until=None, penalty_id=None) -> None:
        super().__init__(message)
        self.suspended_until = suspended_until
        self.penalty_id = penalty_id


class PenaltyNotLiftable(Forbidden):
    code = "penalty_not_liftable"


class ActiveReservationLimit(Forbidden):
    code = "active_reservation_limit"


class CancellationCooldownActive(Forbidden):
    """Raised when repeated cancellations have put the customer in a timed cooldown."""

    code = "cancellation_cooldown"

    def __init__(self, message: str | None = None, *, cooldown_until=None) -> None:
        super().__init__(message)
        self.cooldown_until = cooldown_until


class WindowClosed(ReservationDomainError):
    code = "window_closed"
    status_code = 409


class RateLimited(ReservationDomainError):
    code = "rate_limited"
    status_code = 429

    def __init__(self, message: str | None = None, *, retry_after: int = 60) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class NotFound(ReservationDomainError):
    code = "not_found"
    status_code = 404


class ReservationNotFound(NotFound):
    code = "reservation_not_found"


class PenaltyNotFound(NotFound):
    code = "penalty_not_found"


class OfferNotFound(NotFound):
    code = "offer_not_found"


__all__ = [
    "ActiveReservationLimit",
    "CancellationCooldownActive",
    "Forbidden",
    "InsufficientBalance",
    "InsufficientPoints",
    "InvalidState",
    "NotFound",
    "NotOwner",
    "OfferNotFound",
    "OfferUnavailable",
    "PenaltyNotActive",
    "PenaltyNotFound",
    "PenaltyNotLiftable",
    "RateLimited",
    "ReservationDomainError",
    "ReservationNotFound",
    "UserSuspended",
    "WindowClosed",
]
