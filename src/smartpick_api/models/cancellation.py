"""Customer cancellation history and the cooldown lifts that clear it."""

from __future__ import annotations

from enum import Enum
from uuid import uuid4

from sqlalchemy import Column, DateTime, Enum as SqlEnum, ForeignKey, Index, Integer, func
from sqlalchemy.dialects.postgresql import UUID

from smartpick_api.db.base import Base


class CooldownLiftType(str, Enum):
    PAID = "paid"
    RESET = "reset"


class ReservationCancellation(Base):
    __tablename__ = "reservation_cancellations"
    __table_args__ = (Index("ix_reservation_cancellations_user_cancelled", "user_id", "cancelled_at"),)

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    reservation_id = Column(UUID(as_uuid=True), ForeignKey("reservations.id", ondelete="CASCADE"), nullable=False, unique=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=False)


class CancellationCooldownLift(Base):
    """A lift ends the current cooldown; earlier cancellations stop counting."""

    __tablename__ = "cancellation_cooldown_lifts"
    __table_args__ = (Index("ix_cancellation_cooldown_lifts_user_lifted", "user_id", "lifted_at"),)

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    lift_type = Column(SqlEnum(CooldownLiftType, name="cooldown_lift_type"), nullable=False)
    cancellation_count = Column(Integer, nullable=False, default=0)
    points_spent = Column(Integer, nullable=False, default=0, server_default="0")
    lifted_at = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
