"""No-show penalties and the per-user missed pickup counter."""

from __future__ import annotations

from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Index,
    Integer,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import UUID

from smartpick_api.db.base import Base


class PenaltyType(str, Enum):
    WARNING = "WARNING"
    SUSPEND_1H = "SUSPEND_1H"
    SUSPEND_24H = "SUSPEND_24H"
    PERMANENT = "PERMANENT"


class ForgivenessStatus(str, Enum):
    PENDING = "pending"
    GRANTED = "granted"
    DENIED = "denied"


class Penalty(Base):
    __tablename__ = "penalties"
    __table_args__ = (
        Index("ix_penalties_user_active", "user_id", "is_active"),
        Index("ix_penalties_user_offense", "user_id", "offense_number"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    reservation_id = Column(UUID(as_uuid=True), ForeignKey("reservations.id"), nullable=True)
    partner_id = Column(UUID(as_uuid=True), ForeignKey("partners.id"), nullable=True)
    offense_number = Column(Integer, nullable=False)
    penalty_type = Column(SqlEnum(PenaltyType, name="penalty_type"), nullable=False)
    suspended_until = Column(DateTime(timezone=True), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True, server_default="true")
    acknowledged = Column(Boolean, nullable=False, default=False, server_default="false")
    acknowledged_at = Column(DateTime(timezone=True), nullable=True)
    can_lift_with_points = Column(Boolean, nullable=False, default=False, server_default="false")
    points_required = Column(Integer, nullable=False, default=0, server_default="0")
    lifted_with_points = Column(Boolean, nullable=False, default=False, server_default="false")
    lifted_at = Column(DateTime(timezone=True), nullable=True)
    superseded_at = Column(DateTime(timezone=True), nullable=True)
    forgiveness_status = Column(SqlEnum(ForgivenessStatus, name="penalty_forgiveness_status"), nullable=True)
    forgiveness_message = Column(Text, nullable=True)
    forgiveness_response = Column(Text, nullable=True)
    forgiveness_requested_at = Column(DateTime(timezone=True), nullable=True)
    forgiveness_decided_at = Column(DateTime(timezone=True), nullable=True)
    forgiveness_expires_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


class MissedPickupCounter(Base):
    """Lifetime count of unresolved missed pickups; reset only by administrators."""

    __tablename__ = "missed_pickup_counters"

    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)
    missed_count = Column(Integer, nullable=False, default=0, server_default="0")
    warnings_shown = Column(Integer, nullable=False, default=0, server_default="0")
    last_missed_at = Column(DateTime(timezone=True), nullable=True)
    reset_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)
