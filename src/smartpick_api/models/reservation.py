"""Reservation records and their state timeline."""

from __future__ import annotations

from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from smartpick_api.db.base import Base


class ReservationStatusEnum(str, Enum):
    ACTIVE = "ACTIVE"
    PICKED_UP = "PICKED_UP"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"


TERMINAL_RESERVATION_STATUSES = frozenset(
    {
        ReservationStatusEnum.PICKED_UP,
        ReservationStatusEnum.CANCELLED,
        ReservationStatusEnum.EXPIRED,
    }
)


class Reservation(Base):
    __tablename__ = "reservations"
    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_reservations_quantity_positive"),
        CheckConstraint("points_held >= 0", name="ck_reservations_points_held_non_negative"),
        Index("ix_reservations_status_expires_at", "status", "expires_at"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    offer_id = Column(UUID(as_uuid=True), ForeignKey("offers.id"), nullable=False, index=True)
    customer_id = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=False, index=True)
    partner_id = Column(UUID(as_uuid=True), ForeignKey("partners.id"), nullable=False, index=True)
    quantity = Column(Integer, nullable=False)
    total_price = Column(Numeric(10, 2), nullable=False)
    saved_amount = Column(Numeric(10, 2), nullable=False, default=0, server_default="0")
    points_held = Column(Integer, nullable=False, default=0, server_default="0")
    status = Column(
        SqlEnum(ReservationStatusEnum, name="reservation_status"),
        nullable=False,
        default=ReservationStatusEnum.ACTIVE,
        server_default=ReservationStatusEnum.ACTIVE.value,
    )
    qr_code = Column(String(64), nullable=False, unique=True)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    picked_up_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    expired_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    offer = relationship("Offer", back_populates="reservations")
    events = relationship(
        "ReservationStateEvent",
        back_populates="reservation",
        cascade="all, delete-orphan",
        order_by="ReservationStateEvent.created_at",
    )


class ReservationActorTypeEnum(str, Enum):
    CUSTOMER = "customer"
    PARTNER = "partner"
    SYSTEM = "system"


class ReservationStateEvent(Base):
    """Append-only audit row written for every status transition."""

    __tablename__ = "reservation_state_events"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    reservation_id = Column(
        UUID(as_uuid=True),
        ForeignKey("reservations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    from_status = Column(String(16), nullable=True)
    to_status = Column(String(16), nullable=False)
    actor_type = Column(SqlEnum(ReservationActorTypeEnum, name="reservation_actor_type"), nullable=False)
    actor_id = Column(String, nullable=True)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    reservation = relationship("Reservation", back_populates="events")
