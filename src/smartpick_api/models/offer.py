"""Surplus-food offers published by partners."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    func,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from smartpick_api.core.clock import ensure_aware
from smartpick_api.db.base import Base


class OfferStatusEnum(str, Enum):
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    SCHEDULED = "SCHEDULED"
    EXPIRED = "EXPIRED"
    SOLD_OUT = "SOLD_OUT"


class Offer(Base):
    __tablename__ = "offers"
    __table_args__ = (
        CheckConstraint("quantity_available >= 0", name="ck_offers_quantity_available_non_negative"),
        CheckConstraint("quantity_available <= quantity_total", name="ck_offers_quantity_available_within_total"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    partner_id = Column(UUID(as_uuid=True), ForeignKey("partners.id", ondelete="CASCADE"), nullable=False, index=True)
    title = Column(String, nullable=False)
    status = Column(
        SqlEnum(OfferStatusEnum, name="offer_status"),
        nullable=False,
        default=OfferStatusEnum.ACTIVE,
        server_default=OfferStatusEnum.ACTIVE.value,
    )
    quantity_total = Column(Integer, nullable=False)
    quantity_available = Column(Integer, nullable=False)
    smart_price = Column(Numeric(10, 2), nullable=False)
    original_price = Column(Numeric(10, 2), nullable=False)
    pickup_start = Column(DateTime(timezone=True), nullable=False)
    pickup_end = Column(DateTime(timezone=True), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    partner = relationship("Partner", back_populates="offers")
    reservations = relationship("Reservation", back_populates="offer")

    def display_status(self, now: datetime) -> OfferStatusEnum:
        """Status shown to customers; time and stock override the stored value."""

        if now > ensure_aware(self.expires_at):
            return OfferStatusEnum.EXPIRED
        if self.quantity_available == 0:
            return OfferStatusEnum.SOLD_OUT
        return self.status
