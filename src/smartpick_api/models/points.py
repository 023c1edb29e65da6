"""Points balances, escrow, and the immutable points history."""

from __future__ import annotations

from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Integer,
    JSON,
    String,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from smartpick_api.db.base import Base


class PointsAccountOwnerEnum(str, Enum):
    CUSTOMER = "customer"
    PARTNER = "partner"


class PointsReasonCode(str, Enum):
    """Reason attached to every points movement."""

    ESCROW_HOLD = "ESCROW_HOLD"
    ESCROW_RELEASE = "ESCROW_RELEASE"
    PICKUP_REWARD = "PICKUP_REWARD"
    NO_SHOW_COMPENSATION = "NO_SHOW_COMPENSATION"
    PENALTY_LIFT = "PENALTY_LIFT"
    COOLDOWN_LIFT = "COOLDOWN_LIFT"
    ADJUSTMENT = "ADJUSTMENT"


class PointsAccount(Base):
    __tablename__ = "points_accounts"
    __table_args__ = (
        UniqueConstraint("owner_type", "owner_id", name="uq_points_accounts_owner"),
        CheckConstraint("escrow_held >= 0", name="ck_points_accounts_escrow_non_negative"),
        CheckConstraint("escrow_held <= balance", name="ck_points_accounts_escrow_within_balance"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    owner_type = Column(SqlEnum(PointsAccountOwnerEnum, name="points_account_owner"), nullable=False)
    owner_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    balance = Column(Integer, nullable=False, default=0, server_default="0")
    escrow_held = Column(Integer, nullable=False, default=0, server_default="0")
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    history = relationship("PointsHistory", back_populates="account", order_by="PointsHistory.created_at")

    @property
    def available(self) -> int:
        return int(self.balance or 0) - int(self.escrow_held or 0)


class PointsHistory(Base):
    """Immutable audit row paired with every balance change."""

    __tablename__ = "points_history"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    account_id = Column(UUID(as_uuid=True), ForeignKey("points_accounts.id", ondelete="CASCADE"), nullable=False, index=True)
    delta = Column(Integer, nullable=False)
    reason_code = Column(SqlEnum(PointsReasonCode, name="points_reason_code"), nullable=False)
    balance_after = Column(Integer, nullable=False)
    related_reservation_id = Column(UUID(as_uuid=True), nullable=True, index=True)
    related_penalty_id = Column(UUID(as_uuid=True), nullable=True)
    metadata_json = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    account = relationship("PointsAccount", back_populates="history")


class PointsOperation(Base):
    """Idempotency record for ledger operations keyed by reservation and reason."""

    __tablename__ = "points_operations"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    idempotency_key = Column(String(128), nullable=False, unique=True)
    reason_code = Column(SqlEnum(PointsReasonCode, name="points_reason_code"), nullable=False)
    amount = Column(Integer, nullable=False)
    customer_balance_after = Column(Integer, nullable=True)
    customer_escrow_after = Column(Integer, nullable=True)
    partner_balance_after = Column(Integer, nullable=True)
    related_reservation_id = Column(UUID(as_uuid=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
