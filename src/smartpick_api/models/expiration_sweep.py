from uuid import uuid4

from sqlalchemy import Column, DateTime, Integer, JSON, String, Text, func
from sqlalchemy.dialects.postgresql import UUID

from smartpick_api.db.base import Base


class ExpirationSweepRun(Base):
    """Bookkeeping row for each expiration sweep invocation."""

    __tablename__ = "expiration_sweep_runs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    triggered_by = Column(String(64), nullable=False)
    status = Column(String(16), nullable=False, default="running", server_default="running")
    processed_count = Column(Integer, nullable=False, default=0, server_default="0")
    expired_count = Column(Integer, nullable=False, default=0, server_default="0")
    penalty_count = Column(Integer, nullable=False, default=0, server_default="0")
    banned_count = Column(Integer, nullable=False, default=0, server_default="0")
    failed_count = Column(Integer, nullable=False, default=0, server_default="0")
    error_message = Column(Text, nullable=True)
    metadata_json = Column("metadata", JSON, nullable=True)
    started_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=True)
