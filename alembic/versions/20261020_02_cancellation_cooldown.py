"""Cancellation history and paid cooldown lifts.

Revision ID: 20261020_02
Revises: 20261019_01
Create Date: 2026-10-20
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision: str = "20261020_02"
down_revision: Union[str, None] = "20261019_01"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.execute("ALTER TYPE points_reason_code ADD VALUE IF NOT EXISTS 'COOLDOWN_LIFT'")
    op.execute("CREATE TYPE cooldown_lift_type AS ENUM ('PAID', 'RESET')")

    op.create_table(
        "reservation_cancellations",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("reservation_id", postgresql.UUID(as_uuid=True), nullable=False, unique=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["reservation_id"], ["reservations.id"], ondelete="CASCADE"),
    )
    op.create_index(
        "ix_reservation_cancellations_user_cancelled",
        "reservation_cancellations",
        ["user_id", "cancelled_at"],
    )

    op.create_table(
        "cancellation_cooldown_lifts",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("lift_type", postgresql.ENUM(name="cooldown_lift_type", create_type=False), nullable=False),
        sa.Column("cancellation_count", sa.Integer(), nullable=False),
        sa.Column("points_spent", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("lifted_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
    )
    op.create_index(
        "ix_cancellation_cooldown_lifts_user_lifted",
        "cancellation_cooldown_lifts",
        ["user_id", "lifted_at"],
    )


def downgrade() -> None:
    op.drop_index("ix_cancellation_cooldown_lifts_user_lifted", table_name="cancellation_cooldown_lifts")
    op.drop_table("cancellation_cooldown_lifts")
    op.drop_index("ix_reservation_cancellations_user_cancelled", table_name="reservation_cancellations")
    op.drop_table("reservation_cancellations")
    op.execute("DROP TYPE cooldown_lift_type")
    # Postgres cannot drop a single enum value; COOLDOWN_LIFT stays on points_reason_code.
