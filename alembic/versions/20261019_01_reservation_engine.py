"""Reservation commitment and penalty engine tables.

Revision ID: 20261019_01
Revises:
Create Date: 2026-10-19
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision: str = "20261019_01"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _enum(name: str) -> postgresql.ENUM:
    return postgresql.ENUM(name=name, create_type=False)


def upgrade() -> None:
    op.execute("CREATE TYPE offer_status AS ENUM ('ACTIVE', 'PAUSED', 'SCHEDULED', 'EXPIRED', 'SOLD_OUT')")
    op.execute("CREATE TYPE reservation_status AS ENUM ('ACTIVE', 'PICKED_UP', 'CANCELLED', 'EXPIRED')")
    op.execute("CREATE TYPE reservation_actor_type AS ENUM ('CUSTOMER', 'PARTNER', 'SYSTEM')")
    op.execute("CREATE TYPE points_account_owner AS ENUM ('CUSTOMER', 'PARTNER')")
    op.execute(
        "CREATE TYPE points_reason_code AS ENUM ('ESCROW_HOLD', 'ESCROW_RELEASE', 'PICKUP_REWARD', "
        "'NO_SHOW_COMPENSATION', 'PENALTY_LIFT', 'ADJUSTMENT')"
    )
    op.execute("CREATE TYPE penalty_type AS ENUM ('WARNING', 'SUSPEND_1H', 'SUSPEND_24H', 'PERMANENT')")
    op.execute("CREATE TYPE penalty_forgiveness_status AS ENUM ('PENDING', 'GRANTED', 'DENIED')")

    op.create_table(
        "users",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("email", sa.String(), nullable=False),
        sa.Column("display_name", sa.String(), nullable=True),
        sa.Column("role", sa.String(length=16), nullable=False, server_default="customer"),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="active"),
        sa.Column("completed_pickups", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)

    op.create_table(
        "partners",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False, unique=True),
        sa.Column("business_name", sa.String(), nullable=False),
        sa.Column("completed_pickups", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
    )

    op.create_table(
        "offers",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("partner_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("status", _enum("offer_status"), nullable=False, server_default="ACTIVE"),
        sa.Column("quantity_total", sa.Integer(), nullable=False),
        sa.Column("quantity_available", sa.Integer(), nullable=False),
        sa.Column("smart_price", sa.Numeric(10, 2), nullable=False),
        sa.Column("original_price", sa.Numeric(10, 2), nullable=False),
        sa.Column("pickup_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("pickup_end", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.ForeignKeyConstraint(["partner_id"], ["partners.id"], ondelete="CASCADE"),
        sa.CheckConstraint("quantity_available >= 0", name="ck_offers_quantity_available_non_negative"),
        sa.CheckConstraint("quantity_available <= quantity_total", name="ck_offers_quantity_available_within_total"),
    )
    op.create_index("ix_offers_partner_id", "offers", ["partner_id"])

    op.create_table(
        "reservations",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("offer_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("customer_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("partner_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("total_price", sa.Numeric(10, 2), nullable=False),
        sa.Column("saved_amount", sa.Numeric(10, 2), nullable=False, server_default="0"),
        sa.Column("points_held", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("status", _enum("reservation_status"), nullable=False, server_default="ACTIVE"),
        sa.Column("qr_code", sa.String(length=64), nullable=False, unique=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("picked_up_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expired_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.ForeignKeyConstraint(["offer_id"], ["offers.id"]),
        sa.ForeignKeyConstraint(["customer_id"], ["users.id"]),
        sa.ForeignKeyConstraint(["partner_id"], ["partners.id"]),
        sa.CheckConstraint("quantity > 0", name="ck_reservations_quantity_positive"),
        sa.CheckConstraint("points_held >= 0", name="ck_reservations_points_held_non_negative"),
    )
    op.create_index("ix_reservations_offer_id", "reservations", ["offer_id"])
    op.create_index("ix_reservations_customer_id", "reservations", ["customer_id"])
    op.create_index("ix_reservations_partner_id", "reservations", ["partner_id"])
    op.create_index("ix_reservations_status_expires_at", "reservations", ["status", "expires_at"])

    op.create_table(
        "reservation_state_events",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("reservation_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("from_status", sa.String(length=16), nullable=True),
        sa.Column("to_status", sa.String(length=16), nullable=False),
        sa.Column("actor_type", _enum("reservation_actor_type"), nullable=False),
        sa.Column("actor_id", sa.String(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.ForeignKeyConstraint(["reservation_id"], ["reservations.id"], ondelete="CASCADE"),
    )
    op.create_index("ix_reservation_state_events_reservation_id", "reservation_state_events", ["reservation_id"])

    op.create_table(
        "points_accounts",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("owner_type", _enum("points_account_owner"), nullable=False),
        sa.Column("owner_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("balance", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("escrow_held", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.UniqueConstraint("owner_type", "owner_id", name="uq_points_accounts_owner"),
        sa.CheckConstraint("escrow_held >= 0", name="ck_points_accounts_escrow_non_negative"),
        sa.CheckConstraint("escrow_held <= balance", name="ck_points_accounts_escrow_within_balance"),
    )
    op.create_index("ix_points_accounts_owner_id", "points_accounts", ["owner_id"])

    op.create_table(
        "points_history",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("account_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("delta", sa.Integer(), nullable=False),
        sa.Column("reason_code", _enum("points_reason_code"), nullable=False),
        sa.Column("balance_after", sa.Integer(), nullable=False),
        sa.Column("related_reservation_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("related_penalty_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.ForeignKeyConstraint(["account_id"], ["points_accounts.id"], ondelete="CASCADE"),
    )
    op.create_index("ix_points_history_account_id", "points_history", ["account_id"])
    op.create_index("ix_points_history_related_reservation_id", "points_history", ["related_reservation_id"])

    op.create_table(
        "points_operations",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("idempotency_key", sa.String(length=128), nullable=False, unique=True),
        sa.Column("reason_code", _enum("points_reason_code"), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("customer_balance_after", sa.Integer(), nullable=True),
        sa.Column("customer_escrow_after", sa.Integer(), nullable=True),
        sa.Column("partner_balance_after", sa.Integer(), nullable=True),
        sa.Column("related_reservation_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    )

    op.create_table(
        "penalties",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("reservation_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("partner_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("offense_number", sa.Integer(), nullable=False),
        sa.Column("penalty_type", _enum("penalty_type"), nullable=False),
        sa.Column("suspended_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("acknowledged", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("acknowledged_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("can_lift_with_points", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("points_required", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("lifted_with_points", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("lifted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("superseded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("forgiveness_status", _enum("penalty_forgiveness_status"), nullable=True),
        sa.Column("forgiveness_message", sa.Text(), nullable=True),
        sa.Column("forgiveness_response", sa.Text(), nullable=True),
        sa.Column("forgiveness_requested_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("forgiveness_decided_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("forgiveness_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["reservation_id"], ["reservations.id"]),
        sa.ForeignKeyConstraint(["partner_id"], ["partners.id"]),
    )
    op.create_index("ix_penalties_user_active", "penalties", ["user_id", "is_active"])
    op.create_index("ix_penalties_user_offense", "penalties", ["user_id", "offense_number"])

    op.create_table(
        "missed_pickup_counters",
        sa.Column("user_id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("missed_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("warnings_shown", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_missed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("reset_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
    )

    op.create_table(
        "expiration_sweep_runs",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("triggered_by", sa.String(length=64), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="running"),
        sa.Column("processed_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("expired_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("penalty_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("banned_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("failed_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
    )


def downgrade() -> None:
    op.drop_table("expiration_sweep_runs")
    op.drop_table("missed_pickup_counters")
    op.drop_index("ix_penalties_user_offense", table_name="penalties")
    op.drop_index("ix_penalties_user_active", table_name="penalties")
    op.drop_table("penalties")
    op.drop_table("points_operations")
    op.drop_index("ix_points_history_related_reservation_id", table_name="points_history")
    op.drop_index("ix_points_history_account_id", table_name="points_history")
    op.drop_table("points_history")
    op.drop_index("ix_points_accounts_owner_id", table_name="points_accounts")
    op.drop_table("points_accounts")
    op.drop_index("ix_reservation_state_events_reservation_id", table_name="reservation_state_events")
    op.drop_table("reservation_state_events")
    op.drop_index("ix_reservations_status_expires_at", table_name="reservations")
    op.drop_index("ix_reservations_partner_id", table_name="reservations")
    op.drop_index("ix_reservations_customer_id", table_name="reservations")
    op.drop_index("ix_reservations_offer_id", table_name="reservations")
    op.drop_table("reservations")
    op.drop_index("ix_offers_partner_id", table_name="offers")
    op.drop_table("offers")
    op.drop_table("partners")
    op.drop_index("ix_users_email", table_name="users")
    op.drop_table("users")

    op.execute("DROP TYPE penalty_forgiveness_status")
    op.execute("DROP TYPE penalty_type")
    op.execute("DROP TYPE points_reason_code")
    op.execute("DROP TYPE points_account_owner")
    op.execute("DROP TYPE reservation_actor_type")
    op.execute("DROP TYPE reservation_status")
    op.execute("DROP TYPE offer_status")
