"""Initial database schema.

Revision ID: 001_initial
Revises: None
Create Date: 2026-10-19

Creates the booking engine tables:
- Bookings (lifecycle, escrow and dispute state)
- Booking transitions (append-only audit trail)
"""

from typing import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers
revision: str = "001_initial"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


STATUS_PAYMENT_CHECK = (
    "(status = 'requested' AND payment_status IN ('none'))"
    " OR (status = 'confirmed' AND payment_status IN ('held', 'none', 'pending'))"
    " OR (status = 'in_progress' AND payment_status IN ('held'))"
    " OR (status = 'completed' AND payment_status IN ('held', 'released'))"
    " OR (status = 'cancelled' AND payment_status IN ('none', 'refunded'))"
)


def upgrade() -> None:
    """Create all database tables."""

    # ==================== BOOKINGS ====================
    op.create_table(
        "bookings",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("owner_id", postgresql.UUID(as_uuid=True), nullable=False, index=True),
        sa.Column("sitter_id", postgresql.UUID(as_uuid=True), nullable=False, index=True),
        sa.Column("pet_id", postgresql.UUID(as_uuid=True)),
        sa.Column("service_type", sa.String(20), nullable=False),
        sa.Column("notes", sa.Text),
        sa.Column("start_time", sa.DateTime(timezone=True), nullable=False, index=True),
        sa.Column("end_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("total_price", sa.Integer, nullable=False),
        sa.Column("currency", sa.String(3), nullable=False, server_default="EUR"),
        sa.Column("commission_rate", sa.Numeric(5, 2)),
        sa.Column("commission_fee", sa.Integer, nullable=False, server_default="0"),
        sa.Column("status", sa.String(20), nullable=False, server_default="requested", index=True),
        sa.Column("payment_status", sa.String(20), nullable=False, server_default="none", index=True),
        sa.Column("cancellation_reason", sa.Text),
        sa.Column("cancelled_by", sa.String(20)),
        sa.Column("sitter_payout_account", sa.String(255)),
        sa.Column("gateway_payment_id", sa.String(255)),
        sa.Column("gateway_payout_id", sa.String(255)),
        sa.Column("gateway_refund_id", sa.String(255)),
        sa.Column("capture_attempts", sa.Integer, nullable=False, server_default="0"),
        sa.Column("payout_attempts", sa.Integer, nullable=False, server_default="0"),
        sa.Column("refund_attempts", sa.Integer, nullable=False, server_default="0"),
        sa.Column("capture_requested_at", sa.DateTime(timezone=True)),
        sa.Column("refund_reason", sa.Text),
        sa.Column("release_failures", sa.Integer, nullable=False, server_default="0"),
        sa.Column("next_release_attempt_at", sa.DateTime(timezone=True)),
        sa.Column("last_release_error", sa.Text),
        sa.Column("needs_manual_review", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("disputed_at", sa.DateTime(timezone=True)),
        sa.Column("dispute_reason", sa.Text),
        sa.Column("dispute_resolved_at", sa.DateTime(timezone=True)),
        sa.Column("dispute_resolution", sa.String(20)),
        sa.Column("create_request_id", sa.String(128), unique=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("confirmed_at", sa.DateTime(timezone=True)),
        sa.Column("started_at", sa.DateTime(timezone=True)),
        sa.Column("completed_at", sa.DateTime(timezone=True)),
        sa.Column("completion_confirmed_at", sa.DateTime(timezone=True)),
        sa.Column("confirmation_reminder_sent_at", sa.DateTime(timezone=True)),
        sa.Column("eligible_for_release_at", sa.DateTime(timezone=True)),
        sa.Column("payment_released_at", sa.DateTime(timezone=True)),
        sa.Column("cancelled_at", sa.DateTime(timezone=True)),
        sa.Column("refunded_at", sa.DateTime(timezone=True)),
        sa.Column("lock_version", sa.Integer, nullable=False),
        sa.CheckConstraint("owner_id <> sitter_id", name="ck_bookings_distinct_parties"),
        sa.CheckConstraint("end_time > start_time", name="ck_bookings_time_range"),
        sa.CheckConstraint("total_price >= 0", name="ck_bookings_total_price"),
        sa.CheckConstraint(
            "commission_fee >= 0 AND commission_fee <= total_price",
            name="ck_bookings_commission_fee",
        ),
        sa.CheckConstraint(
            "(payment_status = 'released' AND payment_released_at IS NOT NULL)"
            " OR (payment_status <> 'released' AND payment_released_at IS NULL)",
            name="ck_bookings_released_at",
        ),
        sa.CheckConstraint(
            "(completion_confirmed_at IS NULL AND eligible_for_release_at IS NULL)"
            " OR (completion_confirmed_at IS NOT NULL AND eligible_for_release_at IS NOT NULL)",
            name="ck_bookings_release_eligibility",
        ),
        sa.CheckConstraint(STATUS_PAYMENT_CHECK, name="ck_bookings_status_payment"),
    )
    op.create_index(
        "ix_bookings_release_due",
        "bookings",
        ["payment_status", "eligible_for_release_at"],
    )

    # ==================== AUDIT ====================
    op.create_table(
        "booking_transitions",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "booking_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("bookings.id"),
            nullable=False,
            index=True,
        ),
        sa.Column("request_id", sa.String(128)),
        sa.Column("action", sa.String(40), nullable=False),
        sa.Column("actor_id", postgresql.UUID(as_uuid=True)),
        sa.Column("actor_role", sa.String(20), nullable=False),
        sa.Column("from_status", sa.String(20)),
        sa.Column("to_status", sa.String(20), nullable=False),
        sa.Column("from_payment_status", sa.String(20)),
        sa.Column("to_payment_status", sa.String(20), nullable=False),
        sa.Column("note", sa.Text),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("booking_id", "request_id", name="uq_booking_transitions_request"),
    )


def downgrade() -> None:
    """Drop all database tables in reverse order."""
    op.drop_table("booking_transitions")
    op.drop_index("ix_bookings_release_due", table_name="bookings")
    op.drop_table("bookings")
