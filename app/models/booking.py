"""Booking-related database models."""

from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from app.database import Base, UTCDateTime
from app.domain.booking_state import ALLOWED_COMBINATIONS, BookingStatus, ServiceType
from app.domain.payment_state import PaymentStatus


def _enum_values(enum_cls) -> list[str]:
    return [member.value for member in enum_cls]


def _status_payment_check() -> str:
    clauses = []
    for status, payments in ALLOWED_COMBINATIONS.items():
        allowed = ", ".join(f"'{p.value}'" for p in sorted(payments, key=lambda p: p.value))
        clauses.append(f"(status = '{status.value}' AND payment_status IN ({allowed}))")
    return " OR ".join(clauses)


class Booking(Base):
    """A walk, care or boarding service booked by an owner with a sitter."""

    __tablename__ = "bookings"
    __table_args__ = (
        CheckConstraint("owner_id <> sitter_id", name="ck_bookings_distinct_parties"),
        CheckConstraint("end_time > start_time", name="ck_bookings_time_range"),
        CheckConstraint("total_price >= 0", name="ck_bookings_total_price"),
        CheckConstraint(
            "commission_fee >= 0 AND commission_fee <= total_price",
            name="ck_bookings_commission_fee",
        ),
        CheckConstraint(
            "(payment_status = 'released' AND payment_released_at IS NOT NULL)"
            " OR (payment_status <> 'released' AND payment_released_at IS NULL)",
            name="ck_bookings_released_at",
        ),
        CheckConstraint(
            "(completion_confirmed_at IS NULL AND eligible_for_release_at IS NULL)"
            " OR (completion_confirmed_at IS NOT NULL AND eligible_for_release_at IS NOT NULL)",
            name="ck_bookings_release_eligibility",
        ),
        CheckConstraint(_status_payment_check(), name="ck_bookings_status_payment"),
        Index("ix_bookings_release_due", "payment_status", "eligible_for_release_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    owner_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    sitter_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    pet_id: Mapped[uuid.UUID | None] = mapped_column(Uuid)
    service_type: Mapped[ServiceType] = mapped_column(
        Enum(ServiceType, native_enum=False, length=20, values_callable=_enum_values),
        nullable=False,
    )
    notes: Mapped[str | None] = mapped_column(Text)

    # Service window
    start_time: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, index=True)
    end_time: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    # Pricing (minor currency units)
    total_price: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="EUR")
    commission_rate: Mapped[Decimal | None] = mapped_column(
        Numeric(5, 2)
    )  # percent, frozen when the sitter accepts
    commission_fee: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Status
    status: Mapped[BookingStatus] = mapped_column(
        Enum(BookingStatus, native_enum=False, length=20, values_callable=_enum_values),
        nullable=False,
        default=BookingStatus.REQUESTED,
        index=True,
    )
    payment_status: Mapped[PaymentStatus] = mapped_column(
        Enum(PaymentStatus, native_enum=False, length=20, values_callable=_enum_values),
        nullable=False,
        default=PaymentStatus.NONE,
        index=True,
    )

    # Cancellation
    cancellation_reason: Mapped[str | None] = mapped_column(Text)
    cancelled_by: Mapped[str | None] = mapped_column(String(20))  # owner, sitter, admin

    # Gateway bookkeeping
    sitter_payout_account: Mapped[str | None] = mapped_column(String(255))
    gateway_payment_id: Mapped[str | None] = mapped_column(String(255))
    gateway_payout_id: Mapped[str | None] = mapped_column(String(255))
    gateway_refund_id: Mapped[str | None] = mapped_column(String(255))
    capture_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    payout_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    refund_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    capture_requested_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
    refund_reason: Mapped[str | None] = mapped_column(Text)

    # Release retries
    release_failures: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    next_release_attempt_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
    last_release_error: Mapped[str | None] = mapped_column(Text)
    needs_manual_review: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Disputes
    disputed_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
    dispute_reason: Mapped[str | None] = mapped_column(Text)
    dispute_resolved_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
    dispute_resolution: Mapped[str | None] = mapped_column(String(20))  # release, refund

    # Idempotency of the creating request
    create_request_id: Mapped[str | None] = mapped_column(String(128), unique=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, server_default=func.now()
    )
    confirmed_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
    started_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
    completion_confirmed_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
    confirmation_reminder_sent_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
    eligible_for_release_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
    payment_released_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
    cancelled_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
    refunded_at: Mapped[datetime | None] = mapped_column(UTCDateTime)

    # Optimistic concurrency counter
    lock_version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": lock_version}

    @property
    def payout_amount(self) -> int:
        """Amount owed to the sitter on release."""
        return self.total_price - self.commission_fee

    @property
    def is_completion_confirmed(self) -> bool:
        return self.completion_confirmed_at is not None


class BookingTransition(Base):
    """Append-only audit row for every applied booking mutation."""

    __tablename__ = "booking_transitions"
    __table_args__ = (
        UniqueConstraint("booking_id", "request_id", name="uq_booking_transitions_request"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    booking_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("bookings.id"), nullable=False, index=True
    )
    request_id: Mapped[str | None] = mapped_column(String(128))
    action: Mapped[str] = mapped_column(String(40), nullable=False)
    actor_id: Mapped[uuid.UUID | None] = mapped_column(Uuid)
    actor_role: Mapped[str] = mapped_column(String(20), nullable=False)
    from_status: Mapped[str | None] = mapped_column(String(20))
    to_status: Mapped[str] = mapped_column(String(20), nullable=False)
    from_payment_status: Mapped[str | None] = mapped_column(String(20))
    to_payment_status: Mapped[str] = mapped_column(String(20), nullable=False)
    note: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, server_default=func.now()
    )
