"""Booking-related Pydantic schemas."""

from datetime import UTC, datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from app.domain.booking_state import BookingStatus, ServiceType
from app.domain.dispute_state import DisputeResolution
from app.domain.payment_state import PaymentStatus


class BookingCreate(BaseModel):
    """Schema for an owner requesting a service from a sitter."""

    sitter_id: UUID
    pet_id: UUID | None = None
    service_type: ServiceType
    start_time: datetime
    end_time: datetime
    total_price: int = Field(..., ge=0, description="Total price in minor currency units")
    currency: str | None = Field(None, min_length=3, max_length=3)
    notes: str | None = Field(None, max_length=1000)
    sitter_payout_account: str | None = Field(None, max_length=255)

    @field_validator("start_time", "end_time")
    @classmethod
    def assume_utc(cls, v: datetime) -> datetime:
        if v.tzinfo is None:
            return v.replace(tzinfo=UTC)
        return v

    @field_validator("end_time")
    @classmethod
    def validate_end_time(cls, v: datetime, info) -> datetime:
        start_time = info.data.get("start_time")
        if start_time and v <= start_time:
            raise ValueError("end_time must be after start_time")
        return v

    @field_validator("currency")
    @classmethod
    def upper_currency(cls, v: str | None) -> str | None:
        return v.upper() if v else v


class BookingStatusUpdate(BaseModel):
    """Schema for moving a booking to a new status."""

    new_status: BookingStatus
    expected_status: BookingStatus | None = None
    cancellation_reason: str | None = Field(None, max_length=1000)


class AuthorizePaymentRequest(BaseModel):
    """Schema for authorizing and holding the booking payment."""

    payment_method_id: str | None = Field(None, max_length=255)


class ReleasePaymentRequest(BaseModel):
    """Schema for releasing the held payment to the sitter."""

    force: bool = False


class RefundPaymentRequest(BaseModel):
    """Schema for refunding the held payment to the owner."""

    reason: str = Field(..., min_length=1, max_length=1000)


class DisputeCreate(BaseModel):
    """Schema for an owner disputing a completed service."""

    reason: str = Field(..., min_length=3, max_length=2000)


class DisputeResolveRequest(BaseModel):
    """Schema for an admin resolving a dispute."""

    resolution: DisputeResolution
    note: str | None = Field(None, max_length=2000)


class BookingResponse(BaseModel):
    """Schema for booking response."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    owner_id: UUID
    sitter_id: UUID
    pet_id: UUID | None
    service_type: ServiceType
    notes: str | None

    start_time: datetime
    end_time: datetime

    # Pricing
    total_price: int
    currency: str
    commission_rate: Decimal | None
    commission_fee: int
    payout_amount: int

    # Status
    status: BookingStatus
    payment_status: PaymentStatus

    # Gateway references
    gateway_payment_id: str | None
    gateway_payout_id: str | None
    gateway_refund_id: str | None

    # Cancellation
    cancellation_reason: str | None
    cancelled_by: str | None
    refund_reason: str | None

    # Release
    needs_manual_review: bool
    release_failures: int
    last_release_error: str | None

    # Disputes
    disputed_at: datetime | None
    dispute_reason: str | None
    dispute_resolved_at: datetime | None
    dispute_resolution: str | None

    # Timestamps
    created_at: datetime
    updated_at: datetime
    confirmed_at: datetime | None
    started_at: datetime | None
    completed_at: datetime | None
    completion_confirmed_at: datetime | None
    eligible_for_release_at: datetime | None
    payment_released_at: datetime | None
    cancelled_at: datetime | None
    refunded_at: datetime | None


class BookingListResponse(BaseModel):
    """Schema for a list of bookings."""

    bookings: list[BookingResponse]
    total: int


class BookingTransitionResponse(BaseModel):
    """Schema for one audit row of a booking's history."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    action: str
    actor_id: UUID | None
    actor_role: str
    from_status: str | None
    to_status: str
    from_payment_status: str | None
    to_payment_status: str
    note: str | None
    created_at: datetime
