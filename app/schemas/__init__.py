"""Pydantic schemas for API validation."""

from app.schemas.booking import (
    AuthorizePaymentRequest,
    BookingCreate,
    BookingListResponse,
    BookingResponse,
    BookingStatusUpdate,
    BookingTransitionResponse,
    DisputeCreate,
    DisputeResolveRequest,
    RefundPaymentRequest,
    ReleasePaymentRequest,
)

__all__ = [
    "AuthorizePaymentRequest",
    "BookingCreate",
    "BookingListResponse",
    "BookingResponse",
    "BookingStatusUpdate",
    "BookingTransitionResponse",
    "DisputeCreate",
    "DisputeResolveRequest",
    "RefundPaymentRequest",
    "ReleasePaymentRequest",
]
