"""Booking endpoints."""

from uuid import UUID

from fastapi import APIRouter, status

from app.api.deps import CurrentActor, CurrentAdmin, Engine, RequestId
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

router = APIRouter()


@router.post("/", response_model=BookingResponse, status_code=status.HTTP_201_CREATED)
async def create_booking(
    booking_data: BookingCreate,
    actor: CurrentActor,
    engine: Engine,
    request_id: RequestId,
) -> BookingResponse:
    """Request a service from a sitter. The caller becomes the owner."""
    booking = await engine.create_booking(
        actor,
        **booking_data.model_dump(),
        request_id=request_id,
    )
    return BookingResponse.model_validate(booking)


@router.get("/review-queue", response_model=BookingListResponse)
async def get_review_queue(
    admin: CurrentAdmin,
    engine: Engine,
) -> BookingListResponse:
    """Bookings with failed releases or open disputes (admin only)."""
    bookings = await engine.list_review_queue(admin)
    return BookingListResponse(
        bookings=[BookingResponse.model_validate(b) for b in bookings],
        total=len(bookings),
    )


@router.get("/{booking_id}", response_model=BookingResponse)
async def get_booking(
    booking_id: UUID,
    actor: CurrentActor,
    engine: Engine,
) -> BookingResponse:
    """Get booking details."""
    booking = await engine.get_booking(actor, booking_id)
    return BookingResponse.model_validate(booking)


@router.get("/{booking_id}/history", response_model=list[BookingTransitionResponse])
async def get_booking_history(
    booking_id: UUID,
    actor: CurrentActor,
    engine: Engine,
) -> list[BookingTransitionResponse]:
    """Audit trail of every change applied to the booking."""
    transitions = await engine.list_transitions(actor, booking_id)
    return [BookingTransitionResponse.model_validate(t) for t in transitions]


@router.post("/{booking_id}/status", response_model=BookingResponse)
async def update_booking_status(
    booking_id: UUID,
    update: BookingStatusUpdate,
    actor: CurrentActor,
    engine: Engine,
    request_id: RequestId,
) -> BookingResponse:
    """Accept, start, complete or cancel a booking."""
    booking = await engine.update_booking_status(
        actor,
        booking_id,
        update.new_status,
        expected_status=update.expected_status,
        cancellation_reason=update.cancellation_reason,
        request_id=request_id,
    )
    return BookingResponse.model_validate(booking)


@router.post("/{booking_id}/authorize", response_model=BookingResponse)
async def authorize_payment(
    booking_id: UUID,
    actor: CurrentActor,
    engine: Engine,
    request_id: RequestId,
    body: AuthorizePaymentRequest | None = None,
) -> BookingResponse:
    """Capture the owner's payment into escrow."""
    booking = await engine.authorize_and_hold(
        actor,
        booking_id,
        payment_method_id=body.payment_method_id if body else None,
        request_id=request_id,
    )
    return BookingResponse.model_validate(booking)


@router.post("/{booking_id}/complete", response_model=BookingResponse)
async def mark_service_completed(
    booking_id: UUID,
    actor: CurrentActor,
    engine: Engine,
    request_id: RequestId,
) -> BookingResponse:
    """Sitter marks the service as delivered."""
    booking = await engine.mark_service_completed(actor, booking_id, request_id=request_id)
    return BookingResponse.model_validate(booking)


@router.post("/{booking_id}/confirm-completion", response_model=BookingResponse)
async def confirm_service_completion(
    booking_id: UUID,
    actor: CurrentActor,
    engine: Engine,
    request_id: RequestId,
) -> BookingResponse:
    """Owner confirms the service; starts the payout hold window."""
    booking = await engine.confirm_service_completion(actor, booking_id, request_id=request_id)
    return BookingResponse.model_validate(booking)


@router.post("/{booking_id}/release", response_model=BookingResponse)
async def release_payment(
    booking_id: UUID,
    actor: CurrentActor,
    engine: Engine,
    request_id: RequestId,
    body: ReleasePaymentRequest | None = None,
) -> BookingResponse:
    """Pay the sitter out of escrow."""
    booking = await engine.release_payment(
        actor,
        booking_id,
        force=body.force if body else False,
        request_id=request_id,
    )
    return BookingResponse.model_validate(booking)


@router.post("/{booking_id}/refund", response_model=BookingResponse)
async def refund_payment(
    booking_id: UUID,
    body: RefundPaymentRequest,
    actor: CurrentActor,
    engine: Engine,
    request_id: RequestId,
) -> BookingResponse:
    """Refund the held payment and cancel the booking."""
    booking = await engine.refund_payment(actor, booking_id, body.reason, request_id=request_id)
    return BookingResponse.model_validate(booking)


@router.post("/{booking_id}/dispute", response_model=BookingResponse)
async def open_dispute(
    booking_id: UUID,
    body: DisputeCreate,
    actor: CurrentActor,
    engine: Engine,
    request_id: RequestId,
) -> BookingResponse:
    """Owner reports a problem with a completed service."""
    booking = await engine.open_dispute(actor, booking_id, body.reason, request_id=request_id)
    return BookingResponse.model_validate(booking)


@router.post("/{booking_id}/dispute/resolve", response_model=BookingResponse)
async def resolve_dispute(
    booking_id: UUID,
    body: DisputeResolveRequest,
    admin: CurrentAdmin,
    engine: Engine,
    request_id: RequestId,
) -> BookingResponse:
    """Settle a dispute by releasing to the sitter or refunding the owner (admin only)."""
    booking = await engine.resolve_dispute(
        admin,
        booking_id,
        body.resolution,
        note=body.note,
        request_id=request_id,
    )
    return BookingResponse.model_validate(booking)
