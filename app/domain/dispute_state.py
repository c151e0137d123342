"""Dispute rules for completed bookings.

An owner may dispute a completed booking while the payment is still held.
An open dispute blocks the automatic release until an admin resolves it by
releasing to the sitter or refunding the owner.
"""

from enum import Enum

from app.domain.payment_state import PaymentStatus


class DisputeResolution(str, Enum):
    """Outcome chosen by the admin resolving a dispute."""

    RELEASE = "release"
    REFUND = "refund"


def can_open_dispute(booking) -> tuple[bool, str | None]:
    """Check if the owner can dispute the booking."""
    if booking.status != "completed":
        return False, "Only completed bookings can be disputed"
    if booking.payment_status != PaymentStatus.HELD:
        return False, "Only bookings with a held payment can be disputed"
    if booking.disputed_at is not None and booking.dispute_resolved_at is None:
        return False, "Booking is already under dispute"
    if booking.dispute_resolved_at is not None:
        return False, "Dispute has already been resolved"
    return True, None


def can_resolve_dispute(booking) -> tuple[bool, str | None]:
    """Check if an open dispute exists to resolve."""
    if booking.disputed_at is None:
        return False, "Booking is not under dispute"
    if booking.dispute_resolved_at is not None:
        return False, "Dispute is already resolved"
    return True, None


def is_dispute_open(booking) -> bool:
    return booking.disputed_at is not None and booking.dispute_resolved_at is None
