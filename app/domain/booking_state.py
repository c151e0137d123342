"""Booking state machine.

States: requested → confirmed → in_progress → completed, with cancelled
reachable from every non-terminal state. Who may move a booking along an
edge is part of the table, so callers never branch on roles themselves.
"""

from dataclasses import dataclass
from enum import Enum
from uuid import UUID

from app.core.exceptions import InvalidTransition, Unauthorized, ValidationError
from app.domain.payment_state import PaymentStatus


class BookingStatus(str, Enum):
    """Lifecycle status of a booking."""

    REQUESTED = "requested"
    CONFIRMED = "confirmed"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class ServiceType(str, Enum):
    WALK = "walk"
    CARE = "care"
    BOARDING = "boarding"


class ActorRole(str, Enum):
    """Role an actor plays relative to one booking."""

    OWNER = "owner"
    SITTER = "sitter"
    ADMIN = "admin"
    SCHEDULER = "scheduler"


@dataclass(frozen=True)
class Actor:
    """Identity performing an operation.

    ``user_id`` is None only for the scheduler. Admin rights apply only
    when the actor is not a party to the booking.
    """

    user_id: UUID | None
    is_admin: bool = False
    is_scheduler: bool = False

    @classmethod
    def scheduler(cls) -> "Actor":
        return cls(user_id=None, is_scheduler=True)

    def role_for(self, owner_id: UUID, sitter_id: UUID) -> ActorRole | None:
        if self.is_scheduler:
            return ActorRole.SCHEDULER
        if self.user_id is not None and self.user_id == owner_id:
            return ActorRole.OWNER
        if self.user_id is not None and self.user_id == sitter_id:
            return ActorRole.SITTER
        if self.is_admin:
            return ActorRole.ADMIN
        return None


S = BookingStatus
R = ActorRole

# (from, to) -> roles allowed to apply the edge
BOOKING_TRANSITIONS: dict[tuple[BookingStatus, BookingStatus], frozenset[ActorRole]] = {
    (S.REQUESTED, S.CONFIRMED): frozenset({R.SITTER}),
    (S.REQUESTED, S.CANCELLED): frozenset({R.OWNER, R.SITTER, R.ADMIN}),
    (S.CONFIRMED, S.IN_PROGRESS): frozenset({R.SITTER, R.SCHEDULER}),
    (S.CONFIRMED, S.COMPLETED): frozenset({R.SITTER}),
    (S.CONFIRMED, S.CANCELLED): frozenset({R.OWNER, R.ADMIN}),
    (S.IN_PROGRESS, S.COMPLETED): frozenset({R.SITTER}),
    (S.IN_PROGRESS, S.CANCELLED): frozenset({R.OWNER, R.ADMIN}),
    # Dispute resolution only, refund first
    (S.COMPLETED, S.CANCELLED): frozenset({R.ADMIN}),
}

# Completion confirmation keeps the status at completed
CONFIRM_COMPLETION_ROLES = frozenset({R.OWNER, R.SCHEDULER})

# Edges that need the payment already held
REQUIRES_HELD_PAYMENT = {
    (S.CONFIRMED, S.IN_PROGRESS),
    (S.CONFIRMED, S.COMPLETED),
    (S.IN_PROGRESS, S.COMPLETED),
}

TERMINAL_STATUSES = frozenset({S.CANCELLED})

# Status x payment combinations a booking may be persisted in
ALLOWED_COMBINATIONS: dict[BookingStatus, frozenset[PaymentStatus]] = {
    S.REQUESTED: frozenset({PaymentStatus.NONE}),
    S.CONFIRMED: frozenset({PaymentStatus.NONE, PaymentStatus.PENDING, PaymentStatus.HELD}),
    S.IN_PROGRESS: frozenset({PaymentStatus.HELD}),
    S.COMPLETED: frozenset({PaymentStatus.HELD, PaymentStatus.RELEASED}),
    S.CANCELLED: frozenset({PaymentStatus.NONE, PaymentStatus.REFUNDED}),
}


def allowed_targets(current: BookingStatus) -> set[BookingStatus]:
    return {to for (frm, to) in BOOKING_TRANSITIONS if frm == current}


def assert_booking_transition(
    current: BookingStatus,
    target: BookingStatus,
    role: ActorRole | None,
) -> None:
    """Validate a status change for the given role.

    Raises:
        Unauthorized: If the actor is not a party or lacks the role for the edge
        InvalidTransition: If the edge is not in the table
    """
    if role is None:
        raise Unauthorized()
    roles = BOOKING_TRANSITIONS.get((current, target))
    if roles is None:
        raise InvalidTransition(
            f"Invalid booking transition: {current.value} → {target.value}"
        )
    if role not in roles:
        raise Unauthorized(
            f"Role '{role.value}' cannot move a booking from {current.value} to {target.value}"
        )


def assert_consistent_state(booking) -> None:
    """Check the cross-field invariants of a booking before it is committed."""
    status = BookingStatus(booking.status)
    payment_status = PaymentStatus(booking.payment_status)

    if payment_status not in ALLOWED_COMBINATIONS[status]:
        raise ValidationError(
            f"Inconsistent booking state: {status.value}/{payment_status.value}"
        )
    if (payment_status == PaymentStatus.RELEASED) != (booking.payment_released_at is not None):
        raise ValidationError("payment_released_at must be set exactly when payment is released")
    if (booking.completion_confirmed_at is None) != (booking.eligible_for_release_at is None):
        raise ValidationError(
            "eligible_for_release_at must be set exactly when completion is confirmed"
        )
    if booking.completion_confirmed_at is not None and booking.completed_at is None:
        raise ValidationError("Completion cannot be confirmed before the service is completed")
    if not 0 <= booking.commission_fee <= booking.total_price:
        raise ValidationError("commission_fee must be between 0 and total_price")
