"""Payment state machine.

States: none → pending → held → released, held → refunded, and
pending → none when a capture fails or turns out never to have happened.
"""

from enum import Enum

from app.core.exceptions import WrongPaymentState


class PaymentStatus(str, Enum):
    """Escrow status of the booking's payment."""

    NONE = "none"
    PENDING = "pending"
    HELD = "held"
    RELEASED = "released"
    REFUNDED = "refunded"


PAYMENT_TRANSITIONS: dict[PaymentStatus, set[PaymentStatus]] = {
    PaymentStatus.NONE: {PaymentStatus.PENDING},
    PaymentStatus.PENDING: {PaymentStatus.HELD, PaymentStatus.NONE},
    PaymentStatus.HELD: {PaymentStatus.RELEASED, PaymentStatus.REFUNDED},
    PaymentStatus.RELEASED: set(),  # Terminal
    PaymentStatus.REFUNDED: set(),  # Terminal
}


def assert_payment_transition(current: PaymentStatus, target: PaymentStatus) -> None:
    """Validate payment state transition.

    Raises:
        WrongPaymentState: If transition is not allowed
    """
    allowed = PAYMENT_TRANSITIONS.get(current, set())
    if target not in allowed:
        raise WrongPaymentState(
            f"Invalid payment transition: {current.value} → {target.value}"
        )


def can_release_payment(booking_status: str, payment_status: str) -> tuple[bool, str | None]:
    """Check if the held payment can be paid out based on booking/payment state.

    Returns:
        Tuple of (can_release, error_message)
    """
    payment_status = PaymentStatus(payment_status)
    booking_status = getattr(booking_status, "value", booking_status)

    if payment_status == PaymentStatus.RELEASED:
        return False, "Payment has already been released"

    if payment_status != PaymentStatus.HELD:
        return False, f"Cannot release payment - payment status is {payment_status.value}"

    if booking_status != "completed":
        return False, f"Cannot release payment - booking status is {booking_status}"

    return True, None
