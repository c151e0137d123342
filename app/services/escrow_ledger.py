"""Escrow ledger.

Owns the payment axis of a booking: capture into escrow, payout to the
sitter and refund to the owner. Every method works on a booking the caller
has already locked; the ledger mutates it and talks to the gateway but never
commits. Committing, auditing and notifying is the state machine's job.
"""

import logging
from datetime import datetime, timedelta

from app.config import settings
from app.core.exceptions import (
    AlreadyRefunded,
    AlreadyReleased,
    GatewayError,
    RefundFailed,
    WrongPaymentState,
)
from app.core.idempotency import gateway_idempotency_key
from app.domain.booking_state import BookingStatus
from app.domain.payment_state import PaymentStatus, assert_payment_transition
from app.gateways.base import GatewayResult
from app.models.booking import Booking
from app.services.gateway_service import GatewayService

logger = logging.getLogger(__name__)


class EscrowLedger:
    """Payment-axis mutations for a single locked booking."""

    def __init__(self, gateway: GatewayService, hold_days: int | None = None):
        self.gateway = gateway
        self.hold_days = settings.payment_hold_days if hold_days is None else hold_days

    # Idempotency keys: the attempt number only moves after a terminal failure

    @staticmethod
    def capture_key(booking: Booking) -> str:
        return gateway_idempotency_key("capture", booking.id, booking.capture_attempts)

    @staticmethod
    def payout_key(booking: Booking) -> str:
        return gateway_idempotency_key("payout", booking.id, booking.payout_attempts)

    @staticmethod
    def refund_key(booking: Booking) -> str:
        return gateway_idempotency_key("refund", booking.id, booking.refund_attempts)

    def _move(self, booking: Booking, target: PaymentStatus) -> None:
        assert_payment_transition(PaymentStatus(booking.payment_status), target)
        booking.payment_status = target

    # Capture

    def begin_capture(self, booking: Booking, now: datetime) -> None:
        """Mark the capture as in flight (none → pending)."""
        if booking.status != BookingStatus.CONFIRMED:
            raise WrongPaymentState("Payment can only be authorized for a confirmed booking")
        if booking.payment_status == PaymentStatus.PENDING:
            return
        if booking.payment_status != PaymentStatus.NONE:
            raise WrongPaymentState(
                f"Cannot authorize payment - payment status is {PaymentStatus(booking.payment_status).value}"
            )
        self._move(booking, PaymentStatus.PENDING)
        booking.capture_requested_at = now

    async def capture(self, booking: Booking, payment_method_id: str | None = None) -> GatewayResult:
        """Call the gateway for a pending capture.

        Must run without an open database transaction; the caller applies
        the result afterwards with :meth:`apply_capture_result`.
        """
        if booking.total_price == 0:
            return GatewayResult(success=True)
        return await self.gateway.capture(
            amount=booking.total_price,
            currency=booking.currency,
            reference_id=str(booking.id),
            idempotency_key=self.capture_key(booking),
            payment_method_id=payment_method_id,
            metadata={"owner_id": str(booking.owner_id), "sitter_id": str(booking.sitter_id)},
        )

    def apply_capture_result(self, booking: Booking, result: GatewayResult) -> bool:
        """Resolve a pending capture from a gateway result.

        Returns:
            True if the booking changed (held or back to none), False if the
            outcome is still unknown and the capture stays pending
        """
        if result.success:
            self._move(booking, PaymentStatus.HELD)
            booking.gateway_payment_id = result.transaction_id
            return True
        if result.retryable:
            return False
        self._move(booking, PaymentStatus.NONE)
        booking.capture_attempts += 1
        booking.capture_requested_at = None
        return True

    # Hold window

    def start_hold_window(self, booking: Booking, now: datetime) -> None:
        """Record completion confirmation and when the payout becomes due."""
        booking.completion_confirmed_at = now
        booking.eligible_for_release_at = now + timedelta(days=self.hold_days)

    def is_release_due(self, booking: Booking, now: datetime) -> bool:
        return booking.eligible_for_release_at is not None and now >= booking.eligible_for_release_at

    # Release

    @staticmethod
    def assert_releasable(booking: Booking) -> None:
        """Raises AlreadyReleased or WrongPaymentState unless the payment is held."""
        if booking.payment_status == PaymentStatus.RELEASED:
            raise AlreadyReleased(str(booking.id))
        if booking.payment_status != PaymentStatus.HELD:
            raise WrongPaymentState(
                f"Cannot release payment - payment status is {PaymentStatus(booking.payment_status).value}"
            )

    async def release(self, booking: Booking, now: datetime) -> None:
        """Pay the sitter's share out of escrow (held → released).

        Eligibility is the caller's decision; this only checks the payment
        state and moves the money.

        Raises:
            AlreadyReleased: If the payout already happened
            WrongPaymentState: If nothing is held
            GatewayError: If the payout failed
        """
        self.assert_releasable(booking)

        amount = booking.payout_amount
        if amount > 0:
            result = await self.gateway.payout(
                amount=amount,
                currency=booking.currency,
                destination=booking.sitter_payout_account,
                reference_id=str(booking.id),
                idempotency_key=self.payout_key(booking),
            )
            if not result.success:
                logger.warning(
                    "Payout failed for booking %s (retryable=%s): %s",
                    booking.id,
                    result.retryable,
                    result.error_message,
                )
                raise GatewayError(
                    result.error_message or "Payout failed", retryable=result.retryable
                )
            booking.gateway_payout_id = result.transaction_id

        self._move(booking, PaymentStatus.RELEASED)
        booking.payment_released_at = now
        booking.next_release_attempt_at = None

    # Refund

    @staticmethod
    def assert_refundable(booking: Booking) -> None:
        """Raises AlreadyRefunded or WrongPaymentState unless the payment is held."""
        if booking.payment_status == PaymentStatus.REFUNDED:
            raise AlreadyRefunded(str(booking.id))
        if booking.payment_status != PaymentStatus.HELD:
            raise WrongPaymentState(
                f"Cannot refund payment - payment status is {PaymentStatus(booking.payment_status).value}"
            )

    async def refund(self, booking: Booking, reason: str, now: datetime) -> None:
        """Return the full price to the owner (held → refunded).

        Raises:
            AlreadyRefunded: If the refund already happened
            WrongPaymentState: If nothing is held
            RefundFailed: If the gateway refund failed
        """
        self.assert_refundable(booking)

        if booking.total_price > 0:
            result = await self.gateway.refund(
                transaction_id=booking.gateway_payment_id,
                amount=booking.total_price,
                reason=reason,
                idempotency_key=self.refund_key(booking),
            )
            if not result.success:
                logger.warning(
                    "Refund failed for booking %s (retryable=%s): %s",
                    booking.id,
                    result.retryable,
                    result.error_message,
                )
                raise RefundFailed(
                    result.error_message or "Refund failed", retryable=result.retryable
                )
            booking.gateway_refund_id = result.transaction_id

        self._move(booking, PaymentStatus.REFUNDED)
        booking.refunded_at = now
        booking.refund_reason = reason
