"""Stripe payment gateway adapter.

Charges are captured on the platform account and paid out to the sitter's
Connect account with a separate transfer once the hold window ends.
"""

import asyncio
import logging

import stripe

from app.config import settings
from app.gateways.base import GatewayResult, GatewayType, PaymentGateway

logger = logging.getLogger(__name__)

# Refund states that mean the money is on its way back
REFUND_OK_STATES = {"succeeded", "pending"}


def _result_from_error(e: stripe.StripeError) -> GatewayResult:
    """Map a Stripe exception to a gateway result.

    Card declines and other 4xx responses are terminal; connection errors,
    rate limits and 5xx responses may succeed on a retry with the same key.
    """
    message = getattr(e, "user_message", None) or str(e)
    if isinstance(e, stripe.CardError):
        return GatewayResult.failed(message, retryable=False)
    if isinstance(e, (stripe.APIConnectionError, stripe.RateLimitError)):
        return GatewayResult.failed(message, retryable=True)
    status = getattr(e, "http_status", None)
    return GatewayResult.failed(message, retryable=status is None or status >= 500)


class StripeGateway(PaymentGateway):
    """Stripe payment gateway implementation."""

    def __init__(self, secret_key: str | None = None):
        self.secret_key = secret_key or settings.stripe_secret_key

    @property
    def gateway_type(self) -> GatewayType:
        return GatewayType.STRIPE

    async def capture(
        self,
        amount: int,
        currency: str,
        reference_id: str,
        idempotency_key: str,
        payment_method_id: str | None = None,
        metadata: dict | None = None,
    ) -> GatewayResult:
        """Create and confirm a Stripe PaymentIntent."""
        if not self.secret_key:
            return GatewayResult.failed("Stripe not configured")
        if not payment_method_id:
            return GatewayResult.failed("A payment method is required to authorize the payment")

        try:
            intent = await asyncio.to_thread(
                stripe.PaymentIntent.create,
                api_key=self.secret_key,
                amount=amount,
                currency=currency.lower(),
                payment_method=payment_method_id,
                confirm=True,
                automatic_payment_methods={"enabled": True, "allow_redirects": "never"},
                transfer_group=reference_id,
                metadata={
                    "booking_id": reference_id,
                    "capture_key": idempotency_key,
                    **(metadata or {}),
                },
                idempotency_key=idempotency_key,
            )
        except stripe.StripeError as e:
            logger.warning("Stripe capture failed for booking %s: %s", reference_id, e)
            return _result_from_error(e)

        return self.result_from_intent(intent)

    async def lookup_capture(self, idempotency_key: str) -> GatewayResult:
        """Search for the PaymentIntent tagged with this capture key."""
        if not self.secret_key:
            return GatewayResult.failed("Stripe not configured", retryable=True)

        try:
            found = await asyncio.to_thread(
                stripe.PaymentIntent.search,
                api_key=self.secret_key,
                query=f"metadata['capture_key']:'{idempotency_key}'",
                limit=1,
            )
        except stripe.StripeError as e:
            return _result_from_error(e)

        if not found.data:
            return GatewayResult.failed("No payment found for this capture", retryable=False)
        return self.result_from_intent(found.data[0])

    async def payout(
        self,
        amount: int,
        currency: str,
        destination: str | None,
        reference_id: str,
        idempotency_key: str,
    ) -> GatewayResult:
        """Transfer the sitter's share to their Connect account."""
        if not self.secret_key:
            return GatewayResult.failed("Stripe not configured")
        if not destination:
            return GatewayResult.failed("Sitter has not completed payout setup")

        try:
            transfer = await asyncio.to_thread(
                stripe.Transfer.create,
                api_key=self.secret_key,
                amount=amount,
                currency=currency.lower(),
                destination=destination,
                transfer_group=reference_id,
                metadata={"booking_id": reference_id},
                idempotency_key=idempotency_key,
            )
        except stripe.StripeError as e:
            logger.warning("Stripe transfer failed for booking %s: %s", reference_id, e)
            return _result_from_error(e)

        return GatewayResult(
            success=True,
            transaction_id=transfer.id,
            raw_response={"id": transfer.id, "amount": transfer.amount},
        )

    async def refund(
        self,
        transaction_id: str | None,
        amount: int,
        reason: str,
        idempotency_key: str,
    ) -> GatewayResult:
        """Refund the captured PaymentIntent."""
        if not self.secret_key:
            return GatewayResult.failed("Stripe not configured")
        if not transaction_id:
            return GatewayResult.failed("No captured payment to refund")

        try:
            refund = await asyncio.to_thread(
                stripe.Refund.create,
                api_key=self.secret_key,
                payment_intent=transaction_id,
                amount=amount,
                reason="requested_by_customer",
                metadata={"reason": reason[:500]},
                idempotency_key=idempotency_key,
            )
        except stripe.StripeError as e:
            logger.warning("Stripe refund failed for %s: %s", transaction_id, e)
            return _result_from_error(e)

        if refund.status not in REFUND_OK_STATES:
            return GatewayResult.failed(
                f"Refund ended in status {refund.status}",
                raw_response={"status": refund.status, "id": refund.id},
            )
        return GatewayResult(
            success=True,
            transaction_id=refund.id,
            raw_response={"status": refund.status, "id": refund.id},
        )

    @staticmethod
    def result_from_intent(intent) -> GatewayResult:
        raw = {"id": intent.id, "status": intent.status}
        if intent.status == "succeeded":
            return GatewayResult(success=True, transaction_id=intent.id, raw_response=raw)
        if intent.status == "processing":
            return GatewayResult.failed("Payment is still processing", retryable=True, raw_response=raw)
        if intent.status == "requires_action":
            return GatewayResult.failed(
                "Payment requires customer authentication", raw_response=raw
            )
        return GatewayResult.failed(f"Payment ended in status {intent.status}", raw_response=raw)
