"""Manual payment gateway adapter.

Used in development and for operator-settled bookings: every call succeeds
and money is moved by an operator outside the platform.
"""

from app.gateways.base import GatewayResult, GatewayType, PaymentGateway


class ManualGateway(PaymentGateway):
    """Manual payment gateway.

    Transaction ids are derived from the idempotency key, so a repeated
    call returns the same id.
    """

    @property
    def gateway_type(self) -> GatewayType:
        return GatewayType.MANUAL

    @staticmethod
    def _transaction_id(kind: str, idempotency_key: str) -> str:
        return f"manual_{kind}_{idempotency_key[:24]}"

    async def capture(
        self,
        amount: int,
        currency: str,
        reference_id: str,
        idempotency_key: str,
        payment_method_id: str | None = None,
        metadata: dict | None = None,
    ) -> GatewayResult:
        """Record a manual capture (always succeeds)."""
        return GatewayResult(
            success=True,
            transaction_id=self._transaction_id("capture", idempotency_key),
            raw_response={
                "type": "manual_capture",
                "reference_id": reference_id,
                "amount": amount,
                "currency": currency,
            },
        )

    async def lookup_capture(self, idempotency_key: str) -> GatewayResult:
        """Manual captures never fail, so any earlier attempt went through."""
        return GatewayResult(
            success=True,
            transaction_id=self._transaction_id("capture", idempotency_key),
        )

    async def payout(
        self,
        amount: int,
        currency: str,
        destination: str | None,
        reference_id: str,
        idempotency_key: str,
    ) -> GatewayResult:
        """Record a manual payout (admin sends the bank transfer)."""
        return GatewayResult(
            success=True,
            transaction_id=self._transaction_id("payout", idempotency_key),
            raw_response={
                "type": "manual_payout",
                "status": "pending",
                "note": "Admin must send the payout manually via bank transfer",
                "amount": amount,
                "destination": destination,
            },
        )

    async def refund(
        self,
        transaction_id: str | None,
        amount: int,
        reason: str,
        idempotency_key: str,
    ) -> GatewayResult:
        """Record a manual refund (admin returns the money)."""
        return GatewayResult(
            success=True,
            transaction_id=self._transaction_id("refund", idempotency_key),
            raw_response={
                "type": "manual_refund",
                "status": "pending",
                "note": "Admin must process refund manually via bank transfer",
                "amount": amount,
                "reason": reason,
            },
        )
