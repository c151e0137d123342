"""Payment gateway service.

Routes capture, payout and refund calls to the configured gateway adapter
and bounds each call with a timeout. No business logic here - only gateway
coordination.
"""

import asyncio
import logging
from collections.abc import Awaitable

from app.config import settings
from app.gateways.base import GatewayResult, GatewayType, PaymentGateway
from app.gateways.manual import ManualGateway
from app.gateways.stripe_gateway import StripeGateway

logger = logging.getLogger(__name__)


def _is_production() -> bool:
    """Check if running in production environment."""
    return settings.environment == "production"


def _assert_production_for_real_gateway(gateway: PaymentGateway) -> None:
    """Block live-mode gateway operations in non-production environments.

    Raises:
        RuntimeError: If a live Stripe key is used outside production
    """
    if gateway.gateway_type != GatewayType.STRIPE or _is_production():
        return
    secret_key = getattr(gateway, "secret_key", None) or ""
    if secret_key.startswith("sk_live_"):
        raise RuntimeError(
            f"Cannot execute live stripe gateway operations in {settings.environment} "
            "environment. Set ENVIRONMENT=production or use a test mode key."
        )


def build_gateway(gateway_type: str | GatewayType | None = None) -> PaymentGateway:
    """Create the adapter for a gateway type (defaults to settings)."""
    gateway_type = gateway_type or settings.payment_gateway
    if isinstance(gateway_type, str):
        try:
            gateway_type = GatewayType(gateway_type)
        except ValueError:
            gateway_type = GatewayType.MANUAL

    if gateway_type == GatewayType.STRIPE:
        return StripeGateway()
    return ManualGateway()


class GatewayService:
    """Service for managing payment gateway operations."""

    def __init__(
        self,
        gateway: PaymentGateway | None = None,
        timeout_seconds: float | None = None,
    ):
        self._gateway = gateway
        self.timeout_seconds = timeout_seconds or settings.gateway_timeout_seconds

    @property
    def gateway(self) -> PaymentGateway:
        if self._gateway is None:
            self._gateway = build_gateway()
        return self._gateway

    async def _call(self, operation: str, call: Awaitable[GatewayResult]) -> GatewayResult:
        """Await a gateway call, turning timeouts into retryable failures.

        A timed-out call may still have reached the processor, so the caller
        must retry with the same idempotency key.
        """
        try:
            return await asyncio.wait_for(call, timeout=self.timeout_seconds)
        except TimeoutError:
            logger.warning(
                "%s gateway %s timed out after %.1fs",
                self.gateway.gateway_type.value,
                operation,
                self.timeout_seconds,
            )
            return GatewayResult.failed(
                f"Gateway {operation} timed out; outcome unknown", retryable=True
            )

    async def capture(
        self,
        amount: int,
        currency: str,
        reference_id: str,
        idempotency_key: str,
        payment_method_id: str | None = None,
        metadata: dict | None = None,
    ) -> GatewayResult:
        """Capture and hold the owner's payment."""
        gateway = self.gateway
        # Environment safety: block live gateway in non-production
        _assert_production_for_real_gateway(gateway)
        return await self._call(
            "capture",
            gateway.capture(
                amount=amount,
                currency=currency,
                reference_id=reference_id,
                idempotency_key=idempotency_key,
                payment_method_id=payment_method_id,
                metadata=metadata,
            ),
        )

    async def lookup_capture(self, idempotency_key: str) -> GatewayResult:
        """Look up the outcome of an earlier capture attempt."""
        return await self._call("lookup", self.gateway.lookup_capture(idempotency_key))

    async def payout(
        self,
        amount: int,
        currency: str,
        destination: str | None,
        reference_id: str,
        idempotency_key: str,
    ) -> GatewayResult:
        """Pay the sitter's share out of escrow."""
        gateway = self.gateway
        _assert_production_for_real_gateway(gateway)
        return await self._call(
            "payout",
            gateway.payout(
                amount=amount,
                currency=currency,
                destination=destination,
                reference_id=reference_id,
                idempotency_key=idempotency_key,
            ),
        )

    async def refund(
        self,
        transaction_id: str | None,
        amount: int,
        reason: str,
        idempotency_key: str,
    ) -> GatewayResult:
        """Refund a held payment to the owner."""
        gateway = self.gateway
        _assert_production_for_real_gateway(gateway)
        return await self._call(
            "refund",
            gateway.refund(
                transaction_id=transaction_id,
                amount=amount,
                reason=reason,
                idempotency_key=idempotency_key,
            ),
        )


# Singleton instance
gateway_service = GatewayService()
