"""Base payment gateway interface.

All gateway adapters must implement this interface.
Business logic should NOT live in adapters - only gateway communication.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum


class GatewayType(str, Enum):
    """Supported payment gateways."""

    STRIPE = "stripe"
    MANUAL = "manual"


@dataclass
class GatewayResult:
    """Result of a capture, payout or refund call.

    ``retryable`` marks failures whose outcome may still change (timeouts,
    rate limits, processor 5xx). They are retried with the same
    idempotency key; terminal failures are not.
    """

    success: bool
    transaction_id: str | None = None
    error_message: str | None = None
    retryable: bool = False
    raw_response: dict | None = None

    @classmethod
    def failed(cls, message: str, retryable: bool = False, raw_response: dict | None = None) -> "GatewayResult":
        return cls(success=False, error_message=message, retryable=retryable, raw_response=raw_response)


class PaymentGateway(ABC):
    """Abstract base class for payment gateways."""

    @property
    @abstractmethod
    def gateway_type(self) -> GatewayType:
        """Return the gateway type."""
        pass

    @abstractmethod
    async def capture(
        self,
        amount: int,
        currency: str,
        reference_id: str,
        idempotency_key: str,
        payment_method_id: str | None = None,
        metadata: dict | None = None,
    ) -> GatewayResult:
        """Charge the owner and hold the funds on the platform account.

        Args:
            amount: Amount in smallest currency unit
            currency: ISO currency code
            reference_id: Internal reference (booking id)
            idempotency_key: Key the processor deduplicates on
            payment_method_id: Processor payment method to charge
            metadata: Additional metadata

        Returns:
            GatewayResult with the processor payment id
        """
        pass

    @abstractmethod
    async def lookup_capture(self, idempotency_key: str) -> GatewayResult:
        """Find the outcome of an earlier capture sent with this key.

        Returns:
            success=True with the payment id if the capture went through,
            a terminal failure if no such capture exists, or a retryable
            failure if the processor cannot tell yet
        """
        pass

    @abstractmethod
    async def payout(
        self,
        amount: int,
        currency: str,
        destination: str | None,
        reference_id: str,
        idempotency_key: str,
    ) -> GatewayResult:
        """Transfer held funds to the sitter's payout account.

        Args:
            amount: Amount in smallest currency unit
            currency: ISO currency code
            destination: Processor account of the sitter
            reference_id: Internal reference (booking id)
            idempotency_key: Key the processor deduplicates on

        Returns:
            GatewayResult with the processor transfer id
        """
        pass

    @abstractmethod
    async def refund(
        self,
        transaction_id: str | None,
        amount: int,
        reason: str,
        idempotency_key: str,
    ) -> GatewayResult:
        """Return captured funds to the owner.

        Args:
            transaction_id: Original capture transaction ID
            amount: Refund amount in smallest currency unit
            reason: Refund reason
            idempotency_key: Key the processor deduplicates on

        Returns:
            GatewayResult with the processor refund id
        """
        pass
