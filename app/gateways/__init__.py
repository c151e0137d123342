"""Payment gateway adapters."""

from app.gateways.base import GatewayResult, GatewayType, PaymentGateway
from app.gateways.manual import ManualGateway
from app.gateways.stripe_gateway import StripeGateway

__all__ = [
    "GatewayResult",
    "GatewayType",
    "ManualGateway",
    "PaymentGateway",
    "StripeGateway",
]
