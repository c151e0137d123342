"""Core utilities and security modules."""

from app.core.exceptions import (
    AlreadyRefunded,
    AlreadyReleased,
    AppException,
    AuthenticationError,
    ConcurrentUpdate,
    GatewayError,
    InvalidTransition,
    NotEligibleForRelease,
    NotFoundError,
    RefundFailed,
    StaleTransition,
    Unauthorized,
    ValidationError,
    WrongPaymentState,
)
from app.core.security import decode_access_token

__all__ = [
    "AlreadyRefunded",
    "AlreadyReleased",
    "AppException",
    "AuthenticationError",
    "ConcurrentUpdate",
    "GatewayError",
    "InvalidTransition",
    "NotEligibleForRelease",
    "NotFoundError",
    "RefundFailed",
    "StaleTransition",
    "Unauthorized",
    "ValidationError",
    "WrongPaymentState",
    "decode_access_token",
]
