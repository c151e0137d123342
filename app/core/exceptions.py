"""Custom application exceptions."""

from typing import Any

from fastapi import HTTPException, status


class AppException(HTTPException):
    """Base application exception."""

    code = "internal_error"

    def __init__(
        self,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail: str = "An unexpected error occurred",
        headers: dict[str, str] | None = None,
    ) -> None:
        super().__init__(status_code=status_code, detail=detail, headers=headers)


class ValidationError(AppException):
    """Validation error exception."""

    code = "validation_error"

    def __init__(self, detail: str = "Validation failed", errors: list[dict[str, Any]] | None = None) -> None:
        self.errors = errors
        super().__init__(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=detail)


class NotFoundError(AppException):
    """Resource not found exception."""

    code = "not_found"

    def __init__(self, resource: str = "Resource", identifier: str | None = None) -> None:
        detail = f"{resource} not found"
        if identifier:
            detail = f"{resource} with ID '{identifier}' not found"
        super().__init__(status_code=status.HTTP_404_NOT_FOUND, detail=detail)


class AuthenticationError(AppException):
    """Authentication failed exception."""

    code = "authentication_failed"

    def __init__(self, detail: str = "Authentication failed") -> None:
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=detail,
            headers={"WWW-Authenticate": "Bearer"},
        )


class Unauthorized(AppException):
    """Actor is not a party to the booking or lacks the required role."""

    code = "unauthorized"

    def __init__(self, detail: str = "You are not allowed to perform this action on this booking") -> None:
        super().__init__(status_code=status.HTTP_403_FORBIDDEN, detail=detail)


class InvalidTransition(AppException):
    """Requested status change is not reachable from the current state."""

    code = "invalid_transition"

    def __init__(self, detail: str = "This transition is not allowed for the current booking status") -> None:
        super().__init__(status_code=status.HTTP_409_CONFLICT, detail=detail)


class StaleTransition(InvalidTransition):
    """Caller's expected status no longer matches the persisted status."""

    code = "stale_transition"

    def __init__(self, expected: str, actual: str) -> None:
        self.expected = expected
        self.actual = actual
        super().__init__(f"Booking status is '{actual}', expected '{expected}'")


class WrongPaymentState(AppException):
    """Operation requires a payment state the booking is not in."""

    code = "wrong_payment_state"

    def __init__(self, detail: str = "This operation is not allowed for the current payment status") -> None:
        super().__init__(status_code=status.HTTP_409_CONFLICT, detail=detail)


class NotEligibleForRelease(AppException):
    """Hold window has not elapsed and release was not forced by the owner."""

    code = "not_eligible_for_release"

    def __init__(self, detail: str = "Payment is not yet eligible for release") -> None:
        super().__init__(status_code=status.HTTP_409_CONFLICT, detail=detail)


class ConcurrentUpdate(AppException):
    """Booking row changed underneath the current transaction."""

    code = "concurrent_update"

    def __init__(self, booking_id: str) -> None:
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Booking {booking_id} was modified concurrently, please retry",
        )


class GatewayError(AppException):
    """Capture, refund or payout call failed at the payment processor."""

    code = "gateway_error"

    def __init__(self, detail: str = "Payment processing failed", retryable: bool = False) -> None:
        self.retryable = retryable
        if retryable:
            super().__init__(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail=detail,
                headers={"Retry-After": "30"},
            )
        else:
            super().__init__(status_code=status.HTTP_502_BAD_GATEWAY, detail=detail)


class RefundFailed(GatewayError):
    """Refund failed, so the cancellation was not committed."""

    code = "refund_failed"


class AlreadyReleased(Exception):
    """Internal signal: payment was already released (idempotent no-op)."""


class AlreadyRefunded(Exception):
    """Internal signal: payment was already refunded (idempotent no-op)."""


class RateLimitExceeded(AppException):
    """Rate limit exceeded exception."""

    code = "rate_limited"

    def __init__(self, detail: str = "Too many requests. Please try again later.") -> None:
        super().__init__(status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail=detail)
