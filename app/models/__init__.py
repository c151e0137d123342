"""Database models."""

from app.models.booking import Booking, BookingTransition

__all__ = [
    "Booking",
    "BookingTransition",
]
