"""Notification Service for booking lifecycle events.

The state machine hands a ``TransitionEvent`` to an emitter after every
committed transition. The default emitter queues a Celery task that writes
in-app notification rows through the managed backend's REST API. Delivery
problems are logged and never undo the transition.
"""

import asyncio
import logging
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Protocol
from uuid import UUID

import httpx

from app.config import settings

logger = logging.getLogger(__name__)


class NotificationKind(str, Enum):
    """Notification types."""

    BOOKING_REQUESTED = "booking_requested"
    BOOKING_CONFIRMED = "booking_confirmed"
    BOOKING_CANCELLED = "booking_cancelled"
    PAYMENT_HELD = "payment_held"
    SERVICE_STARTED = "service_started"
    SERVICE_COMPLETED = "service_completed"
    COMPLETION_CONFIRMED = "completion_confirmed"
    COMPLETION_REMINDER = "completion_reminder"
    PAYMENT_RELEASED = "payment_released"
    PAYMENT_REFUNDED = "payment_refunded"
    DISPUTE_OPENED = "dispute_opened"
    DISPUTE_RESOLVED = "dispute_resolved"


MESSAGES: dict[NotificationKind, tuple[str, str]] = {
    NotificationKind.BOOKING_REQUESTED: (
        "New booking request",
        "You have a new booking request waiting for your answer.",
    ),
    NotificationKind.BOOKING_CONFIRMED: (
        "Booking accepted",
        "Your booking was accepted. Authorize the payment to secure it.",
    ),
    NotificationKind.BOOKING_CANCELLED: (
        "Booking cancelled",
        "A booking has been cancelled.",
    ),
    NotificationKind.PAYMENT_HELD: (
        "Payment secured",
        "The payment for your booking is held safely until the service is done.",
    ),
    NotificationKind.SERVICE_STARTED: (
        "Service started",
        "The service for your booking has started.",
    ),
    NotificationKind.SERVICE_COMPLETED: (
        "Service completed",
        "The sitter marked the service as completed. Please confirm it.",
    ),
    NotificationKind.COMPLETION_CONFIRMED: (
        "Completion confirmed",
        "The service was confirmed. The payment will be released after the hold period.",
    ),
    NotificationKind.COMPLETION_REMINDER: (
        "Please confirm your booking",
        "Your sitter completed the service. Confirm it or let us know if something went wrong.",
    ),
    NotificationKind.PAYMENT_RELEASED: (
        "Payment released",
        "The payment for the booking has been released to the sitter.",
    ),
    NotificationKind.PAYMENT_REFUNDED: (
        "Refund processed",
        "The payment for the booking has been refunded.",
    ),
    NotificationKind.DISPUTE_OPENED: (
        "Booking disputed",
        "The owner reported a problem with the booking. The payment is on hold.",
    ),
    NotificationKind.DISPUTE_RESOLVED: (
        "Dispute resolved",
        "The dispute on the booking has been resolved.",
    ),
}


@dataclass
class TransitionEvent:
    """Committed change of a booking, addressed to the affected parties."""

    booking_id: UUID
    kind: NotificationKind
    old_status: str | None
    new_status: str
    old_payment_status: str | None
    new_payment_status: str
    actor_id: UUID | None
    recipient_ids: list[UUID] = field(default_factory=list)

    def to_payload(self) -> dict[str, Any]:
        """JSON-safe form for the task queue."""
        payload = asdict(self)
        payload["booking_id"] = str(self.booking_id)
        payload["kind"] = self.kind.value
        payload["actor_id"] = str(self.actor_id) if self.actor_id else None
        payload["recipient_ids"] = [str(r) for r in self.recipient_ids]
        return payload

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "TransitionEvent":
        return cls(
            booking_id=UUID(payload["booking_id"]),
            kind=NotificationKind(payload["kind"]),
            old_status=payload.get("old_status"),
            new_status=payload["new_status"],
            old_payment_status=payload.get("old_payment_status"),
            new_payment_status=payload["new_payment_status"],
            actor_id=UUID(payload["actor_id"]) if payload.get("actor_id") else None,
            recipient_ids=[UUID(r) for r in payload.get("recipient_ids", [])],
        )


class NotificationEmitter(Protocol):
    """Receives events after the transition is committed."""

    async def emit(self, event: TransitionEvent) -> None: ...


class CeleryNotificationEmitter:
    """Queue delivery on the Celery worker.

    The broker publish blocks, so it runs in a worker thread.
    """

    async def emit(self, event: TransitionEvent) -> None:
        from app.tasks import send_transition_notification

        try:
            await asyncio.to_thread(send_transition_notification.delay, event.to_payload())
        except Exception:
            logger.exception(
                "Failed to queue %s notification for booking %s",
                event.kind.value,
                event.booking_id,
            )


class NotificationService:
    """Service for delivering in-app notifications."""

    def __init__(
        self,
        rest_url: str | None = None,
        service_key: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.rest_url = rest_url or settings.notifications_rest_url
        self.service_key = service_key or settings.notifications_service_key
        self._transport = transport

    def build_rows(self, event: TransitionEvent) -> list[dict[str, Any]]:
        """One notification row per recipient."""
        title, message = MESSAGES[event.kind]
        return [
            {
                "user_id": str(recipient_id),
                "type": event.kind.value,
                "title": title,
                "message": message,
                "related_id": str(event.booking_id),
            }
            for recipient_id in event.recipient_ids
        ]

    async def deliver_transition(self, event: TransitionEvent) -> bool:
        """Insert notification rows for an event.

        Returns:
            bool: True if rows were written, False if delivery is not configured

        Raises:
            httpx.HTTPError: If the REST call fails (the task retries)
        """
        rows = self.build_rows(event)
        if not rows:
            return False
        if not self.rest_url:
            logger.info(
                "Notifications endpoint not configured; %s for booking %s not delivered",
                event.kind.value,
                event.booking_id,
            )
            return False

        headers = {
            "Content-Type": "application/json",
            "Prefer": "return=minimal",
        }
        if self.service_key:
            headers["apikey"] = self.service_key
            headers["Authorization"] = f"Bearer {self.service_key}"

        async with httpx.AsyncClient(
            timeout=settings.notifications_timeout_seconds,
            transport=self._transport,
        ) as client:
            response = await client.post(self.rest_url, headers=headers, json=rows)
            response.raise_for_status()

        logger.info(
            "Delivered %s notification for booking %s to %d recipient(s)",
            event.kind.value,
            event.booking_id,
            len(rows),
        )
        return True


# Singleton instance
notification_service = NotificationService()
