"""Completion & release scheduler.

Periodic sweeps that move bookings along without a user action. Every sweep
selects a bounded batch of due bookings and drives each one through the
booking state machine as the scheduler actor, so the same locking,
validation and audit rules apply as for user requests.
"""

import logging
from collections.abc import Awaitable, Callable
from datetime import timedelta
from typing import Any
from uuid import UUID

from sqlalchemy import Select, or_, select

from app.config import settings
from app.core.exceptions import AppException
from app.domain.booking_state import Actor, BookingStatus
from app.domain.payment_state import PaymentStatus
from app.models.booking import Booking
from app.services.booking_engine import BookingStateMachine

logger = logging.getLogger(__name__)


def empty_summary() -> dict[str, Any]:
    return {"processed": 0, "succeeded": 0, "failed": 0, "results": []}


class ReleaseScheduler:
    """Runs the scheduled sweeps against one state machine."""

    def __init__(
        self,
        machine: BookingStateMachine,
        batch_size: int | None = None,
        reconcile_after_minutes: int | None = None,
        reminder_hours: int | None = None,
        auto_confirm_hours: int | None = None,
    ):
        self.machine = machine
        self.actor = Actor.scheduler()
        self.batch_size = batch_size or settings.scheduler_batch_size
        self.reconcile_after = timedelta(
            minutes=reconcile_after_minutes or settings.pending_capture_reconcile_after_minutes
        )
        self.reminder_after = timedelta(hours=reminder_hours or settings.completion_reminder_hours)
        self.auto_confirm_after = timedelta(
            hours=auto_confirm_hours or settings.completion_auto_confirm_hours
        )

    async def _due_ids(self, stmt: Select) -> list[UUID]:
        async with self.machine.session_factory() as session:
            result = await session.execute(stmt.limit(self.batch_size))
            return list(result.scalars().all())

    async def _run_each(
        self,
        name: str,
        booking_ids: list[UUID],
        step: Callable[[UUID], Awaitable[Any]],
        summary: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Apply one step per booking; a failure never stops the batch."""
        summary = summary or empty_summary()
        for booking_id in booking_ids:
            summary["processed"] += 1
            entry: dict[str, Any] = {"booking_id": str(booking_id), "action": name}
            try:
                outcome = await step(booking_id)
            except AppException as e:
                summary["failed"] += 1
                entry.update(success=False, error=e.detail, code=e.code)
                logger.warning("%s failed for booking %s: %s", name, booking_id, e.detail)
            except Exception as e:
                summary["failed"] += 1
                entry.update(success=False, error=str(e), code="internal_error")
                logger.exception("%s crashed for booking %s", name, booking_id)
            else:
                if outcome is False:
                    summary["failed"] += 1
                    entry.update(success=False, error="unresolved")
                else:
                    summary["succeeded"] += 1
                    entry.update(success=True)
            summary["results"].append(entry)
        return summary

    @staticmethod
    def _log_summary(name: str, summary: dict[str, Any]) -> None:
        if not summary["processed"]:
            logger.debug("%s: nothing due", name)
            return
        logger.info(
            "%s: processed=%d succeeded=%d failed=%d",
            name,
            summary["processed"],
            summary["succeeded"],
            summary["failed"],
        )

    # ==================== RELEASE ====================

    async def run_release_sweep(self) -> dict[str, Any]:
        """Release held payments whose hold window has passed.

        Failed releases back off exponentially and are flagged for manual
        review by the state machine; flagged or disputed bookings are
        skipped here.
        """
        now = self.machine.clock()
        stmt = (
            select(Booking.id)
            .where(
                Booking.payment_status == PaymentStatus.HELD,
                Booking.status == BookingStatus.COMPLETED,
                Booking.completion_confirmed_at.is_not(None),
                Booking.payment_released_at.is_(None),
                Booking.eligible_for_release_at <= now,
                Booking.needs_manual_review.is_(False),
                Booking.disputed_at.is_(None),
                or_(
                    Booking.next_release_attempt_at.is_(None),
                    Booking.next_release_attempt_at <= now,
                ),
            )
            .order_by(Booking.eligible_for_release_at)
        )
        booking_ids = await self._due_ids(stmt)
        summary = await self._run_each(
            "release",
            booking_ids,
            lambda booking_id: self.machine.release_payment(self.actor, booking_id, force=False),
        )
        self._log_summary("Release sweep", summary)
        return summary

    # ==================== CAPTURE RECONCILIATION ====================

    async def run_capture_reconciliation(self) -> dict[str, Any]:
        """Resolve captures stuck in ``pending`` by asking the gateway."""
        now = self.machine.clock()
        stmt = (
            select(Booking.id)
            .where(
                Booking.payment_status == PaymentStatus.PENDING,
                or_(
                    Booking.capture_requested_at.is_(None),
                    Booking.capture_requested_at <= now - self.reconcile_after,
                ),
            )
            .order_by(Booking.capture_requested_at)
        )

        async def reconcile(booking_id: UUID) -> bool:
            booking = await self.machine.reconcile_capture(self.actor, booking_id)
            return booking.payment_status != PaymentStatus.PENDING

        booking_ids = await self._due_ids(stmt)
        summary = await self._run_each("reconcile_capture", booking_ids, reconcile)
        self._log_summary("Capture reconciliation", summary)
        return summary

    # ==================== SERVICE START ====================

    async def run_service_start_sweep(self) -> dict[str, Any]:
        """Move paid, confirmed bookings whose start time has passed to in_progress."""
        now = self.machine.clock()
        stmt = (
            select(Booking.id)
            .where(
                Booking.status == BookingStatus.CONFIRMED,
                Booking.payment_status == PaymentStatus.HELD,
                Booking.start_time <= now,
            )
            .order_by(Booking.start_time)
        )
        booking_ids = await self._due_ids(stmt)
        summary = await self._run_each(
            "start_service",
            booking_ids,
            lambda booking_id: self.machine.update_booking_status(
                self.actor,
                booking_id,
                BookingStatus.IN_PROGRESS,
                expected_status=BookingStatus.CONFIRMED,
            ),
        )
        self._log_summary("Service start sweep", summary)
        return summary

    # ==================== COMPLETION TIMEOUT ====================

    async def run_completion_timeout_sweep(self) -> dict[str, Any]:
        """Auto-confirm long unconfirmed completions and remind owners once."""
        now = self.machine.clock()
        unconfirmed = (
            Booking.status == BookingStatus.COMPLETED,
            Booking.completion_confirmed_at.is_(None),
            Booking.payment_status == PaymentStatus.HELD,
        )

        overdue_ids = await self._due_ids(
            select(Booking.id)
            .where(*unconfirmed, Booking.completed_at <= now - self.auto_confirm_after)
            .order_by(Booking.completed_at)
        )
        summary = await self._run_each(
            "auto_confirm",
            overdue_ids,
            lambda booking_id: self.machine.confirm_service_completion(self.actor, booking_id),
        )

        reminder_ids = await self._due_ids(
            select(Booking.id)
            .where(
                *unconfirmed,
                Booking.confirmation_reminder_sent_at.is_(None),
                Booking.completed_at <= now - self.reminder_after,
            )
            .order_by(Booking.completed_at)
        )
        summary = await self._run_each(
            "completion_reminder",
            reminder_ids,
            lambda booking_id: self.machine.send_completion_reminder(self.actor, booking_id),
            summary,
        )
        self._log_summary("Completion timeout sweep", summary)
        return summary
