"""Celery background tasks.

This module contains the background tasks for:
- Releasing held payments once the hold window has passed
- Reconciling captures with an unknown outcome
- Starting services and timing out unconfirmed completions
- Delivering transition notifications
"""

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import Any

import httpx
from celery import shared_task

from app.database import build_engine, build_session_factory
from app.services.booking_engine import BookingStateMachine
from app.services.notification_service import TransitionEvent, notification_service
from app.services.release_scheduler import ReleaseScheduler

logger = logging.getLogger(__name__)


def run_async(coro):
    """Run async function in sync context."""
    return asyncio.run(coro)


@asynccontextmanager
async def scheduler_context() -> AsyncIterator[ReleaseScheduler]:
    """Scheduler bound to a fresh engine for this task run.

    Each run gets its own event loop, so pooled connections from an earlier
    run cannot be reused.
    """
    engine = build_engine()
    try:
        machine = BookingStateMachine(build_session_factory(engine))
        yield ReleaseScheduler(machine)
    finally:
        await engine.dispose()


async def _run_sweep(sweep: Callable[[ReleaseScheduler], Awaitable[dict[str, Any]]]) -> dict[str, Any]:
    async with scheduler_context() as scheduler:
        return await sweep(scheduler)


# ==================== ESCROW TASKS ====================


@shared_task(bind=True, max_retries=3)
def release_due_payments(self):
    """Release held payments whose hold window has passed.

    Runs every few minutes. Per-booking failures are recorded on the
    booking and retried with backoff by later runs.
    """
    try:
        return run_async(_run_sweep(lambda s: s.run_release_sweep()))
    except Exception as exc:
        logger.exception("Release sweep failed")
        self.retry(exc=exc, countdown=60)


@shared_task(bind=True, max_retries=3)
def reconcile_pending_captures(self):
    """Resolve captures left pending after a timeout."""
    try:
        return run_async(_run_sweep(lambda s: s.run_capture_reconciliation()))
    except Exception as exc:
        logger.exception("Capture reconciliation failed")
        self.retry(exc=exc, countdown=120)


@shared_task(bind=True, max_retries=3)
def start_due_services(self):
    """Move paid bookings whose start time has passed to in_progress."""
    try:
        return run_async(_run_sweep(lambda s: s.run_service_start_sweep()))
    except Exception as exc:
        logger.exception("Service start sweep failed")
        self.retry(exc=exc, countdown=60)


@shared_task(bind=True, max_retries=3)
def process_completion_timeouts(self):
    """Remind owners to confirm completion and auto-confirm overdue ones."""
    try:
        return run_async(_run_sweep(lambda s: s.run_completion_timeout_sweep()))
    except Exception as exc:
        logger.exception("Completion timeout sweep failed")
        self.retry(exc=exc, countdown=300)


# ==================== NOTIFICATION TASKS ====================


@shared_task(bind=True, max_retries=5)
def send_transition_notification(self, payload: dict):
    """Deliver the notification rows for one committed transition.

    This task is used to offload notification delivery from request handlers.
    """
    event = TransitionEvent.from_payload(payload)
    try:
        delivered = run_async(notification_service.deliver_transition(event))
    except httpx.HTTPError as exc:
        logger.warning(
            "Delivering %s for booking %s failed: %s", event.kind.value, event.booking_id, exc
        )
        self.retry(exc=exc, countdown=60)
    return {"status": "delivered" if delivered else "skipped", "kind": event.kind.value}
