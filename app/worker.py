"""Celery worker configuration.

This module sets up Celery for background task processing including:
- Scheduled escrow releases
- Capture reconciliation
- Service start and completion timeouts
- Notification dispatch
"""

from celery import Celery
from celery.schedules import crontab

from app.config import settings

# Create Celery app
celery_app = Celery(
    "pawpair_tasks",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["app.tasks"],
)

# Celery configuration
celery_app.conf.update(
    # Task settings
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,

    # Task execution settings
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    task_time_limit=300,  # 5 minutes max
    task_soft_time_limit=240,  # Soft limit at 4 minutes

    # Worker settings
    worker_prefetch_multiplier=1,
    worker_concurrency=4,

    # Result backend settings
    result_expires=3600,  # Results expire after 1 hour

    # Retry settings
    task_default_retry_delay=60,  # 1 minute
    task_max_retries=3,

    # Beat schedule for periodic tasks
    beat_schedule={
        # Release payments whose hold window has passed
        "release-due-payments": {
            "task": "app.tasks.release_due_payments",
            "schedule": crontab(minute=f"*/{settings.release_sweep_interval_minutes}"),
        },
        # Re-query captures stuck in pending
        "reconcile-pending-captures": {
            "task": "app.tasks.reconcile_pending_captures",
            "schedule": crontab(minute=f"*/{settings.reconcile_interval_minutes}"),
        },
        # Start services whose start time has passed
        "start-due-services": {
            "task": "app.tasks.start_due_services",
            "schedule": crontab(minute="*/5"),
        },
        # Completion reminders and auto-confirmation hourly
        "process-completion-timeouts": {
            "task": "app.tasks.process_completion_timeouts",
            "schedule": crontab(minute=0),
        },
    },
)


if __name__ == "__main__":
    celery_app.start()
