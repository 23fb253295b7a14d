# backend/careslot/tasks/celery_app.py
"""
Celery application configuration for CareSlot.

Redis is the broker; the beat schedule drives the settlement and
confirmation sweeps.
"""

from datetime import timedelta
import logging
from typing import Any, Dict, Type, cast

from celery import Celery, Task
from celery.signals import setup_logging as celery_setup_logging

from careslot.core.config import settings
from careslot.core.logging import setup_logging


def _broker_url() -> str:
    broker_url = settings.celery_broker_url or settings.redis_url
    # Ensure Redis URL includes database number
    if broker_url.startswith("redis") and not any(broker_url.endswith(f"/{i}") for i in range(16)):
        broker_url = f"{broker_url.rstrip('/')}/0"
    return broker_url


def get_beat_schedule() -> Dict[str, Dict[str, Any]]:
    """Periodic sweeps; intervals come from settings."""
    return {
        "process-due-settlements": {
            "task": "careslot.tasks.payment_tasks.process_due_settlements",
            "schedule": timedelta(seconds=settings.settlement_poll_interval_seconds),
            "options": {"queue": "payments"},
        },
        "redrive-unconfirmed-bookings": {
            "task": "careslot.tasks.payment_tasks.redrive_unconfirmed_bookings",
            "schedule": timedelta(seconds=settings.redrive_interval_seconds),
            "options": {"queue": "payments"},
        },
    }


def create_celery_app() -> Celery:
    """
    Create and configure the Celery application.

    Returns:
        Celery: Configured Celery application instance
    """
    broker_url = _broker_url()
    celery_app = Celery("careslot", broker=broker_url, backend=broker_url)

    celery_app.conf.update(
        {
            # Task settings
            "task_serializer": "json",
            "accept_content": ["json"],
            "result_serializer": "json",
            "timezone": "UTC",
            "enable_utc": True,
            # Task execution settings
            "task_soft_time_limit": 120,
            "task_time_limit": 300,
            "task_acks_late": True,
            "task_reject_on_worker_lost": True,
            "worker_prefetch_multiplier": 1,
            "worker_hijack_root_logger": False,
            "task_routes": {"careslot.tasks.payment_tasks.*": {"queue": "payments"}},
            "imports": ("careslot.tasks.payment_tasks",),
            "beat_schedule": get_beat_schedule(),
        }
    )
    return celery_app


# Disable Celery's default logging configuration
@celery_setup_logging.connect  # type: ignore[misc]
def config_loggers(*args: Any, **kwargs: Any) -> None:
    """Configure logging to integrate with the application's logging setup."""
    setup_logging()


celery_app = create_celery_app()


class BaseTask(Task):  # type: ignore[misc]
    """Base task that logs failures and retries with task context."""

    def on_failure(self, exc: Exception, task_id: str, args: Any, kwargs: Any, einfo: Any) -> None:
        logging.getLogger(__name__).error(
            f"Task {self.name}[{task_id}] failed with exception: {exc}",
            exc_info=True,
            extra={"task_id": task_id, "task_name": self.name},
        )
        super().on_failure(exc, task_id, args, kwargs, einfo)

    def on_retry(self, exc: Exception, task_id: str, args: Any, kwargs: Any, einfo: Any) -> None:
        logging.getLogger(__name__).warning(
            f"Task {self.name}[{task_id}] retry {self.request.retries} due to: {exc}",
            extra={"task_id": task_id, "task_name": self.name, "retry_count": self.request.retries},
        )
        super().on_retry(exc, task_id, args, kwargs, einfo)


# Register BaseTask as default task base for the app
celery_app.Task = cast(Type[Task], BaseTask)
