"""
Celery tasks for payment settlement and reconciliation.

Both tasks are sweeps: safe to run concurrently and repeatedly, because
every state change they make goes through reconciliation's forward-only
guards.
"""

import logging
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from careslot.core.exceptions import RepositoryException, ServiceException
from careslot.services.dependencies import build_reconciliation_service
from careslot.tasks.celery_app import celery_app

logger = logging.getLogger(__name__)


@celery_app.task(
    bind=True,
    name="careslot.tasks.payment_tasks.process_due_settlements",
    autoretry_for=(RepositoryException, ServiceException),
    retry_backoff=True,
    max_retries=3,
)
def process_due_settlements(self: Any, limit: Optional[int] = None) -> Dict[str, int]:
    """
    Settle payments whose simulated settlement time has come.

    Returns:
        Counts of jobs by result
    """
    from careslot.database import SessionLocal

    db: Session = SessionLocal()
    try:
        summary = build_reconciliation_service(db).process_due_settlements(limit)
        if any(summary.values()):
            logger.info("Settlement sweep finished", extra=summary)
        return summary
    finally:
        db.close()


@celery_app.task(
    bind=True,
    name="careslot.tasks.payment_tasks.redrive_unconfirmed_bookings",
    autoretry_for=(RepositoryException, ServiceException),
    retry_backoff=True,
    max_retries=3,
)
def redrive_unconfirmed_bookings(self: Any, limit: Optional[int] = None) -> Dict[str, int]:
    """Confirm bookings whose completed payment never confirmed them."""
    from careslot.database import SessionLocal

    db: Session = SessionLocal()
    try:
        confirmed = build_reconciliation_service(db).redrive_unconfirmed(limit)
        return {"confirmed": confirmed}
    finally:
        db.close()
