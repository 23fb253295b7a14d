"""
Scheduling of delayed payment settlements.

Non-production gateways do not call back; instead they ask for the payment
to be settled after a delay. The schedule is persisted per payment so it
survives restarts and can be withdrawn when the booking is cancelled.
"""

from datetime import timedelta
import logging
from typing import List, Optional

from sqlalchemy.orm import Session

from ..core.clock import Clock, system_clock
from ..models.payment import PaymentRecord
from ..models.settlement_job import SettlementJob
from ..repositories.factory import RepositoryFactory
from ..repositories.settlement_job_repository import SettlementJobRepository

logger = logging.getLogger(__name__)


class SettlementScheduler:
    """Thin layer over the settlement job table, driven by the injected clock."""

    def __init__(
        self,
        db: Session,
        clock: Clock = system_clock,
        repository: Optional[SettlementJobRepository] = None,
    ):
        self.db = db
        self.clock = clock
        self.repository = repository or RepositoryFactory.create_settlement_job_repository(db)

    def schedule(self, payment: PaymentRecord, target_status: str, delay_seconds: int) -> SettlementJob:
        now = self.clock.now()
        available_at = now + timedelta(seconds=max(delay_seconds, 0))
        job = self.repository.schedule(
            payment_id=payment.id,
            booking_id=payment.booking_id,
            target_status=target_status,
            available_at=available_at,
            now=now,
        )
        logger.info(
            "Settlement scheduled",
            extra={
                "payment_id": payment.id,
                "target_status": target_status,
                "available_at": available_at.isoformat(),
            },
        )
        return job

    def cancel_for_booking(self, booking_id: str) -> int:
        cancelled = self.repository.cancel_for_booking(booking_id, now=self.clock.now())
        if cancelled:
            logger.info("Cancelled %s settlement job(s) for booking %s", cancelled, booking_id)
        return cancelled

    def cancel_for_payment(self, payment_id: str) -> int:
        return self.repository.cancel_for_payment(payment_id, now=self.clock.now())

    def due_jobs(self, limit: int) -> List[SettlementJob]:
        return self.repository.fetch_due(now=self.clock.now(), limit=limit)

    def get(self, job_id: str) -> Optional[SettlementJob]:
        return self.repository.get_by_id(job_id)

    def claim(self, job_id: str) -> bool:
        return self.repository.mark_running(job_id, now=self.clock.now())

    def finish(self, job_id: str) -> None:
        self.repository.mark_succeeded(job_id, now=self.clock.now())

    def retry_later(self, job_id: str, error: str) -> None:
        self.repository.mark_failed(job_id, error, now=self.clock.now())

    def give_up(self, job_id: str, error: str) -> None:
        self.repository.mark_dead(job_id, error, now=self.clock.now())
