"""Repository for persisted settlement jobs."""

from __future__ import annotations

from datetime import datetime, timedelta
import logging
from typing import List, Optional, cast

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.exceptions import RepositoryException
from ..models.settlement_job import SettlementJob, SettlementJobStatus

logger = logging.getLogger(__name__)

# A running job is already feeding reconciliation; only queued ones can be withdrawn
_CANCELLABLE_STATUSES = [SettlementJobStatus.QUEUED]


class SettlementJobRepository:
    """Data access helpers for the settlement_jobs table."""

    def __init__(self, db: Session):
        self.db = db
        self.logger = logger

    def schedule(
        self,
        *,
        payment_id: str,
        booking_id: str,
        target_status: str,
        available_at: datetime,
        now: datetime,
    ) -> SettlementJob:
        """
        Queue the settlement for a payment, replacing any earlier schedule.

        There is at most one job per payment; rescheduling re-arms it.
        """
        try:
            job = self.get_for_payment(payment_id)
            if job is None:
                job = SettlementJob(
                    payment_id=payment_id,
                    booking_id=booking_id,
                    target_status=target_status,
                    status=SettlementJobStatus.QUEUED,
                    attempts=0,
                    available_at=available_at,
                    created_at=now,
                    updated_at=now,
                )
                self.db.add(job)
            else:
                job.target_status = target_status
                job.status = SettlementJobStatus.QUEUED
                job.attempts = 0
                job.available_at = available_at
                job.last_error = None
                job.updated_at = now
            self.db.flush()
            return job
        except SQLAlchemyError as exc:
            self.logger.error("Failed to schedule settlement for payment %s: %s", payment_id, str(exc))
            raise RepositoryException("Failed to schedule settlement job") from exc

    def get_by_id(self, job_id: str) -> Optional[SettlementJob]:
        try:
            return self.db.get(SettlementJob, job_id)
        except SQLAlchemyError as exc:
            self.logger.error("Failed to load settlement job %s: %s", job_id, str(exc))
            raise RepositoryException("Failed to load settlement job") from exc

    def get_for_payment(self, payment_id: str) -> Optional[SettlementJob]:
        try:
            result = self.db.query(SettlementJob).filter(SettlementJob.payment_id == payment_id).first()
            return cast(Optional[SettlementJob], result)
        except SQLAlchemyError as exc:
            self.logger.error("Failed to load settlement for payment %s: %s", payment_id, str(exc))
            raise RepositoryException("Failed to load settlement job") from exc

    def fetch_due(self, *, now: datetime, limit: int = 25) -> List[SettlementJob]:
        """Return queued jobs that are ready to run."""
        try:
            jobs = (
                self.db.query(SettlementJob)
                .filter(
                    SettlementJob.status == SettlementJobStatus.QUEUED,
                    SettlementJob.available_at <= now,
                )
                .order_by(SettlementJob.available_at.asc())
                .limit(limit)
                .all()
            )
            return cast(List[SettlementJob], jobs)
        except SQLAlchemyError as exc:
            self.logger.error("Failed to fetch due settlements: %s", str(exc))
            raise RepositoryException("Failed to fetch settlement jobs") from exc

    def mark_running(self, job_id: str, *, now: datetime) -> bool:
        """
        Claim a queued job.

        Returns:
            False when another worker claimed (or cancelled) it first
        """
        return self._move(job_id, SettlementJobStatus.QUEUED, SettlementJobStatus.RUNNING, now)

    def mark_succeeded(self, job_id: str, *, now: datetime) -> None:
        self._move(job_id, SettlementJobStatus.RUNNING, SettlementJobStatus.SUCCEEDED, now)

    def mark_failed(self, job_id: str, error: str, *, now: datetime) -> None:
        """Increment attempt counters and reschedule a job after a failure."""
        try:
            job = self.db.get(SettlementJob, job_id)
            if job is None:
                self.logger.warning("Attempted to mark missing settlement job %s failed", job_id)
                return

            attempts = (job.attempts or 0) + 1
            backoff_seconds = min(
                settings.jobs_backoff_cap, settings.jobs_backoff_base * (2 ** (attempts - 1))
            )
            job.status = SettlementJobStatus.QUEUED
            job.attempts = attempts
            job.available_at = now + timedelta(seconds=backoff_seconds)
            job.last_error = error
            job.updated_at = now

            self.db.flush()
        except SQLAlchemyError as exc:
            self.logger.error("Failed to reschedule settlement job %s: %s", job_id, str(exc))
            raise RepositoryException("Failed to reschedule settlement job") from exc

    def mark_dead(self, job_id: str, error: str, *, now: datetime) -> None:
        """Give up on a job; it stays in the table for inspection."""
        try:
            self.db.query(SettlementJob).filter(SettlementJob.id == job_id).update(
                {
                    SettlementJob.status: SettlementJobStatus.FAILED,
                    SettlementJob.last_error: error,
                    SettlementJob.updated_at: now,
                },
                synchronize_session="fetch",
            )
        except SQLAlchemyError as exc:
            self.logger.error("Failed to mark settlement job %s dead: %s", job_id, str(exc))
            raise RepositoryException("Failed to mark settlement job failed") from exc

    def cancel_for_payment(self, payment_id: str, *, now: datetime) -> int:
        """Cancel the queued job of a payment. Returns the number of jobs cancelled."""
        return self._cancel(SettlementJob.payment_id == payment_id, payment_id, now)

    def cancel_for_booking(self, booking_id: str, *, now: datetime) -> int:
        """Cancel every queued job tied to a booking."""
        return self._cancel(SettlementJob.booking_id == booking_id, booking_id, now)

    def _cancel(self, criterion, subject: str, now: datetime) -> int:
        try:
            return int(
                self.db.query(SettlementJob)
                .filter(criterion, SettlementJob.status.in_(_CANCELLABLE_STATUSES))
                .update(
                    {
                        SettlementJob.status: SettlementJobStatus.CANCELLED,
                        SettlementJob.updated_at: now,
                    },
                    synchronize_session="fetch",
                )
            )
        except SQLAlchemyError as exc:
            self.logger.error("Failed to cancel settlement jobs for %s: %s", subject, str(exc))
            raise RepositoryException("Failed to cancel settlement jobs") from exc

    def _move(self, job_id: str, expected: str, target: str, now: datetime) -> bool:
        try:
            rowcount = (
                self.db.query(SettlementJob)
                .filter(SettlementJob.id == job_id, SettlementJob.status == expected)
                .update(
                    {
                        SettlementJob.status: target,
                        SettlementJob.updated_at: now,
                    },
                    synchronize_session="fetch",
                )
            )
            return rowcount == 1
        except SQLAlchemyError as exc:
            self.logger.error("Failed to mark settlement job %s %s: %s", job_id, target, str(exc))
            raise RepositoryException(f"Failed to mark settlement job {target}") from exc
