# backend/careslot/repositories/payment_repository.py
"""
Payment Repository for the CareSlot engine.

Implements all data access operations for payment records.
Status changes go through ``transition_status``, a conditional UPDATE that
only succeeds while the row is still in the expected status, so two
workers applying the same notification cannot both win. Attempt claims
and transaction id binding are conditional UPDATEs as well.
"""

from datetime import datetime
from decimal import Decimal
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import func, or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.exceptions import PersistenceConflictException, RepositoryException
from ..models.booking import Booking, BookingStatus
from ..models.payment import ACTIVE_PAYMENT_STATUSES, PaymentRecord, PaymentStatus
from .base_repository import BaseRepository, constraint_name_from

logger = logging.getLogger(__name__)

_ACTIVE_VALUES = [status.value for status in ACTIVE_PAYMENT_STATUSES]


class PaymentRepository(BaseRepository[PaymentRecord]):
    """Repository for payment records."""

    def __init__(self, db: Session):
        super().__init__(db, PaymentRecord)

    # ========== Writes ==========

    def insert(self, payment: PaymentRecord) -> PaymentRecord:
        """Persist a new payment; a second active payment for the booking is a conflict."""
        return self.add(payment)

    def transition_status(
        self,
        payment_id: str,
        *,
        expected: PaymentStatus,
        target: PaymentStatus,
        now: datetime,
        payload: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Move a payment from ``expected`` to ``target`` if nobody else did first.

        Args:
            payment_id: Payment to update
            expected: Status the row must still hold
            target: New status
            now: Time of the change, from the caller's clock
            payload: Raw gateway payload to store alongside the change

        Returns:
            True if this call applied the change, False if the row had already moved
        """
        values: Dict[Any, Any] = {
            PaymentRecord.status: target.value,
            PaymentRecord.updated_at: now,
        }
        if payload is not None:
            values[PaymentRecord.raw_gateway_payload] = payload
        rowcount = self._conditional_update(
            payment_id,
            [PaymentRecord.status == expected.value],
            values,
            "transition payment status",
        )
        return rowcount == 1

    def claim_stale_attempt(
        self,
        payment_id: str,
        *,
        stale_before: datetime,
        now: datetime,
        amount: Decimal,
        currency: str,
        method: str,
    ) -> Optional[int]:
        """
        Take over a pending attempt the gateway never acknowledged.

        Only succeeds when the previous attempt started before ``stale_before``,
        so a gateway call that is still running keeps its claim.

        Returns:
            The new attempt number, or None if the attempt is still leased or was bound
        """
        rowcount = self._conditional_update(
            payment_id,
            [
                PaymentRecord.status == PaymentStatus.PENDING.value,
                PaymentRecord.external_transaction_id.is_(None),
                or_(
                    PaymentRecord.attempt_started_at.is_(None),
                    PaymentRecord.attempt_started_at < stale_before,
                ),
            ],
            {
                PaymentRecord.attempts: PaymentRecord.attempts + 1,
                PaymentRecord.attempt_started_at: now,
                PaymentRecord.amount: amount,
                PaymentRecord.currency: currency,
                PaymentRecord.method: method,
                PaymentRecord.updated_at: now,
            },
            "claim payment attempt",
        )
        if rowcount != 1:
            return None
        payment = self.db.get(PaymentRecord, payment_id)
        return payment.attempts if payment is not None else None

    def bind_external_transaction_id(
        self,
        payment_id: str,
        external_transaction_id: str,
        *,
        now: datetime,
        attempt: Optional[int] = None,
        checkout_url: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Attach the gateway's transaction id.

        The id is immutable once set: binding the same id again succeeds,
        binding a different one does not. With ``attempt`` given, only the
        holder of that attempt may bind.

        Returns:
            True if the payment now carries ``external_transaction_id``
        """
        criteria = [
            or_(
                PaymentRecord.external_transaction_id.is_(None),
                PaymentRecord.external_transaction_id == external_transaction_id,
            )
        ]
        if attempt is not None:
            criteria.append(PaymentRecord.attempts == attempt)

        values: Dict[Any, Any] = {
            PaymentRecord.external_transaction_id: external_transaction_id,
            PaymentRecord.updated_at: now,
        }
        if checkout_url is not None:
            values[PaymentRecord.checkout_url] = checkout_url
        if payload is not None:
            values[PaymentRecord.raw_gateway_payload] = payload
        rowcount = self._conditional_update(payment_id, criteria, values, "bind gateway transaction")
        return rowcount == 1

    def _conditional_update(
        self, payment_id: str, criteria: List[Any], values: Dict[Any, Any], operation: str
    ) -> int:
        try:
            rowcount = (
                self.db.query(PaymentRecord)
                .filter(PaymentRecord.id == payment_id, *criteria)
                .update(values, synchronize_session=False)
            )
        except IntegrityError as exc:
            constraint = constraint_name_from(exc)
            self.logger.info("Uniqueness conflict during %s: %s", operation, constraint)
            raise PersistenceConflictException(
                f"Concurrent write rejected during {operation}", constraint=constraint
            ) from exc
        except SQLAlchemyError as e:
            self.logger.error(f"Failed to {operation} for payment {payment_id}: {str(e)}")
            raise RepositoryException(f"Failed to {operation}: {str(e)}")

        payment = self.db.get(PaymentRecord, payment_id)
        if payment is not None:
            self.db.refresh(payment)
        return int(rowcount)

    # ========== Lookups ==========

    def get_by_external_id(self, external_transaction_id: str) -> Optional[PaymentRecord]:
        query = self.db.query(PaymentRecord).filter(
            PaymentRecord.external_transaction_id == external_transaction_id
        )
        return self._execute_first(query)

    def get_by_reference(self, reference: str) -> Optional[PaymentRecord]:
        query = self.db.query(PaymentRecord).filter(PaymentRecord.reference == reference)
        return self._execute_first(query)

    def get_by_booking_id(self, booking_id: str) -> Optional[PaymentRecord]:
        """
        Most relevant payment for a booking.

        Prefers the active (pending or completed) record, falling back to the
        latest failed attempt.
        """
        active = self.get_active_for_booking(booking_id)
        if active is not None:
            return active
        query = (
            self.db.query(PaymentRecord)
            .filter(PaymentRecord.booking_id == booking_id)
            .order_by(PaymentRecord.created_at.desc())
        )
        return self._execute_first(query)

    def get_active_for_booking(self, booking_id: str) -> Optional[PaymentRecord]:
        query = self.db.query(PaymentRecord).filter(
            PaymentRecord.booking_id == booking_id,
            PaymentRecord.status.in_(_ACTIVE_VALUES),
        )
        return self._execute_first(query)

    def get_completed_for_booking(self, booking_id: str) -> Optional[PaymentRecord]:
        query = self.db.query(PaymentRecord).filter(
            PaymentRecord.booking_id == booking_id,
            PaymentRecord.status == PaymentStatus.COMPLETED.value,
        )
        return self._execute_first(query)

    def list_for_booking(self, booking_id: str) -> List[PaymentRecord]:
        query = (
            self.db.query(PaymentRecord)
            .filter(PaymentRecord.booking_id == booking_id)
            .order_by(PaymentRecord.created_at.asc())
        )
        return self._execute_query(query)

    def list_completed_with_unconfirmed_booking(self, limit: int = 50) -> List[PaymentRecord]:
        """Completed payments whose booking is still waiting for confirmation."""
        query = (
            self.db.query(PaymentRecord)
            .join(Booking, Booking.id == PaymentRecord.booking_id)
            .filter(
                PaymentRecord.status == PaymentStatus.COMPLETED.value,
                Booking.status == BookingStatus.SCHEDULED.value,
            )
            .order_by(PaymentRecord.updated_at.asc())
            .limit(limit)
        )
        return self._execute_query(query)

    # ========== Requester views ==========

    def get_for_requester(self, payment_id: str, requester_id: str) -> Optional[PaymentRecord]:
        query = (
            self.db.query(PaymentRecord)
            .join(Booking, Booking.id == PaymentRecord.booking_id)
            .filter(PaymentRecord.id == payment_id, Booking.requester_id == requester_id)
        )
        return self._execute_first(query)

    def get_user_payment_history(
        self, requester_id: str, limit: int = 20, offset: int = 0
    ) -> List[PaymentRecord]:
        """Requester's payments, newest first."""
        query = (
            self.db.query(PaymentRecord)
            .join(Booking, Booking.id == PaymentRecord.booking_id)
            .filter(Booking.requester_id == requester_id)
            .order_by(PaymentRecord.created_at.desc())
            .offset(offset)
            .limit(limit)
        )
        return self._execute_query(query)

    def get_requester_payment_stats(self, requester_id: str) -> Dict[str, Any]:
        """
        Aggregate a requester's payments by status.

        Returns:
            Dict with ``count`` per status and ``total_paid`` (sum of completed amounts)
        """
        try:
            rows = (
                self.db.query(
                    PaymentRecord.status,
                    func.count(PaymentRecord.id),
                    func.coalesce(func.sum(PaymentRecord.amount), 0),
                )
                .join(Booking, Booking.id == PaymentRecord.booking_id)
                .filter(Booking.requester_id == requester_id)
                .group_by(PaymentRecord.status)
                .all()
            )
        except SQLAlchemyError as e:
            self.logger.error(f"Error aggregating payments for {requester_id}: {str(e)}")
            raise RepositoryException(f"Failed to aggregate payments: {str(e)}")

        counts = {status.value: 0 for status in PaymentStatus}
        total_paid = Decimal("0")
        for status_value, total, amount in rows:
            counts[status_value] = int(total)
            if status_value == PaymentStatus.COMPLETED.value:
                total_paid = Decimal(str(amount))
        return {
            "counts": counts,
            "total_payments": sum(counts.values()),
            "total_paid": total_paid,
        }
