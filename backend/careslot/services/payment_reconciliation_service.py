# backend/careslot/services/payment_reconciliation_service.py
"""
Payment Reconciliation Service for the CareSlot engine.

Owns the link between gateway transactions and bookings:

- ``initiate`` creates the local payment record (with its correlation
  reference) before the gateway is called, then binds the gateway's
  transaction id once it answers.
- ``reconcile`` is the idempotency boundary for gateway notifications.
  Payment status only moves forward (PENDING to COMPLETED or FAILED) via a
  conditional UPDATE, and the first move to COMPLETED confirms the booking
  in the same database transaction.
- ``redrive_unconfirmed`` and ``process_due_settlements`` are the background
  sweeps that keep bookings and payments consistent.
"""

from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal
from enum import Enum
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from ..core.clock import Clock, system_clock
from ..core.config import settings
from ..core.exceptions import (
    DomainException,
    DuplicatePaymentException,
    GatewayException,
    InvalidBookingStateException,
    InvalidTransitionException,
    NotFoundException,
    PaymentAttemptSupersededException,
    PersistenceConflictException,
    UnknownTransactionException,
    ValidationException,
)
from ..core.ulid_helper import generate_payment_reference
from ..domain.booking_state_machine import BookingStateMachine
from ..integrations.payment_gateway import GatewayPaymentIntent, PaymentGateway
from ..models.booking import Booking, BookingStatus
from ..models.payment import PaymentMethod, PaymentRecord, PaymentStatus
from ..monitoring.prometheus_metrics import prometheus_metrics
from ..repositories.booking_repository import BookingRepository
from ..repositories.factory import RepositoryFactory
from ..repositories.payment_repository import PaymentRepository
from ..schemas.payment import GatewayNotification, NotificationStatus, PaymentStatsResponse
from .base import BaseService
from .settlement_scheduler import SettlementScheduler

logger = logging.getLogger(__name__)


class ReconciliationOutcome(str, Enum):
    APPLIED = "applied"  # Payment moved forward
    DUPLICATE = "duplicate"  # Payment already in the reported state
    STALE = "stale"  # Report is older than what we already know
    IGNORED = "ignored"  # PENDING report for a pending payment


@dataclass(frozen=True)
class ReconciliationResult:
    outcome: ReconciliationOutcome
    payment_id: str
    payment_status: str
    booking_id: str
    booking_status: str
    booking_confirmed: bool = False


_TERMINAL_FOR_NOTIFICATION = {
    NotificationStatus.COMPLETED: PaymentStatus.COMPLETED,
    NotificationStatus.FAILED: PaymentStatus.FAILED,
}


class PaymentReconciliationService(BaseService):
    """Service that applies payment outcomes to bookings exactly once."""

    def __init__(
        self,
        db: Session,
        gateway: PaymentGateway,
        clock: Clock = system_clock,
        booking_repository: Optional[BookingRepository] = None,
        payment_repository: Optional[PaymentRepository] = None,
        scheduler: Optional[SettlementScheduler] = None,
        state_machine: Optional[BookingStateMachine] = None,
    ):
        super().__init__(db)
        self.gateway = gateway
        self.clock = clock
        self.booking_repository = booking_repository or RepositoryFactory.create_booking_repository(db)
        self.payment_repository = payment_repository or RepositoryFactory.create_payment_repository(db)
        self.scheduler = scheduler or SettlementScheduler(db, clock=clock)
        self.state_machine = state_machine or BookingStateMachine(self.booking_repository, clock=clock)

    # ========== Initiation ==========

    @BaseService.measure_operation("initiate_payment")
    def initiate(
        self,
        booking_id: str,
        *,
        amount: Decimal,
        method: PaymentMethod,
        currency: Optional[str] = None,
        phone_number: Optional[str] = None,
    ) -> PaymentRecord:
        """
        Start (or resume) the payment for a scheduled booking.

        Three phases, so no database transaction is held open across the
        gateway call:
            1. Claim the payment record (new, or a pending one the gateway never
               acknowledged whose attempt lease has run out)
            2. Call the gateway
            3. Bind the gateway transaction id if this attempt still holds the
               claim, and schedule settlement if asked to

        Raises:
            NotFoundException: Booking does not exist
            InvalidBookingStateException: Booking is not SCHEDULED
            DuplicatePaymentException: An acknowledged, completed or still-leased payment exists
            PaymentAttemptSupersededException: A newer attempt took over during the gateway call
            GatewayTimeoutException / GatewayUnavailableException: Retryable gateway failures
        """
        method = PaymentMethod(method)
        currency = (currency or settings.default_currency).upper()
        if amount is None or Decimal(amount) < 0:
            raise ValidationException(
                "Payment amount must be non-negative",
                code="INVALID_AMOUNT",
                details={"amount": str(amount)},
            )

        # Phase 1: claim the record
        try:
            with self.transaction():
                payment, attempt, metadata = self._claim_payment_record(
                    booking_id, Decimal(amount), method, currency
                )
                payment_id = payment.id
                reference = payment.reference
        except PersistenceConflictException as exc:
            # A concurrent initiate won the partial unique index on active payments
            active = self.payment_repository.get_active_for_booking(booking_id)
            raise DuplicatePaymentException(
                booking_id,
                payment_id=active.id if active else None,
                payment_status=active.status if active else None,
            ) from exc

        self.log_operation("initiate_payment", booking_id=booking_id, payment_id=payment_id, reference=reference)

        # Phase 2: gateway call (no transaction held)
        try:
            intent = self.gateway.initiate_payment(
                amount=Decimal(amount),
                currency=currency,
                reference=reference,
                method=method.value,
                metadata=metadata,
                phone_number=phone_number,
            )
        except GatewayException as exc:
            self.logger.warning(
                f"Gateway failed to initiate payment {payment_id}: {exc.code}",
                extra={"payment_id": payment_id, "booking_id": booking_id, "retryable": exc.retryable},
            )
            raise

        # Phase 3: bind the gateway transaction
        with self.transaction():
            payment = self._bind_gateway_intent(payment_id, attempt, intent)
        return payment

    def _claim_payment_record(
        self, booking_id: str, amount: Decimal, method: PaymentMethod, currency: str
    ) -> tuple[PaymentRecord, int, Dict[str, Any]]:
        booking = self.booking_repository.get_by_id(booking_id)
        if booking is None:
            raise NotFoundException(f"Booking {booking_id} not found", code="BOOKING_NOT_FOUND")
        if booking.status_enum != BookingStatus.SCHEDULED:
            raise InvalidBookingStateException(booking_id, booking.status)

        now = self.clock.now()
        payment = self.payment_repository.get_active_for_booking(booking_id)
        if payment is not None:
            if payment.status_enum == PaymentStatus.COMPLETED or payment.external_transaction_id:
                raise DuplicatePaymentException(booking_id, payment.id, payment.status)
            # An unacknowledged attempt is only resumable once its lease has run out
            attempt = self.payment_repository.claim_stale_attempt(
                payment.id,
                stale_before=now - timedelta(seconds=settings.payment_attempt_lease_seconds),
                now=now,
                amount=amount,
                currency=currency,
                method=method.value,
            )
            if attempt is None:
                raise DuplicatePaymentException(booking_id, payment.id, payment.status)
            self.logger.info(
                f"Resuming unacknowledged payment {payment.id} for booking {booking_id}",
                extra={"payment_id": payment.id, "attempt": attempt},
            )
        else:
            attempt = 1
            payment = self.payment_repository.insert(
                PaymentRecord(
                    booking_id=booking_id,
                    amount=amount,
                    currency=currency,
                    method=method.value,
                    reference=generate_payment_reference(booking_id),
                    status=PaymentStatus.PENDING.value,
                    attempts=attempt,
                    attempt_started_at=now,
                    created_at=now,
                    updated_at=now,
                )
            )

        metadata = {
            "booking_id": booking.id,
            "requester_id": booking.requester_id,
            "provider_id": booking.provider_id,
            "consultation_type": booking.consultation_type,
        }
        return payment, attempt, metadata

    def _bind_gateway_intent(self, payment_id: str, attempt: int, intent: GatewayPaymentIntent) -> PaymentRecord:
        bound = self.payment_repository.bind_external_transaction_id(
            payment_id,
            intent.gateway_transaction_id,
            now=self.clock.now(),
            attempt=attempt,
            checkout_url=intent.redirect_url,
            payload=intent.raw,
        )
        payment = self.payment_repository.get_by_id(payment_id)
        if payment is None:
            raise NotFoundException(f"Payment {payment_id} not found", code="PAYMENT_NOT_FOUND")
        if not bound:
            # The gateway holds a transaction no local record points at; it has to be voided there
            self.logger.error(
                f"Gateway transaction {intent.gateway_transaction_id} for payment {payment_id} was superseded",
                extra={
                    "payment_id": payment_id,
                    "attempt": attempt,
                    "current_attempt": payment.attempts,
                    "gateway_transaction_id": intent.gateway_transaction_id,
                    "bound_transaction_id": payment.external_transaction_id,
                },
            )
            raise PaymentAttemptSupersededException(payment_id, intent.gateway_transaction_id)

        if intent.requests_settlement and payment.status_enum == PaymentStatus.PENDING:
            booking = self.booking_repository.get_by_id(payment.booking_id)
            if booking is not None and booking.status_enum == BookingStatus.SCHEDULED:
                self.scheduler.schedule(payment, intent.settle_status, intent.settle_after_seconds)
        return payment

    # ========== Reconciliation ==========

    @BaseService.measure_operation("reconcile")
    def reconcile(self, notification: GatewayNotification) -> ReconciliationResult:
        """
        Apply a gateway notification.

        Safe to call any number of times, in any order, from webhooks,
        pollers or settlement jobs: duplicates are no-ops and a PENDING
        report never regresses a settled payment.

        Raises:
            UnknownTransactionException: No local payment matches the notification
        """
        attempts = max(settings.reconcile_max_attempts, 1)
        for attempt in range(1, attempts + 1):
            try:
                with self.transaction():
                    result = self._reconcile_once(notification)
                break
            except PersistenceConflictException:
                if attempt == attempts:
                    self.logger.error(
                        f"Giving up reconciling {notification.gateway_transaction_id} after {attempts} attempts"
                    )
                    raise
                self.logger.info(
                    f"Write race while reconciling {notification.gateway_transaction_id}, retrying",
                    extra={"attempt": attempt},
                )

        prometheus_metrics.inc_reconciliation_outcome(result.outcome.value, notification.status.value)
        self.log_operation(
            "reconcile",
            gateway_transaction_id=notification.gateway_transaction_id,
            outcome=result.outcome.value,
            payment_status=result.payment_status,
            booking_status=result.booking_status,
        )
        return result

    def verify_and_reconcile(self, gateway_transaction_id: str) -> ReconciliationResult:
        """Ask the gateway for the authoritative state of a transaction, then reconcile it."""
        raw = self.gateway.fetch_payment_status(gateway_transaction_id)
        notification = GatewayNotification.from_intasend(raw)
        if notification.gateway_transaction_id != gateway_transaction_id:
            raise ValidationException(
                "Gateway answered for a different transaction",
                code="MALFORMED_NOTIFICATION",
                details={
                    "requested": gateway_transaction_id,
                    "received": notification.gateway_transaction_id,
                },
            )
        return self.reconcile(notification)

    def _reconcile_once(self, notification: GatewayNotification) -> ReconciliationResult:
        payment = self._match_payment(notification)
        booking = self.booking_repository.get_by_id(payment.booking_id)
        if booking is None:
            raise NotFoundException(
                f"Booking {payment.booking_id} for payment {payment.id} not found",
                code="BOOKING_NOT_FOUND",
            )

        if notification.status == NotificationStatus.PENDING:
            outcome = (
                ReconciliationOutcome.IGNORED
                if payment.status_enum == PaymentStatus.PENDING
                else ReconciliationOutcome.STALE
            )
            return self._result(outcome, payment, booking)

        target = _TERMINAL_FOR_NOTIFICATION[notification.status]
        if payment.status_enum == PaymentStatus.PENDING:
            applied = self.payment_repository.transition_status(
                payment.id,
                expected=PaymentStatus.PENDING,
                target=target,
                now=self.clock.now(),
                payload=notification.payload,
            )
            if applied:
                return self._after_transition(payment, booking, target)
            # Someone else moved it between our read and our update

        if payment.status_enum == target:
            confirmed = False
            if target == PaymentStatus.COMPLETED:
                # A previous attempt may have recorded the payment without confirming
                confirmed = self._confirm_booking(booking, payment)
            return self._result(ReconciliationOutcome.DUPLICATE, payment, booking, confirmed)

        self.logger.warning(
            f"Conflicting notification for payment {payment.id}: "
            f"reported {notification.status.value}, recorded {payment.status}"
        )
        return self._result(ReconciliationOutcome.STALE, payment, booking)

    def _match_payment(self, notification: GatewayNotification) -> PaymentRecord:
        payment = self.payment_repository.get_by_external_id(notification.gateway_transaction_id)
        if payment is not None:
            return payment

        if notification.reference:
            payment = self.payment_repository.get_by_reference(notification.reference)
            if payment is not None and self.payment_repository.bind_external_transaction_id(
                payment.id, notification.gateway_transaction_id, now=self.clock.now()
            ):
                return payment

        self.logger.error(
            "Gateway notification matches no payment",
            extra={
                "gateway_transaction_id": notification.gateway_transaction_id,
                "reference": notification.reference,
                "notification_status": notification.status.value,
            },
        )
        prometheus_metrics.inc_reconciliation_outcome("unknown", notification.status.value)
        raise UnknownTransactionException(notification.gateway_transaction_id, notification.reference)

    def _after_transition(
        self, payment: PaymentRecord, booking: Booking, target: PaymentStatus
    ) -> ReconciliationResult:
        self.scheduler.cancel_for_payment(payment.id)
        confirmed = False
        if target == PaymentStatus.COMPLETED:
            confirmed = self._confirm_booking(booking, payment)
        else:
            self.logger.info(f"Payment {payment.id} failed; booking {booking.id} stays {booking.status}")
        return self._result(ReconciliationOutcome.APPLIED, payment, booking, confirmed)

    def _confirm_booking(self, booking: Booking, payment: PaymentRecord) -> bool:
        try:
            return self.state_machine.confirm_via_payment(booking)
        except InvalidTransitionException:
            self.logger.warning(
                f"Payment {payment.id} completed for {booking.status} booking {booking.id}; refund required",
                extra={"payment_id": payment.id, "booking_id": booking.id},
            )
            return False

    def confirm_from_existing_payment(self, booking: Booking) -> bool:
        """
        Re-derive confirmation from a completed payment.

        Runs inside the caller's transaction (used after a reschedule).
        """
        payment = self.payment_repository.get_completed_for_booking(booking.id)
        if payment is None:
            return False
        return self._confirm_booking(booking, payment)

    @staticmethod
    def _result(
        outcome: ReconciliationOutcome,
        payment: PaymentRecord,
        booking: Booking,
        booking_confirmed: bool = False,
    ) -> ReconciliationResult:
        return ReconciliationResult(
            outcome=outcome,
            payment_id=payment.id,
            payment_status=payment.status,
            booking_id=booking.id,
            booking_status=booking.status,
            booking_confirmed=booking_confirmed,
        )

    # ========== Background sweeps ==========

    @BaseService.measure_operation("redrive_unconfirmed")
    def redrive_unconfirmed(self, limit: Optional[int] = None) -> int:
        """
        Confirm bookings whose payment completed but whose confirmation was lost.

        Returns:
            Number of bookings confirmed
        """
        with self.transaction():
            payments = self.payment_repository.list_completed_with_unconfirmed_booking(
                limit or settings.redrive_batch_size
            )
            payment_ids = [(payment.id, payment.booking_id) for payment in payments]

        confirmed = 0
        for payment_id, booking_id in payment_ids:
            try:
                with self.transaction():
                    booking = self.booking_repository.get_by_id(booking_id)
                    payment = self.payment_repository.get_by_id(payment_id)
                    if booking is None or payment is None:
                        continue
                    if self._confirm_booking(booking, payment):
                        confirmed += 1
                        prometheus_metrics.inc_confirmation_redriven()
            except PersistenceConflictException:
                self.logger.info(f"Booking {booking_id} changed during re-drive; next sweep will retry")
        if confirmed:
            self.logger.info(f"Re-drove confirmation for {confirmed} booking(s)")
        return confirmed

    @BaseService.measure_operation("process_due_settlements")
    def process_due_settlements(self, limit: Optional[int] = None) -> Dict[str, int]:
        """
        Feed due settlement jobs through reconciliation.

        Returns:
            Counts of jobs by result (succeeded, retried, failed, skipped)
        """
        with self.transaction():
            jobs = self.scheduler.due_jobs(limit or settings.settlement_batch_size)
            job_ids = [job.id for job in jobs]

        summary = {"succeeded": 0, "retried": 0, "failed": 0, "skipped": 0}
        for job_id in job_ids:
            result = self._run_settlement_job(job_id)
            summary[result] += 1
            prometheus_metrics.inc_settlement_job(result)
        return summary

    def _run_settlement_job(self, job_id: str) -> str:
        with self.transaction():
            if not self.scheduler.claim(job_id):
                return "skipped"
            job = self.scheduler.get(job_id)
            payment = self.payment_repository.get_by_id(job.payment_id) if job else None
            if job is None or payment is None or not payment.external_transaction_id:
                self.scheduler.give_up(job_id, "payment missing or never acknowledged by the gateway")
                return "failed"
            notification = GatewayNotification(
                gateway_transaction_id=payment.external_transaction_id,
                status=NotificationStatus(job.target_status),
                reference=payment.reference,
                payload={"source": "settlement_job", "job_id": job_id, "state": job.target_status},
            )
            attempts = job.attempts or 0

        try:
            self.reconcile(notification)
        except UnknownTransactionException as exc:
            with self.transaction():
                self.scheduler.give_up(job_id, exc.message)
            return "failed"
        except DomainException as exc:
            with self.transaction():
                if exc.retryable and attempts + 1 < settings.reconcile_max_attempts:
                    self.scheduler.retry_later(job_id, exc.message)
                    outcome = "retried"
                else:
                    self.scheduler.give_up(job_id, exc.message)
                    outcome = "failed"
            self.logger.warning(f"Settlement job {job_id} {outcome}: {exc.code}")
            return outcome

        with self.transaction():
            self.scheduler.finish(job_id)
        return "succeeded"

    # ========== Reads ==========

    def get_payment_for_requester(self, payment_id: str, requester_id: str) -> PaymentRecord:
        payment = self.payment_repository.get_for_requester(payment_id, requester_id)
        if payment is None:
            raise NotFoundException("Payment not found", code="PAYMENT_NOT_FOUND")
        return payment

    def list_payment_history(self, requester_id: str, limit: int = 20, offset: int = 0) -> List[PaymentRecord]:
        return self.payment_repository.get_user_payment_history(requester_id, limit=limit, offset=offset)

    def get_payment_stats(self, requester_id: str) -> PaymentStatsResponse:
        return PaymentStatsResponse(**self.payment_repository.get_requester_payment_stats(requester_id))
