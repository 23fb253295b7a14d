# backend/careslot/services/booking_service.py
"""
Booking Service for the CareSlot engine.

Orchestrates the booking use cases exposed to the API layer. Each use case
runs in one transaction: validate, consult the slot store and the state
machine, persist, return. A write race reported by the store is retried
once before it is surfaced.

The caller's ``requester_id`` is already authenticated; a booking that
belongs to someone else is reported as not found.
"""

from datetime import date, time
import logging
from typing import Callable, Dict, List, Optional, TypeVar

from sqlalchemy.orm import Session

from ..core.clock import Clock, system_clock
from ..core.config import settings
from ..core.exceptions import (
    BusinessRuleException,
    NotFoundException,
    PersistenceConflictException,
    SlotUnavailableException,
)
from ..core.timezone_utils import get_booking_timezone
from ..domain.booking_state_machine import BookingStateMachine
from ..integrations.payment_gateway import PaymentGateway
from ..models.booking import Booking, BookingStatus, ConsultationType
from ..models.payment import PaymentMethod
from ..models.provider import Provider
from ..monitoring.prometheus_metrics import prometheus_metrics
from ..repositories.booking_repository import BookingRepository
from ..repositories.factory import RepositoryFactory
from ..repositories.provider_repository import ProviderRepository
from ..schemas.payment import GatewayNotification, PaymentIntentResponse
from .base import BaseService
from .payment_reconciliation_service import PaymentReconciliationService, ReconciliationResult
from .settlement_scheduler import SettlementScheduler

logger = logging.getLogger(__name__)

T = TypeVar("T")


class BookingService(BaseService):
    """
    Service layer for booking operations.

    Centralizes the booking lifecycle and the payment step that confirms it.
    """

    def __init__(
        self,
        db: Session,
        gateway: PaymentGateway,
        clock: Clock = system_clock,
        repository: Optional[BookingRepository] = None,
        provider_repository: Optional[ProviderRepository] = None,
        reconciliation_service: Optional[PaymentReconciliationService] = None,
    ):
        """
        Initialize booking service.

        Args:
            db: Database session
            gateway: Payment gateway used to start payments
            clock: Time source for every time-windowed rule
            repository: Optional BookingRepository instance
            provider_repository: Optional ProviderRepository instance
            reconciliation_service: Optional PaymentReconciliationService instance
        """
        super().__init__(db)
        self.clock = clock
        self.repository = repository or RepositoryFactory.create_booking_repository(db)
        self.provider_repository = provider_repository or RepositoryFactory.create_provider_repository(db)
        self.scheduler = SettlementScheduler(db, clock=clock)
        self.state_machine = BookingStateMachine(self.repository, clock=clock)
        self.reconciliation_service = reconciliation_service or PaymentReconciliationService(
            db,
            gateway,
            clock=clock,
            booking_repository=self.repository,
            scheduler=self.scheduler,
            state_machine=self.state_machine,
        )

    # ========== Lifecycle use cases ==========

    @BaseService.measure_operation("book")
    def book(
        self,
        requester_id: str,
        provider_id: str,
        booking_date: date,
        start_time: time,
        duration_minutes: Optional[int] = None,
        consultation_type: ConsultationType = ConsultationType.VIDEO,
        notes: Optional[str] = None,
    ) -> Booking:
        """
        Book a provider's slot for the requester.

        Raises:
            NotFoundException: Provider does not exist
            BusinessRuleException: Provider is not accepting bookings
            PastAppointmentException: Start is not in the future
            SlotUnavailableException: Slot already taken (including by a concurrent writer)
        """

        def _book() -> Booking:
            self._get_bookable_provider(provider_id)
            return self.state_machine.book(
                requester_id=requester_id,
                provider_id=provider_id,
                booking_date=booking_date,
                start_time=start_time,
                duration_minutes=duration_minutes,
                consultation_type=consultation_type,
                notes=notes,
            )

        booking = self._run_write("book", _book, slot_write=True)
        self.log_operation(
            "book",
            booking_id=booking.id,
            provider_id=provider_id,
            requester_id=requester_id,
        )
        return booking

    @BaseService.measure_operation("reschedule")
    def reschedule(
        self, booking_id: str, requester_id: str, new_date: date, new_time: time
    ) -> Booking:
        """
        Move a booking to a new slot.

        The booking returns to SCHEDULED. If it was already paid, the completed
        payment carries over and confirmation is re-derived in the same
        transaction; no second payment is taken.
        """

        def _reschedule() -> Booking:
            booking = self._get_owned_booking(booking_id, requester_id)
            self.state_machine.reschedule(booking, new_date, new_time)
            self.reconciliation_service.confirm_from_existing_payment(booking)
            return booking

        booking = self._run_write("reschedule", _reschedule, slot_write=True)
        self.log_operation("reschedule", booking_id=booking_id, status=booking.status)
        return booking

    @BaseService.measure_operation("cancel")
    def cancel(self, booking_id: str, requester_id: str, reason: Optional[str] = None) -> Booking:
        """
        Cancel a booking outside the grace window.

        Queued settlements for the booking are withdrawn. A completed payment
        is left as recorded; refunds are handled outside this engine.
        """

        def _cancel() -> Booking:
            booking = self._get_owned_booking(booking_id, requester_id)
            self.state_machine.cancel(booking, cancelled_by_id=requester_id, reason=reason)
            self.scheduler.cancel_for_booking(booking.id)
            return booking

        booking = self._run_write("cancel", _cancel, slot_write=False)
        self.log_operation("cancel", booking_id=booking_id, cancelled_by=requester_id)
        return booking

    @BaseService.measure_operation("start_consultation")
    def start_consultation(self, booking_id: str) -> Booking:
        """Mark a confirmed consultation as started."""
        return self._run_write(
            "start_consultation",
            lambda: self.state_machine.start(self._get_booking(booking_id)),
            slot_write=False,
        )

    @BaseService.measure_operation("complete_booking")
    def complete_booking(self, booking_id: str) -> Booking:
        """Mark an in-progress consultation as completed."""
        return self._run_write(
            "complete_booking",
            lambda: self.state_machine.complete(self._get_booking(booking_id)),
            slot_write=False,
        )

    # ========== Payment use cases ==========

    @BaseService.measure_operation("initiate_payment")
    def initiate_payment(
        self,
        booking_id: str,
        requester_id: str,
        method: PaymentMethod,
        phone_number: Optional[str] = None,
    ) -> PaymentIntentResponse:
        """
        Start paying for a booking; the amount is the provider's consultation fee.

        Confirmation happens later, when the gateway's outcome is reconciled.
        """
        with self.transaction():
            booking = self._get_owned_booking(booking_id, requester_id)
            provider = self.provider_repository.get_by_id(booking.provider_id)
            if provider is None:
                raise NotFoundException("Provider not found", code="PROVIDER_NOT_FOUND")
            amount = provider.consultation_fee
            currency = provider.currency

        payment = self.reconciliation_service.initiate(
            booking_id,
            amount=amount,
            method=method,
            currency=currency,
            phone_number=phone_number,
        )
        return PaymentIntentResponse.from_record(payment)

    def reconcile(self, notification: GatewayNotification) -> ReconciliationResult:
        """Apply a gateway notification (idempotent)."""
        return self.reconciliation_service.reconcile(notification)

    def reconcile_from_gateway(self, gateway_transaction_id: str) -> ReconciliationResult:
        """Verify a transaction with the gateway and apply its state."""
        return self.reconciliation_service.verify_and_reconcile(gateway_transaction_id)

    # ========== Reads ==========

    def get_booking_for_requester(self, booking_id: str, requester_id: str) -> Booking:
        return self._get_owned_booking(booking_id, requester_id)

    def list_bookings(
        self,
        requester_id: str,
        status: Optional[BookingStatus] = None,
        limit: int = 10,
        offset: int = 0,
    ) -> List[Booking]:
        return self.repository.list_for_requester(requester_id, status=status, limit=limit, offset=offset)

    def list_upcoming(self, requester_id: str, limit: int = 5) -> List[Booking]:
        """Scheduled or confirmed bookings that have not started yet, soonest first."""
        now_local = self.clock.now().astimezone(get_booking_timezone())
        return self.repository.list_upcoming_for_requester(requester_id, now_local, limit=limit)

    def get_booking_stats(self, requester_id: str) -> Dict[str, int]:
        counts = self.repository.get_status_counts_for_requester(requester_id)
        return {**counts, "total": sum(counts.values())}

    def list_provider_day(self, provider_id: str, booking_date: date) -> List[Booking]:
        """Live bookings holding a provider's slots on a day."""
        return self.repository.list_non_terminal(provider_id, booking_date)

    # ========== Helpers ==========

    def _run_write(self, operation: str, work: Callable[[], T], *, slot_write: bool) -> T:
        attempts = max(settings.booking_write_attempts, 1)
        attempt = 1
        while True:
            try:
                with self.transaction():
                    return work()
            except SlotUnavailableException:
                prometheus_metrics.inc_booking_conflict(operation, "precheck")
                raise
            except PersistenceConflictException as exc:
                self.logger.info(
                    f"{operation} lost a write race (attempt {attempt}/{attempts})",
                    extra={"constraint": exc.constraint},
                )
                if attempt < attempts:
                    attempt += 1
                    continue
                if slot_write:
                    prometheus_metrics.inc_booking_conflict(operation, "store")
                    raise SlotUnavailableException(details={"constraint": exc.constraint}) from exc
                raise

    def _get_booking(self, booking_id: str) -> Booking:
        booking = self.repository.get_by_id(booking_id)
        if booking is None:
            raise NotFoundException(f"Booking {booking_id} not found", code="BOOKING_NOT_FOUND")
        return booking

    def _get_owned_booking(self, booking_id: str, requester_id: str) -> Booking:
        booking = self.repository.get_for_requester(booking_id, requester_id)
        if booking is None:
            raise NotFoundException(f"Booking {booking_id} not found", code="BOOKING_NOT_FOUND")
        return booking

    def _get_bookable_provider(self, provider_id: str) -> Provider:
        provider = self.provider_repository.get_by_id(provider_id)
        if provider is None:
            raise NotFoundException("Provider not found", code="PROVIDER_NOT_FOUND")
        if not provider.is_active:
            raise BusinessRuleException(
                "This provider is not accepting bookings",
                code="PROVIDER_UNAVAILABLE",
                details={"provider_id": provider_id},
            )
        return provider
