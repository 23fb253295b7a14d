# backend/careslot/domain/booking_state_machine.py
"""
Booking state machine.

Validates and applies transitions on a single booking:

    SCHEDULED   -> CONFIRMED | CANCELLED | SCHEDULED (reschedule)
    CONFIRMED   -> IN_PROGRESS | CANCELLED | SCHEDULED (reschedule)
    IN_PROGRESS -> COMPLETED | CANCELLED
    COMPLETED, CANCELLED are terminal

Every rule is checked before any attribute is written, so a rejected
transition leaves the booking exactly as it was. Persistence goes through
the slot store; committing is the caller's job.
"""

from __future__ import annotations

from datetime import date, datetime, time
import logging
from typing import Dict, FrozenSet, Optional

from ..core.clock import Clock, system_clock
from ..core.config import settings
from ..core.exceptions import (
    CancellationWindowClosedException,
    InvalidTransitionException,
    PastAppointmentException,
    SlotUnavailableException,
    ValidationException,
)
from ..core.timezone_utils import appointment_start_utc, hours_between
from ..models.booking import Booking, BookingStatus, ConsultationType
from ..repositories.booking_repository import BookingRepository

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: Dict[BookingStatus, FrozenSet[BookingStatus]] = {
    BookingStatus.SCHEDULED: frozenset(
        {BookingStatus.SCHEDULED, BookingStatus.CONFIRMED, BookingStatus.CANCELLED}
    ),
    BookingStatus.CONFIRMED: frozenset(
        {BookingStatus.SCHEDULED, BookingStatus.IN_PROGRESS, BookingStatus.CANCELLED}
    ),
    BookingStatus.IN_PROGRESS: frozenset({BookingStatus.COMPLETED, BookingStatus.CANCELLED}),
    BookingStatus.COMPLETED: frozenset(),
    BookingStatus.CANCELLED: frozenset(),
}


class BookingStateMachine:
    """Applies lifecycle transitions against the clock and the slot store."""

    def __init__(
        self,
        slot_store: BookingRepository,
        clock: Clock = system_clock,
        grace_hours: Optional[float] = None,
        tz_name: Optional[str] = None,
    ):
        self.slot_store = slot_store
        self.clock = clock
        self.grace_hours = settings.cancellation_grace_hours if grace_hours is None else grace_hours
        self.tz_name = tz_name

    # Queries

    @staticmethod
    def can_transition(current: BookingStatus, target: BookingStatus) -> bool:
        return target in ALLOWED_TRANSITIONS[current]

    def start_of(self, booking: Booking) -> datetime:
        return appointment_start_utc(booking.booking_date, booking.start_time, self.tz_name)

    # Transitions

    def book(
        self,
        *,
        requester_id: str,
        provider_id: str,
        booking_date: date,
        start_time: time,
        duration_minutes: Optional[int] = None,
        consultation_type: ConsultationType = ConsultationType.VIDEO,
        notes: Optional[str] = None,
    ) -> Booking:
        """
        Create a SCHEDULED booking for a free slot in the future.

        Raises:
            ValidationException: Non-positive duration or a start time that is not a whole minute
            PastAppointmentException: Start is not strictly after now
            SlotUnavailableException: The provider already holds a live booking for the slot
            PersistenceConflictException: A concurrent writer claimed the slot first
        """
        duration = settings.default_duration_minutes if duration_minutes is None else duration_minutes
        if duration <= 0:
            raise ValidationException(
                "Duration must be positive",
                code="INVALID_DURATION",
                details={"duration_minutes": duration},
            )
        start_time = self._slot_time(start_time)
        self._ensure_future(booking_date, start_time)
        self._ensure_free(provider_id, booking_date, start_time)

        booking = Booking(
            requester_id=requester_id,
            provider_id=provider_id,
            booking_date=booking_date,
            start_time=start_time,
            duration_minutes=duration,
            status=BookingStatus.SCHEDULED.value,
            consultation_type=ConsultationType(consultation_type).value,
            notes=notes,
        )
        return self.slot_store.insert(booking)

    def reschedule(self, booking: Booking, new_date: date, new_time: time) -> Booking:
        """
        Move a SCHEDULED or CONFIRMED booking to a new slot.

        The booking returns to SCHEDULED; whether an earlier payment still
        confirms it is decided by the payment side.

        Raises:
            InvalidTransitionException: Booking is not SCHEDULED or CONFIRMED
            ValidationException: New start time is not a whole minute
            PastAppointmentException: New start is not strictly after now
            SlotUnavailableException: Another live booking holds the new slot
        """
        self._require(booking, BookingStatus.SCHEDULED, "reschedule")
        new_time = self._slot_time(new_time)
        self._ensure_future(new_date, new_time)
        self._ensure_free(booking.provider_id, new_date, new_time, exclude_booking_id=booking.id)

        previous = booking.status
        booking.booking_date = new_date
        booking.start_time = new_time
        booking.status = BookingStatus.SCHEDULED.value
        booking.confirmed_at = None
        self.slot_store.update(booking)
        logger.info(
            "Booking rescheduled",
            extra={"booking_id": booking.id, "previous_status": previous, "date": str(new_date)},
        )
        return booking

    def cancel(self, booking: Booking, cancelled_by_id: str, reason: Optional[str] = None) -> Booking:
        """
        Cancel a live booking outside the grace window.

        Raises:
            InvalidTransitionException: Booking is already terminal
            CancellationWindowClosedException: Less than the grace window remains before the start
        """
        self._require(booking, BookingStatus.CANCELLED, "cancel")
        now = self.clock.now()
        hours_until_start = hours_between(now, self.start_of(booking))
        if hours_until_start <= self.grace_hours:
            raise CancellationWindowClosedException(self.grace_hours, hours_until_start)

        booking.status = BookingStatus.CANCELLED.value
        booking.cancelled_at = now
        booking.cancelled_by_id = cancelled_by_id
        booking.cancellation_reason = reason
        self.slot_store.update(booking)
        return booking

    def confirm_via_payment(self, booking: Booking) -> bool:
        """
        Confirm a booking whose payment completed.

        Idempotent: a booking that is already confirmed (or further along)
        is left alone.

        Returns:
            True if the booking changed
        """
        current = booking.status_enum
        if current in (BookingStatus.CONFIRMED, BookingStatus.IN_PROGRESS, BookingStatus.COMPLETED):
            return False
        self._require(booking, BookingStatus.CONFIRMED, "confirm")

        booking.status = BookingStatus.CONFIRMED.value
        booking.confirmed_at = self.clock.now()
        self.slot_store.update(booking)
        return True

    def start(self, booking: Booking) -> Booking:
        self._require(booking, BookingStatus.IN_PROGRESS, "start")
        booking.status = BookingStatus.IN_PROGRESS.value
        self.slot_store.update(booking)
        return booking

    def complete(self, booking: Booking) -> Booking:
        """Finish a consultation. COMPLETED is terminal."""
        self._require(booking, BookingStatus.COMPLETED, "complete")
        booking.status = BookingStatus.COMPLETED.value
        booking.completed_at = self.clock.now()
        self.slot_store.update(booking)
        return booking

    # Guards

    def _require(self, booking: Booking, target: BookingStatus, action: str) -> None:
        if not self.can_transition(booking.status_enum, target):
            raise InvalidTransitionException(booking.id, booking.status, action)

    @staticmethod
    def _slot_time(value: time) -> time:
        # Slots are keyed by minute; seconds would make two requests for the same slot differ
        if value.second or value.microsecond:
            raise ValidationException(
                "Start time must be a whole minute",
                code="INVALID_START_TIME",
                details={"start_time": value.isoformat()},
            )
        return value.replace(tzinfo=None)

    def _ensure_future(self, booking_date: date, start_time: time) -> None:
        now = self.clock.now()
        start = appointment_start_utc(booking_date, start_time, self.tz_name)
        if start <= now:
            raise PastAppointmentException(start.isoformat(), now.isoformat())

    def _ensure_free(
        self,
        provider_id: str,
        booking_date: date,
        start_time: time,
        exclude_booking_id: Optional[str] = None,
    ) -> None:
        conflict = self.slot_store.find_conflict(
            provider_id, booking_date, start_time, exclude_booking_id=exclude_booking_id
        )
        if conflict is not None:
            raise SlotUnavailableException(
                details={
                    "provider_id": provider_id,
                    "date": booking_date.isoformat(),
                    "start_time": start_time.strftime("%H:%M"),
                    "conflicting_booking_id": conflict.id,
                }
            )
