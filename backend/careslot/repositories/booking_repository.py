# backend/careslot/repositories/booking_repository.py
"""
Booking Repository (slot store) for the CareSlot engine.

Conflict detection reads are advisory: the partial unique index
``uq_bookings_active_slot`` is what actually serialises concurrent writers,
and a lost race surfaces from ``insert``/``update`` as
PersistenceConflictException.
"""

from datetime import date, datetime, time
import logging
from typing import Dict, List, Optional

from sqlalchemy import and_, func, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.exceptions import RepositoryException
from ..models.booking import NON_TERMINAL_STATUSES, Booking, BookingStatus
from .base_repository import BaseRepository

logger = logging.getLogger(__name__)

_NON_TERMINAL_VALUES = [status.value for status in NON_TERMINAL_STATUSES]


class BookingRepository(BaseRepository[Booking]):
    """Repository for booking data access."""

    def __init__(self, db: Session):
        super().__init__(db, Booking)

    # ========== Slot store ==========

    def find_conflict(
        self,
        provider_id: str,
        booking_date: date,
        start_time: time,
        exclude_booking_id: Optional[str] = None,
    ) -> Optional[Booking]:
        """
        Return a live booking occupying the provider's slot, if any.

        Args:
            provider_id: Provider whose slot is checked
            booking_date: Appointment date
            start_time: Appointment start
            exclude_booking_id: Booking to ignore (the one being rescheduled)

        Returns:
            The conflicting booking or None
        """
        query = self.db.query(Booking).filter(
            Booking.provider_id == provider_id,
            Booking.booking_date == booking_date,
            Booking.start_time == start_time,
            Booking.status.in_(_NON_TERMINAL_VALUES),
        )
        if exclude_booking_id:
            query = query.filter(Booking.id != exclude_booking_id)
        return self._execute_first(query)

    def insert(self, booking: Booking) -> Booking:
        """Persist a new booking; raises PersistenceConflictException if the slot was claimed."""
        return self.add(booking)

    def update(self, booking: Booking) -> Booking:
        """Flush changes of a tracked booking (version-checked)."""
        return self.save(booking)

    def list_non_terminal(self, provider_id: str, booking_date: date) -> List[Booking]:
        """Live bookings for a provider on a day, ordered by start time."""
        query = (
            self.db.query(Booking)
            .filter(
                Booking.provider_id == provider_id,
                Booking.booking_date == booking_date,
                Booking.status.in_(_NON_TERMINAL_VALUES),
            )
            .order_by(Booking.start_time.asc())
        )
        return self._execute_query(query)

    # ========== Requester views ==========

    def get_for_requester(self, booking_id: str, requester_id: str) -> Optional[Booking]:
        query = self.db.query(Booking).filter(
            Booking.id == booking_id,
            Booking.requester_id == requester_id,
        )
        return self._execute_first(query)

    def list_for_requester(
        self,
        requester_id: str,
        status: Optional[BookingStatus] = None,
        limit: int = 10,
        offset: int = 0,
    ) -> List[Booking]:
        """Requester's bookings, most recent appointment first."""
        query = self.db.query(Booking).filter(Booking.requester_id == requester_id)
        if status is not None:
            query = query.filter(Booking.status == status.value)
        query = (
            query.order_by(Booking.booking_date.desc(), Booking.start_time.desc())
            .offset(offset)
            .limit(limit)
        )
        return self._execute_query(query)

    def list_upcoming_for_requester(
        self, requester_id: str, now_local: datetime, limit: int = 5
    ) -> List[Booking]:
        """
        Scheduled or confirmed bookings starting at or after ``now_local``.

        Args:
            requester_id: Requester whose bookings are listed
            now_local: Current time expressed in the booking timezone
            limit: Maximum rows returned
        """
        today = now_local.date()
        current = now_local.time().replace(microsecond=0, tzinfo=None)
        query = (
            self.db.query(Booking)
            .filter(
                Booking.requester_id == requester_id,
                Booking.status.in_([BookingStatus.SCHEDULED.value, BookingStatus.CONFIRMED.value]),
                or_(
                    Booking.booking_date > today,
                    and_(Booking.booking_date == today, Booking.start_time >= current),
                ),
            )
            .order_by(Booking.booking_date.asc(), Booking.start_time.asc())
            .limit(limit)
        )
        return self._execute_query(query)

    def get_status_counts_for_requester(self, requester_id: str) -> Dict[str, int]:
        """Count of the requester's bookings per status (every status present, zero-filled)."""
        try:
            rows = (
                self.db.query(Booking.status, func.count(Booking.id))
                .filter(Booking.requester_id == requester_id)
                .group_by(Booking.status)
                .all()
            )
        except SQLAlchemyError as e:
            self.logger.error(f"Error counting bookings for {requester_id}: {str(e)}")
            raise RepositoryException(f"Failed to count bookings: {str(e)}")
        counts = {status.value: 0 for status in BookingStatus}
        for status_value, total in rows:
            counts[status_value] = int(total)
        return counts
