# backend/careslot/models/booking.py
"""
Booking model for the CareSlot engine.

A booking holds a provider's (date, start time) slot for a requester.
Bookings are never deleted: cancellation is a status so the history of a
slot stays auditable. Status changes go through the booking state machine.
"""

from enum import Enum
import logging

from sqlalchemy import (
    CheckConstraint,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Time,
    text,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import ulid

from ..database import Base

logger = logging.getLogger(__name__)


class BookingStatus(str, Enum):
    """Booking lifecycle statuses."""

    SCHEDULED = "SCHEDULED"  # Created, awaiting payment
    CONFIRMED = "CONFIRMED"  # Payment observed as completed
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


NON_TERMINAL_STATUSES = frozenset(
    {BookingStatus.SCHEDULED, BookingStatus.CONFIRMED, BookingStatus.IN_PROGRESS}
)
TERMINAL_STATUSES = frozenset({BookingStatus.COMPLETED, BookingStatus.CANCELLED})

_NON_TERMINAL_SQL = "status IN ('SCHEDULED', 'CONFIRMED', 'IN_PROGRESS')"


class ConsultationType(str, Enum):
    """How the consultation is held."""

    VIDEO = "video"
    AUDIO = "audio"
    CHAT = "chat"


class Booking(Base):
    """
    Slot reservation between a requester and a provider.

    The partial unique index ``uq_bookings_active_slot`` is the store-level
    guard against double booking: two live bookings can never share a
    provider/date/start, whatever the interleaving of concurrent writers.
    """

    __tablename__ = "bookings"

    id = Column(String(26), primary_key=True, index=True, default=lambda: str(ulid.ULID()))

    requester_id = Column(String(26), nullable=False, index=True)
    provider_id = Column(String(26), ForeignKey("providers.id"), nullable=False)

    booking_date = Column(Date, nullable=False, index=True)
    start_time = Column(Time, nullable=False)
    duration_minutes = Column(Integer, nullable=False, default=30)

    status = Column(String(20), nullable=False, default=BookingStatus.SCHEDULED.value, index=True)
    consultation_type = Column(String(10), nullable=False, default=ConsultationType.VIDEO.value)
    notes = Column(Text, nullable=True)

    # Timestamps
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
    confirmed_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)

    # Cancellation tracking
    cancelled_by_id = Column(String(26), nullable=True)
    cancellation_reason = Column(Text, nullable=True)

    # Optimistic concurrency counter
    version = Column(Integer, nullable=False, default=1)

    provider = relationship("Provider", back_populates="bookings")
    payments = relationship("PaymentRecord", back_populates="booking")

    __table_args__ = (
        CheckConstraint(
            "status IN ('SCHEDULED', 'CONFIRMED', 'IN_PROGRESS', 'COMPLETED', 'CANCELLED')",
            name="ck_bookings_status",
        ),
        CheckConstraint(
            "consultation_type IN ('video', 'audio', 'chat')",
            name="ck_bookings_consultation_type",
        ),
        CheckConstraint("duration_minutes > 0", name="check_duration_positive"),
        Index(
            "uq_bookings_active_slot",
            "provider_id",
            "booking_date",
            "start_time",
            unique=True,
            postgresql_where=text(_NON_TERMINAL_SQL),
            sqlite_where=text(_NON_TERMINAL_SQL),
        ),
        Index("ix_bookings_provider_date", "provider_id", "booking_date"),
    )

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<Booking {self.id}: requester={self.requester_id}, "
            f"provider={self.provider_id}, date={self.booking_date}, "
            f"time={self.start_time}, status={self.status}>"
        )

    @property
    def status_enum(self) -> BookingStatus:
        return BookingStatus(self.status)
