"""
Payment models for gateway-settled consultation fees.

A PaymentRecord is created locally before the gateway is called, so it can
be correlated through ``reference`` even while ``external_transaction_id`` is
still unknown. Status only ever moves forward: PENDING to COMPLETED or FAILED.

Each gateway call runs under an attempt lease: ``attempts`` numbers the
claims and ``attempt_started_at`` dates the latest one. Only the holder of
the current attempt may bind the gateway transaction id.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Any, Optional

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Index, Integer, Numeric, String, Text, func, text
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.types import JSON
import ulid

from careslot.database import Base

if TYPE_CHECKING:
    from careslot.models.booking import Booking


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


# Statuses that block a new payment attempt for the same booking
ACTIVE_PAYMENT_STATUSES = frozenset({PaymentStatus.PENDING, PaymentStatus.COMPLETED})

_ACTIVE_SQL = "status IN ('PENDING', 'COMPLETED')"


class PaymentMethod(str, Enum):
    CARD = "card"
    MOBILE_MONEY = "mobile_money"
    INTASEND = "intasend"


class PaymentRecord(Base):
    """Local ledger entry for one payment attempt against a booking."""

    __tablename__ = "payments"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    booking_id: Mapped[str] = mapped_column(String(26), ForeignKey("bookings.id"), nullable=False, index=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    method: Mapped[str] = mapped_column(String(20), nullable=False)
    reference: Mapped[str] = mapped_column(String(80), unique=True, nullable=False)
    external_transaction_id: Mapped[Optional[str]] = mapped_column(String(100), unique=True, nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=PaymentStatus.PENDING.value)
    checkout_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    raw_gateway_payload: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    attempt_started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    booking: Mapped["Booking"] = relationship("Booking", back_populates="payments")

    __table_args__ = (
        CheckConstraint(
            "status IN ('PENDING', 'COMPLETED', 'FAILED', 'REFUNDED')",
            name="ck_payments_status",
        ),
        CheckConstraint(
            "method IN ('card', 'mobile_money', 'intasend')",
            name="ck_payments_method",
        ),
        CheckConstraint("amount >= 0", name="check_amount_non_negative"),
        Index(
            "uq_payments_active_booking",
            "booking_id",
            unique=True,
            postgresql_where=text(_ACTIVE_SQL),
            sqlite_where=text(_ACTIVE_SQL),
        ),
    )

    def __repr__(self) -> str:
        return f"<PaymentRecord(booking_id={self.booking_id}, amount={self.amount}, status={self.status})>"

    @property
    def status_enum(self) -> PaymentStatus:
        return PaymentStatus(self.status)
