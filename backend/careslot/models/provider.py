"""Provider read model: who can be booked and what a consultation costs."""

from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, List, Optional

from sqlalchemy import Boolean, DateTime, Numeric, String, func
from sqlalchemy.orm import Mapped, mapped_column, relationship
import ulid

from careslot.database import Base

if TYPE_CHECKING:
    from careslot.models.booking import Booking


class Provider(Base):
    """Bookable provider. Profile management lives outside this engine."""

    __tablename__ = "providers"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    display_name: Mapped[str] = mapped_column(String(200), nullable=False)
    specialty: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    consultation_fee: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), onupdate=func.now())

    bookings: Mapped[List["Booking"]] = relationship("Booking", back_populates="provider")

    def __repr__(self) -> str:
        return f"<Provider(id={self.id}, name={self.display_name}, active={self.is_active})>"
