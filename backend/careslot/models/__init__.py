"""SQLAlchemy models. Importing this package registers every table on Base.metadata."""

from .booking import Booking, BookingStatus, ConsultationType
from .payment import PaymentMethod, PaymentRecord, PaymentStatus
from .provider import Provider
from .settlement_job import SettlementJob, SettlementJobStatus

__all__ = [
    "Booking",
    "BookingStatus",
    "ConsultationType",
    "PaymentMethod",
    "PaymentRecord",
    "PaymentStatus",
    "Provider",
    "SettlementJob",
    "SettlementJobStatus",
]
