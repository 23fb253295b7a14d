# backend/careslot/repositories/__init__.py
"""
Repository layer for the CareSlot engine.

Repositories flush but never commit; transaction boundaries belong to the
service layer.
"""

from .base_repository import BaseRepository
from .booking_repository import BookingRepository
from .factory import RepositoryFactory
from .payment_repository import PaymentRepository
from .provider_repository import ProviderRepository
from .settlement_job_repository import SettlementJobRepository

__all__ = [
    "BaseRepository",
    "BookingRepository",
    "PaymentRepository",
    "ProviderRepository",
    "RepositoryFactory",
    "SettlementJobRepository",
]
