# backend/careslot/repositories/factory.py
"""
Repository Factory for the CareSlot engine

Provides centralized creation of repository instances,
ensuring consistent initialization and dependency injection.
"""

from typing import TYPE_CHECKING

from sqlalchemy.orm import Session

# Avoid circular imports
if TYPE_CHECKING:
    from .booking_repository import BookingRepository
    from .payment_repository import PaymentRepository
    from .provider_repository import ProviderRepository
    from .settlement_job_repository import SettlementJobRepository


class RepositoryFactory:
    """
    Factory class for creating repository instances.

    Every repository built for one unit of work shares the caller's session,
    so their writes commit or roll back together.
    """

    @staticmethod
    def create_booking_repository(db: Session) -> "BookingRepository":
        """Create repository for booking (slot store) operations."""
        from .booking_repository import BookingRepository

        return BookingRepository(db)

    @staticmethod
    def create_payment_repository(db: Session) -> "PaymentRepository":
        """Create repository for payment records."""
        from .payment_repository import PaymentRepository

        return PaymentRepository(db)

    @staticmethod
    def create_provider_repository(db: Session) -> "ProviderRepository":
        from .provider_repository import ProviderRepository

        return ProviderRepository(db)

    @staticmethod
    def create_settlement_job_repository(db: Session) -> "SettlementJobRepository":
        """Create repository for scheduled settlement jobs."""
        from .settlement_job_repository import SettlementJobRepository

        return SettlementJobRepository(db)
