# backend/careslot/services/__init__.py
"""
Service layer for the CareSlot engine.

Services own transaction boundaries; repositories below them only flush.
"""

from .base import BaseService
from .booking_service import BookingService
from .payment_reconciliation_service import (
    PaymentReconciliationService,
    ReconciliationOutcome,
    ReconciliationResult,
)
from .settlement_scheduler import SettlementScheduler

__all__ = [
    "BaseService",
    "BookingService",
    "PaymentReconciliationService",
    "ReconciliationOutcome",
    "ReconciliationResult",
    "SettlementScheduler",
]
