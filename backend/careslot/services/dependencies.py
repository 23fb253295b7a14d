"""
Service wiring for the API layer and background workers.

FastAPI routes obtain services through the ``get_*`` providers; Celery tasks
and scripts call the ``build_*`` functions with their own session.
"""

import logging
from typing import Optional

from fastapi import Depends
from sqlalchemy.orm import Session

from ..core.clock import Clock, system_clock
from ..core.config import settings
from ..database import get_db
from ..integrations.payment_gateway import PaymentGateway, build_payment_gateway
from .booking_service import BookingService
from .payment_reconciliation_service import PaymentReconciliationService

logger = logging.getLogger(__name__)

_gateway: Optional[PaymentGateway] = None


def get_payment_gateway() -> PaymentGateway:
    """Process-wide gateway built from settings on first use."""
    global _gateway
    if _gateway is None:
        _gateway = build_payment_gateway(settings)
    return _gateway


def build_reconciliation_service(
    db: Session,
    gateway: Optional[PaymentGateway] = None,
    clock: Clock = system_clock,
) -> PaymentReconciliationService:
    return PaymentReconciliationService(db, gateway or get_payment_gateway(), clock=clock)


def build_booking_service(
    db: Session,
    gateway: Optional[PaymentGateway] = None,
    clock: Clock = system_clock,
) -> BookingService:
    return BookingService(db, gateway or get_payment_gateway(), clock=clock)


def get_booking_service(db: Session = Depends(get_db)) -> BookingService:
    """Provide a booking service bound to the request's session."""
    return build_booking_service(db)


def get_reconciliation_service(db: Session = Depends(get_db)) -> PaymentReconciliationService:
    """Provide the reconciliation service for webhook handlers."""
    return build_reconciliation_service(db)
