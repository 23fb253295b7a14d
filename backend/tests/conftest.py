# backend/tests/conftest.py
"""
Shared fixtures for the CareSlot test suite.

Every test gets a fresh in-memory SQLite database with the full schema, a
FixedClock pinned to a known instant, and the simulated payment gateway.
"""

from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from careslot.core.clock import FixedClock
from careslot.database import Base
from careslot.integrations.intasend_client import SimulatedGateway
from careslot.models import Booking, BookingStatus, Provider

# Import models so Base.metadata is populated for create_all.
import careslot.models  # noqa: F401
from careslot.services.booking_service import BookingService
from tests.utils.time import NOW, slot_at

REQUESTER_ID = "01HREQUESTER0000000000000A"


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        future=True,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, future=True)


@pytest.fixture
def db(session_factory) -> Session:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(NOW)


@pytest.fixture
def gateway() -> SimulatedGateway:
    return SimulatedGateway(settle_after_seconds=5)


@pytest.fixture
def provider(db) -> Provider:
    provider = Provider(
        display_name="Dr. Sarah Johnson",
        specialty="Family Medicine",
        consultation_fee=Decimal("50.00"),
        currency="USD",
        is_active=True,
    )
    db.add(provider)
    db.commit()
    return provider


@pytest.fixture
def booking_service(db, gateway, clock) -> BookingService:
    return BookingService(db, gateway, clock=clock)


@pytest.fixture
def reconciliation_service(booking_service):
    return booking_service.reconciliation_service


@pytest.fixture
def make_booking(db, provider, clock):
    """Insert a booking directly, bypassing the lifecycle rules."""

    def _make(
        status: BookingStatus = BookingStatus.SCHEDULED,
        requester_id: str = REQUESTER_ID,
        hours_ahead: float = 24,
        provider_id: str | None = None,
    ) -> Booking:
        booking_date, start_time = slot_at(clock, hours=hours_ahead)
        booking = Booking(
            requester_id=requester_id,
            provider_id=provider_id or provider.id,
            booking_date=booking_date,
            start_time=start_time,
            duration_minutes=30,
            status=status.value,
        )
        db.add(booking)
        db.commit()
        return booking

    return _make
