"""Service providers used by the API layer and the workers."""

import pytest

from careslot.integrations.intasend_client import SimulatedGateway
from careslot.services import dependencies
from careslot.services.booking_service import BookingService
from careslot.services.payment_reconciliation_service import PaymentReconciliationService


@pytest.fixture(autouse=True)
def reset_gateway(monkeypatch):
    monkeypatch.setattr(dependencies, "_gateway", None)


class TestServiceProviders:
    def test_gateway_is_built_once_per_process(self):
        first = dependencies.get_payment_gateway()

        assert isinstance(first, SimulatedGateway)
        assert dependencies.get_payment_gateway() is first

    def test_booking_service_is_bound_to_request_session(self, db):
        service = dependencies.get_booking_service(db=db)

        assert isinstance(service, BookingService)
        assert service.db is db
        assert service.reconciliation_service.gateway is dependencies.get_payment_gateway()

    def test_reconciliation_service_shares_the_gateway(self, db):
        service = dependencies.get_reconciliation_service(db=db)

        assert isinstance(service, PaymentReconciliationService)
        assert service.db is db
        assert service.gateway is dependencies.get_payment_gateway()

    def test_explicit_gateway_wins(self, db, gateway, clock):
        service = dependencies.build_booking_service(db, gateway, clock=clock)

        assert service.reconciliation_service.gateway is gateway
        assert service.clock is clock
