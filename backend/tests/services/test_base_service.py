# backend/tests/services/test_base_service.py
"""Transaction handling and operation metrics shared by all services."""

from decimal import Decimal

import pytest

from careslot.core.exceptions import PersistenceConflictException, ValidationException
from careslot.models.provider import Provider
from careslot.monitoring.prometheus_metrics import REGISTRY
from careslot.services.base import BaseService


class ExampleService(BaseService):
    @BaseService.measure_operation("add_provider")
    def add_provider(self, provider_id: str, fee: str) -> Provider:
        with self.transaction():
            provider = Provider(id=provider_id, display_name="Dr. Test", consultation_fee=Decimal(fee))
            self.db.add(provider)
        return provider

    @BaseService.measure_operation("explode")
    def explode(self) -> None:
        with self.transaction():
            self.db.add(Provider(display_name="Dr. Rollback", consultation_fee=Decimal("10.00")))
            raise ValidationException("nope")


class TestBaseService:
    def test_commit_conflict_becomes_persistence_conflict(self, db):
        service = ExampleService(db)
        service.add_provider("01HPROVIDER00000000000000A", "40.00")
        db.expunge_all()

        with pytest.raises(PersistenceConflictException):
            service.add_provider("01HPROVIDER00000000000000A", "40.00")

    def test_domain_errors_roll_back_and_propagate(self, db):
        service = ExampleService(db)

        with pytest.raises(ValidationException):
            service.explode()

        assert db.query(Provider).filter(Provider.display_name == "Dr. Rollback").count() == 0

    def test_operation_outcomes_are_exported(self, db):
        service = ExampleService(db)
        labels = {"service": "ExampleService", "operation": "explode"}
        before = REGISTRY.get_sample_value("careslot_service_operations_total", {**labels, "status": "error"}) or 0.0

        with pytest.raises(ValidationException):
            service.explode()

        assert REGISTRY.get_sample_value("careslot_service_operations_total", {**labels, "status": "error"}) == (
            before + 1
        )
        assert REGISTRY.get_sample_value("careslot_service_operation_duration_seconds_count", labels) >= 1
