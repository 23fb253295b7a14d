# backend/tests/unit/test_gateway_notification.py
"""Decoding of gateway callbacks into GatewayNotification."""

from pydantic import ValidationError
import pytest

from careslot.core.exceptions import ValidationException
from careslot.schemas.payment import GatewayNotification, NotificationStatus


class TestFromIntaSend:
    @pytest.mark.parametrize(
        "state, expected",
        [
            ("COMPLETE", NotificationStatus.COMPLETED),
            ("complete", NotificationStatus.COMPLETED),
            ("COMPLETED", NotificationStatus.COMPLETED),
            ("FAILED", NotificationStatus.FAILED),
            ("CANCELLED", NotificationStatus.FAILED),
            ("PENDING", NotificationStatus.PENDING),
            ("PROCESSING", NotificationStatus.PENDING),
            ("RETRY", NotificationStatus.PENDING),
        ],
    )
    def test_state_mapping(self, state, expected):
        notification = GatewayNotification.from_intasend({"payment_id": "TX-1", "state": state})

        assert notification.status == expected

    def test_callback_fields_are_extracted(self):
        raw = {
            "invoice_id": "INV-42",
            "state": "COMPLETE",
            "api_ref": "CS-01HBOOKING-ABC",
            "value": "50.00",
        }

        notification = GatewayNotification.from_intasend(raw)

        assert notification.gateway_transaction_id == "INV-42"
        assert notification.reference == "CS-01HBOOKING-ABC"
        assert notification.payload == raw

    def test_payment_id_wins_over_invoice_id(self):
        notification = GatewayNotification.from_intasend(
            {"payment_id": "PAY-1", "invoice_id": "INV-1", "state": "PENDING"}
        )

        assert notification.gateway_transaction_id == "PAY-1"
        assert notification.reference is None

    def test_unknown_state_is_rejected(self):
        with pytest.raises(ValidationException) as exc_info:
            GatewayNotification.from_intasend({"payment_id": "TX-1", "state": "REVERSED"})

        assert exc_info.value.code == "MALFORMED_NOTIFICATION"
        assert exc_info.value.details["state"] == "REVERSED"

    def test_missing_state_is_rejected(self):
        with pytest.raises(ValidationException):
            GatewayNotification.from_intasend({"payment_id": "TX-1"})

    def test_missing_transaction_id_is_rejected(self):
        with pytest.raises(ValidationException) as exc_info:
            GatewayNotification.from_intasend({"state": "COMPLETE", "api_ref": "CS-REF"})

        assert exc_info.value.code == "MALFORMED_NOTIFICATION"

    def test_non_mapping_payload_is_rejected(self):
        with pytest.raises(ValidationException):
            GatewayNotification.from_intasend(["COMPLETE"])  # type: ignore[arg-type]


class TestNotificationModel:
    def test_notification_is_immutable(self):
        notification = GatewayNotification(gateway_transaction_id="TX-1", status=NotificationStatus.COMPLETED)

        with pytest.raises(ValidationError):
            notification.status = NotificationStatus.FAILED

    def test_unknown_fields_are_forbidden(self):
        with pytest.raises(ValidationError):
            GatewayNotification(
                gateway_transaction_id="TX-1",
                status=NotificationStatus.COMPLETED,
                amount="50.00",
            )
