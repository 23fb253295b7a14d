# backend/tests/unit/test_intasend_client.py
"""IntaSend client error mapping and gateway selection."""

from decimal import Decimal
import json

import httpx
import pytest

from careslot.core.config import Settings
from careslot.core.exceptions import (
    GatewayException,
    GatewayRejectedException,
    GatewayTimeoutException,
    GatewayUnavailableException,
)
from careslot.integrations.intasend_client import IntaSendGateway, SimulatedGateway
from careslot.integrations.payment_gateway import build_payment_gateway


def _gateway(handler) -> IntaSendGateway:
    return IntaSendGateway(
        api_key="ISSecretKey_test",
        base_url="https://sandbox.intasend.test/api/v1/",
        timeout=3.0,
        callback_url="https://careslot.test/api/payments/intasend/callback",
        frontend_url="https://app.careslot.test/",
        transport=httpx.MockTransport(handler),
    )


def _initiate(gateway: IntaSendGateway):
    return gateway.initiate_payment(
        amount=Decimal("50.00"),
        currency="KES",
        reference="HC_booking_ref",
        method="mobile_money",
        metadata={"booking_id": "booking-1"},
        phone_number="254700000000",
    )


class TestIntaSendGateway:
    def test_initiate_payment_posts_checkout_request(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["method"] = request.method
            seen["url"] = str(request.url)
            seen["auth"] = request.headers["Authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(
                200,
                json={"payment_id": "PAY-123", "checkout_url": "https://pay.intasend.test/PAY-123"},
            )

        intent = _initiate(_gateway(handler))

        assert seen["method"] == "POST"
        assert seen["url"] == "https://sandbox.intasend.test/api/v1/payment/initiate/"
        assert seen["auth"] == "Bearer ISSecretKey_test"
        assert seen["body"]["amount"] == "50.00"
        assert seen["body"]["api_ref"] == "HC_booking_ref"
        assert seen["body"]["phone_number"] == "254700000000"
        assert seen["body"]["success_url"] == "https://app.careslot.test/payment/success"
        assert intent.gateway_transaction_id == "PAY-123"
        assert intent.redirect_url == "https://pay.intasend.test/PAY-123"
        assert intent.requests_settlement is False

    def test_response_without_payment_id_is_malformed(self):
        gateway = _gateway(lambda request: httpx.Response(200, json={"checkout_url": "https://x"}))

        with pytest.raises(GatewayException) as exc_info:
            _initiate(gateway)
        assert exc_info.value.code == "GATEWAY_MALFORMED_RESPONSE"

    def test_timeout_is_retryable(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        with pytest.raises(GatewayTimeoutException) as exc_info:
            _initiate(_gateway(handler))
        assert exc_info.value.retryable is True
        assert exc_info.value.details == {"operation": "initiate_payment", "timeout_seconds": 3.0}

    @pytest.mark.parametrize("status_code", [500, 503, 429])
    def test_server_errors_map_to_unavailable(self, status_code):
        gateway = _gateway(lambda request: httpx.Response(status_code, json={"detail": "down"}))

        with pytest.raises(GatewayUnavailableException) as exc_info:
            _initiate(gateway)
        assert exc_info.value.details["upstream_status"] == status_code

    def test_client_errors_map_to_rejected(self):
        gateway = _gateway(lambda request: httpx.Response(400, json={"errors": ["invalid amount"]}))

        with pytest.raises(GatewayRejectedException) as exc_info:
            _initiate(gateway)
        assert exc_info.value.retryable is False
        assert exc_info.value.details["error_body"] == {"errors": ["invalid amount"]}

    def test_connection_failure_maps_to_unavailable(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(GatewayUnavailableException):
            _initiate(_gateway(handler))

    def test_invalid_json_is_malformed(self):
        gateway = _gateway(lambda request: httpx.Response(200, text="<html>oops</html>"))

        with pytest.raises(GatewayException) as exc_info:
            _initiate(gateway)
        assert exc_info.value.code == "GATEWAY_MALFORMED_RESPONSE"

    def test_fetch_payment_status(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.method == "GET"
            assert request.url.path == "/api/v1/payment/status/PAY-123/"
            return httpx.Response(200, json={"payment_id": "PAY-123", "state": "COMPLETE"})

        assert _gateway(handler).fetch_payment_status("PAY-123")["state"] == "COMPLETE"

    def test_missing_api_key_is_refused(self):
        with pytest.raises(ValueError):
            IntaSendGateway(api_key="")


class TestSimulatedGateway:
    def test_intent_requests_delayed_settlement(self):
        gateway = SimulatedGateway(settle_after_seconds=7)

        intent = gateway.initiate_payment(
            amount=Decimal("75.00"),
            currency="USD",
            reference="HC_ref",
            method="card",
            metadata={},
        )

        assert intent.gateway_transaction_id.startswith("SIM_CARD_")
        assert intent.redirect_url is None
        assert intent.requests_settlement is True
        assert intent.settle_after_seconds == 7
        assert intent.settle_status == "COMPLETED"
        assert intent.raw["api_ref"] == "HC_ref"
        assert gateway.fetch_payment_status(intent.gateway_transaction_id)["state"] == "PENDING"


class TestBuildPaymentGateway:
    def test_simulated_by_default(self):
        settings = Settings(payment_gateway="simulated", environment="development")

        assert isinstance(build_payment_gateway(settings), SimulatedGateway)

    def test_simulated_is_refused_in_production(self):
        settings = Settings(payment_gateway="simulated", environment="production")

        with pytest.raises(ValueError):
            build_payment_gateway(settings)

    def test_intasend_with_key(self):
        settings = Settings(payment_gateway="intasend", intasend_api_key="ISSecretKey_live")

        assert isinstance(build_payment_gateway(settings), IntaSendGateway)

    def test_intasend_without_key_falls_back_outside_production(self):
        settings = Settings(payment_gateway="intasend", intasend_api_key="", environment="staging")

        assert isinstance(build_payment_gateway(settings), SimulatedGateway)

    def test_intasend_without_key_fails_in_production(self):
        settings = Settings(payment_gateway="intasend", intasend_api_key="", environment="production")

        with pytest.raises(ValueError):
            build_payment_gateway(settings)
