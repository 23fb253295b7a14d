"""Minimal IntaSend API client used to collect consultation fees."""

from __future__ import annotations

from decimal import Decimal
import json
import logging
from typing import Any, Dict, Optional, cast

import httpx
from pydantic import SecretStr
import ulid

from ..core.exceptions import (
    GatewayException,
    GatewayRejectedException,
    GatewayTimeoutException,
    GatewayUnavailableException,
)
from .payment_gateway import GatewayPaymentIntent

logger = logging.getLogger(__name__)


class IntaSendGateway:
    """Thin client for the IntaSend checkout API."""

    def __init__(
        self,
        *,
        api_key: str | SecretStr,
        base_url: str = "https://api.intasend.com",
        timeout: float = 10.0,
        callback_url: str | None = None,
        frontend_url: str | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        secret_value = api_key.get_secret_value() if isinstance(api_key, SecretStr) else api_key
        if not secret_value:
            raise ValueError("IntaSend API key must be provided")

        self._api_key = secret_value
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._callback_url = callback_url
        self._frontend_url = frontend_url.rstrip("/") if frontend_url else None
        self._transport = transport

    def initiate_payment(
        self,
        *,
        amount: Decimal,
        currency: str,
        reference: str,
        method: str,
        metadata: Dict[str, Any],
        phone_number: Optional[str] = None,
    ) -> GatewayPaymentIntent:
        """Create a hosted checkout for the payment identified by ``reference``."""

        body: Dict[str, Any] = {
            "amount": str(amount),
            "currency": currency,
            "payment_method": method,
            "api_ref": reference,
            "callback_url": self._callback_url,
            "metadata": metadata,
        }
        if self._frontend_url:
            body["success_url"] = f"{self._frontend_url}/payment/success"
            body["fail_url"] = f"{self._frontend_url}/payment/failed"
        if phone_number:
            body["phone_number"] = phone_number

        data = self.request(
            "POST",
            "/payment/initiate/",
            operation="initiate_payment",
            json_body={key: value for key, value in body.items() if value is not None},
        )
        payment_id = data.get("payment_id") or data.get("id")
        if not payment_id:
            logger.error("IntaSend initiate response without payment id: %s", str(data)[:500])
            raise GatewayException(
                "Payment service returned an incomplete response",
                code="GATEWAY_MALFORMED_RESPONSE",
                details={"operation": "initiate_payment"},
            )
        return GatewayPaymentIntent(
            gateway_transaction_id=str(payment_id),
            redirect_url=data.get("checkout_url") or data.get("url"),
            raw=data,
        )

    def fetch_payment_status(self, gateway_transaction_id: str) -> Dict[str, Any]:
        """Fetch the authoritative state of a transaction."""

        if not gateway_transaction_id:
            raise ValueError("gateway_transaction_id must be provided")
        return self.request(
            "GET",
            f"/payment/status/{gateway_transaction_id}/",
            operation="fetch_payment_status",
        )

    def request(
        self,
        method: str,
        path: str,
        *,
        operation: str,
        json_body: Dict[str, Any] | None = None,
    ) -> Dict[str, Any]:
        """Perform a raw IntaSend request and return the parsed JSON payload."""

        url = f"{self._base_url}{path}"
        with httpx.Client(
            timeout=self._timeout,
            transport=self._transport,
            headers={
                "Accept": "application/json",
                "Authorization": f"Bearer {self._api_key}",
            },
        ) as client:
            try:
                response = client.request(method, url, json=json_body)
                response.raise_for_status()
            except httpx.TimeoutException as exc:
                logger.error("IntaSend timeout for %s %s after %ss", method, path, self._timeout)
                raise GatewayTimeoutException(operation, self._timeout) from exc
            except httpx.HTTPStatusError as exc:
                status = exc.response.status_code
                logger.error(
                    "IntaSend API error %s for %s %s: %s",
                    status,
                    method,
                    path,
                    exc.response.text[:500],
                )
                if status >= 500 or status == 429:
                    raise GatewayUnavailableException(operation, upstream_status=status) from exc
                error_payload: Any
                try:
                    error_payload = exc.response.json()
                except json.JSONDecodeError:
                    error_payload = exc.response.text
                raise GatewayRejectedException(operation, status, error_payload) from exc
            except httpx.RequestError as exc:
                logger.error("IntaSend request failure for %s %s: %s", method, path, str(exc))
                raise GatewayUnavailableException(operation) from exc

        try:
            return cast(Dict[str, Any], response.json())
        except json.JSONDecodeError as exc:
            logger.error("Invalid JSON from IntaSend for %s %s: %s", method, path, response.text[:500])
            raise GatewayException(
                "Payment service returned malformed JSON",
                code="GATEWAY_MALFORMED_RESPONSE",
                details={"operation": operation},
            ) from exc


class SimulatedGateway:
    """
    In-process gateway for non-production flows.

    Payments are never settled by a callback; instead the intent asks the
    caller to schedule a settlement after ``settle_after_seconds``.
    """

    def __init__(self, *, settle_after_seconds: int = 5, settle_status: str = "COMPLETED") -> None:
        self.settle_after_seconds = settle_after_seconds
        self.settle_status = settle_status
        self._states: Dict[str, str] = {}
        self._logger = logging.getLogger(self.__class__.__name__)

    def initiate_payment(
        self,
        *,
        amount: Decimal,
        currency: str,
        reference: str,
        method: str,
        metadata: Dict[str, Any],
        phone_number: Optional[str] = None,
    ) -> GatewayPaymentIntent:
        transaction_id = f"SIM_{method.upper()}_{ulid.ULID()}"
        self._states[transaction_id] = "PENDING"
        self._logger.debug(
            "Simulated payment initiated",
            extra={"transaction_id": transaction_id, "reference": reference},
        )
        raw: Dict[str, Any] = {
            "payment_id": transaction_id,
            "api_ref": reference,
            "state": "PENDING",
            "amount": str(amount),
            "currency": currency,
            "payment_method": method,
            "provider": "simulated",
        }
        if phone_number:
            raw["phone_number"] = phone_number
        return GatewayPaymentIntent(
            gateway_transaction_id=transaction_id,
            redirect_url=None,
            raw=raw,
            settle_after_seconds=self.settle_after_seconds,
            settle_status=self.settle_status,
        )

    def fetch_payment_status(self, gateway_transaction_id: str) -> Dict[str, Any]:
        return {
            "payment_id": gateway_transaction_id,
            "state": self._states.get(gateway_transaction_id, "PENDING"),
            "provider": "simulated",
        }
