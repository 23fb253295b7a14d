"""Payment gateway port and the factory that picks an implementation."""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
import logging
from typing import TYPE_CHECKING, Any, Dict, Optional, Protocol

if TYPE_CHECKING:
    from ..core.config import Settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GatewayPaymentIntent:
    """What the gateway handed back when a payment was started."""

    gateway_transaction_id: str
    redirect_url: Optional[str]
    raw: Dict[str, Any] = field(default_factory=dict)
    # Non-production gateways ask for a delayed settlement instead of a callback
    settle_after_seconds: Optional[int] = None
    settle_status: Optional[str] = None

    @property
    def requests_settlement(self) -> bool:
        return self.settle_after_seconds is not None and self.settle_status is not None


class PaymentGateway(Protocol):
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
        """
        Start a payment with the gateway.

        Raises:
            GatewayTimeoutException: No answer within the configured bound
            GatewayUnavailableException: Transport failure or 5xx
            GatewayRejectedException: The gateway refused the request
        """
        ...

    def fetch_payment_status(self, gateway_transaction_id: str) -> Dict[str, Any]:
        """Return the gateway's current view of a transaction (raw payload)."""
        ...


def build_payment_gateway(settings: "Settings") -> PaymentGateway:
    """Return the gateway selected by configuration."""
    from .intasend_client import IntaSendGateway, SimulatedGateway

    logger.info(
        "Payment gateway selection",
        extra={"payment_gateway": settings.payment_gateway, "environment": settings.environment},
    )

    if settings.payment_gateway == "simulated":
        if settings.is_production:
            raise ValueError("The simulated payment gateway cannot be used in production")
        return SimulatedGateway(settle_after_seconds=settings.simulated_settlement_delay_seconds)

    try:
        return IntaSendGateway(
            api_key=settings.intasend_api_key,
            base_url=settings.intasend_base_url,
            timeout=settings.gateway_timeout_seconds,
            callback_url=f"{settings.callback_base_url.rstrip('/')}/api/payments/intasend/callback",
            frontend_url=settings.frontend_url,
        )
    except ValueError as exc:  # Missing API key
        if settings.is_production:
            raise
        logger.warning(
            "Falling back to SimulatedGateway due to configuration error",
            extra={"error": str(exc), "environment": settings.environment},
        )
        return SimulatedGateway(settle_after_seconds=settings.simulated_settlement_delay_seconds)
