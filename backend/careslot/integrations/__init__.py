"""External service integrations for the CareSlot engine."""

from .intasend_client import IntaSendGateway, SimulatedGateway
from .payment_gateway import GatewayPaymentIntent, PaymentGateway, build_payment_gateway

__all__ = [
    "GatewayPaymentIntent",
    "IntaSendGateway",
    "PaymentGateway",
    "SimulatedGateway",
    "build_payment_gateway",
]
