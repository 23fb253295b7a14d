"""Pydantic schemas exchanged with the API layer and the payment gateway."""

from .payment import (
    GatewayNotification,
    NotificationStatus,
    PaymentIntentResponse,
    PaymentResponse,
    PaymentStatsResponse,
)

__all__ = [
    "GatewayNotification",
    "NotificationStatus",
    "PaymentIntentResponse",
    "PaymentResponse",
    "PaymentStatsResponse",
]
