"""
Payment schemas for the CareSlot engine.

``GatewayNotification`` is the only shape reconciliation accepts: raw
gateway callbacks are decoded into it at the boundary, so the core never
inspects provider-specific fields.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
import logging
from typing import Any, Dict, Mapping, Optional

from pydantic import ConfigDict, Field, ValidationError

from ..core.exceptions import ValidationException
from ..models.payment import PaymentRecord
from ._strict_base import FrozenModel, StrictModel

logger = logging.getLogger(__name__)


class NotificationStatus(str, Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


# IntaSend ``state`` values
_INTASEND_STATES: Dict[str, NotificationStatus] = {
    "COMPLETE": NotificationStatus.COMPLETED,
    "COMPLETED": NotificationStatus.COMPLETED,
    "FAILED": NotificationStatus.FAILED,
    "CANCELLED": NotificationStatus.FAILED,
    "PENDING": NotificationStatus.PENDING,
    "PROCESSING": NotificationStatus.PENDING,
    "RETRY": NotificationStatus.PENDING,
}


class GatewayNotification(FrozenModel):
    """A gateway's statement about the state of one transaction."""

    gateway_transaction_id: str = Field(..., min_length=1, description="Gateway transaction id")
    status: NotificationStatus = Field(..., description="Reported transaction state")
    reference: Optional[str] = Field(default=None, description="Local reference echoed back by the gateway")
    payload: Dict[str, Any] = Field(default_factory=dict, description="Raw payload, stored for replay")

    @classmethod
    def from_intasend(cls, raw: Mapping[str, Any]) -> "GatewayNotification":
        """
        Decode an IntaSend callback or status response.

        Raises:
            ValidationException: Missing transaction id or an unrecognised state
        """
        if not isinstance(raw, Mapping):
            raise ValidationException(
                "Gateway notification must be an object",
                code="MALFORMED_NOTIFICATION",
            )

        transaction_id = raw.get("payment_id") or raw.get("invoice_id") or raw.get("id")
        state = str(raw.get("state") or "").strip().upper()
        status = _INTASEND_STATES.get(state)
        if status is None:
            logger.warning("Unrecognised gateway state %r for %s", state, transaction_id)
            raise ValidationException(
                f"Unrecognised payment state: {state or 'missing'}",
                code="MALFORMED_NOTIFICATION",
                details={"gateway_transaction_id": transaction_id, "state": state},
            )

        reference = raw.get("api_ref")
        try:
            return cls(
                gateway_transaction_id=str(transaction_id or ""),
                status=status,
                reference=str(reference) if reference else None,
                payload=dict(raw),
            )
        except ValidationError as exc:
            raise ValidationException(
                "Gateway notification is missing a transaction id",
                code="MALFORMED_NOTIFICATION",
                details={"errors": exc.errors(include_url=False, include_context=False)},
            ) from exc


class PaymentResponse(StrictModel):
    """Payment record as shown to the requester."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    booking_id: str
    amount: Decimal
    currency: str
    method: str
    reference: str
    external_transaction_id: Optional[str] = None
    status: str
    checkout_url: Optional[str] = None
    created_at: Optional[datetime] = None


class PaymentIntentResponse(StrictModel):
    """Returned when a payment is started: where to send the requester next."""

    payment_id: str = Field(..., description="Local payment record id")
    booking_id: str
    reference: str = Field(..., description="Correlation reference sent to the gateway")
    gateway_transaction_id: Optional[str] = None
    checkout_url: Optional[str] = Field(default=None, description="Hosted checkout to redirect to")
    amount: Decimal
    currency: str
    method: str
    status: str

    @classmethod
    def from_record(cls, payment: PaymentRecord) -> "PaymentIntentResponse":
        return cls(
            payment_id=payment.id,
            booking_id=payment.booking_id,
            reference=payment.reference,
            gateway_transaction_id=payment.external_transaction_id,
            checkout_url=payment.checkout_url,
            amount=payment.amount,
            currency=payment.currency,
            method=payment.method,
            status=payment.status,
        )


class PaymentStatsResponse(StrictModel):
    counts: Dict[str, int]
    total_payments: int
    total_paid: Decimal
