# backend/careslot/core/exceptions.py
"""
Domain-specific exceptions for the CareSlot booking engine.

These exceptions provide clear, business-focused error messages
that can be caught and handled appropriately at the API layer.
Retryable failures (gateway outages, write races) carry ``retryable = True``
so callers can back off and try again.
"""

from typing import Any, Dict, Optional

from fastapi import HTTPException, status

HTTP_422_UNPROCESSABLE: int = getattr(status, "HTTP_422_UNPROCESSABLE_CONTENT", 422)


class DomainException(Exception):
    """Base exception for all domain-specific errors."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    retryable: bool = False

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}
        super().__init__(self.message)

    def to_http_exception(self) -> HTTPException:
        """Convert to an HTTPException carrying the structured error body."""
        headers = {"Retry-After": "2"} if self.retryable else None
        return HTTPException(
            status_code=self.status_code,
            detail={
                "message": self.message,
                "code": self.code,
                "details": self.details,
            },
            headers=headers,
        )


class ValidationException(DomainException):
    """Raised when business validation fails."""

    status_code = status.HTTP_400_BAD_REQUEST


class NotFoundException(DomainException):
    """Raised when a requested resource is not found."""

    status_code = status.HTTP_404_NOT_FOUND


class ConflictException(DomainException):
    """Raised when there's a conflict with existing data."""

    status_code = status.HTTP_409_CONFLICT


class BusinessRuleException(DomainException):
    """Raised when a business rule is violated."""

    status_code = HTTP_422_UNPROCESSABLE


class ServiceException(DomainException):
    """Raised when a service operation fails."""

    def to_http_exception(self) -> HTTPException:
        return HTTPException(
            status_code=self.status_code,
            detail={
                "message": self.message or "An error occurred processing your request",
                "code": self.code,
                "details": self.details if self.details else {},
            },
        )


# Booking lifecycle


class SlotUnavailableException(ConflictException):
    """Raised when the provider already holds a live booking for the slot."""

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(
            message=message or "This appointment time is not available. Please choose another time.",
            code="SLOT_UNAVAILABLE",
            details=details or {},
        )


class PastAppointmentException(BusinessRuleException):
    """Raised when the requested start is not strictly in the future."""

    def __init__(self, requested_start: str, now: str):
        super().__init__(
            message="Appointment time must be in the future",
            code="PAST_APPOINTMENT",
            details={"requested_start": requested_start, "now": now},
        )


class CancellationWindowClosedException(BusinessRuleException):
    """Raised when a cancellation arrives inside the grace window."""

    def __init__(self, grace_hours: float, hours_until_start: float):
        super().__init__(
            message=(
                f"Appointments can only be cancelled at least {grace_hours:g} hours "
                "before the start time"
            ),
            code="CANCELLATION_WINDOW_CLOSED",
            details={
                "grace_hours": grace_hours,
                "hours_until_start": round(hours_until_start, 2),
            },
        )


class InvalidTransitionException(BusinessRuleException):
    """Raised when the booking state machine rejects a transition."""

    def __init__(self, booking_id: Optional[str], current_status: str, action: str):
        super().__init__(
            message=f"Cannot {action} a booking in status {current_status}",
            code="INVALID_TRANSITION",
            details={
                "booking_id": booking_id,
                "current_status": current_status,
                "action": action,
            },
        )


# Payments


class InvalidBookingStateException(BusinessRuleException):
    """Raised when a payment is attempted for a booking that is not scheduled."""

    def __init__(self, booking_id: str, current_status: str):
        super().__init__(
            message="Payment can only be made for scheduled appointments",
            code="INVALID_BOOKING_STATE",
            details={"booking_id": booking_id, "current_status": current_status},
        )


class DuplicatePaymentException(ConflictException):
    """Raised when the booking already has an active payment."""

    def __init__(self, booking_id: str, payment_id: Optional[str] = None, payment_status: Optional[str] = None):
        super().__init__(
            message="A payment is already in progress or completed for this appointment",
            code="DUPLICATE_PAYMENT",
            details={
                "booking_id": booking_id,
                "payment_id": payment_id,
                "payment_status": payment_status,
            },
        )


class PaymentAttemptSupersededException(ConflictException):
    """Raised when a newer attempt took over a payment while the gateway was answering."""

    def __init__(self, payment_id: str, gateway_transaction_id: str):
        super().__init__(
            message="This payment attempt was replaced by a newer one",
            code="PAYMENT_ATTEMPT_SUPERSEDED",
            details={
                "payment_id": payment_id,
                "gateway_transaction_id": gateway_transaction_id,
            },
        )


class UnknownTransactionException(NotFoundException):
    """Raised when a gateway notification matches no local payment record."""

    def __init__(self, gateway_transaction_id: str, reference: Optional[str] = None):
        super().__init__(
            message="No payment record matches the gateway transaction",
            code="UNKNOWN_TRANSACTION",
            details={
                "gateway_transaction_id": gateway_transaction_id,
                "reference": reference,
            },
        )


class GatewayException(ServiceException):
    """Base class for payment gateway failures."""

    status_code = status.HTTP_502_BAD_GATEWAY


class GatewayTimeoutException(GatewayException):
    """Raised when the gateway does not answer within the configured bound."""

    status_code = status.HTTP_504_GATEWAY_TIMEOUT
    retryable = True

    def __init__(self, operation: str, timeout_seconds: float):
        super().__init__(
            message="Payment service did not respond in time. Please retry.",
            code="GATEWAY_TIMEOUT",
            details={"operation": operation, "timeout_seconds": timeout_seconds},
        )


class GatewayUnavailableException(GatewayException):
    """Raised when the gateway cannot be reached or answers with a server error."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    retryable = True

    def __init__(self, operation: str, upstream_status: Optional[int] = None):
        super().__init__(
            message="Payment service temporarily unavailable",
            code="GATEWAY_UNAVAILABLE",
            details={"operation": operation, "upstream_status": upstream_status},
        )


class GatewayRejectedException(GatewayException):
    """Raised when the gateway refuses a request outright (4xx)."""

    def __init__(self, operation: str, upstream_status: int, error_body: Any = None):
        super().__init__(
            message="Payment service rejected the request",
            code="GATEWAY_REJECTED",
            details={
                "operation": operation,
                "upstream_status": upstream_status,
                "error_body": error_body,
            },
        )


# Persistence


class PersistenceConflictException(ConflictException):
    """
    Raised when a concurrent writer won a uniqueness or version check.

    Services retry once before translating this into a user-facing error.
    """

    retryable = True

    def __init__(self, message: str, *, constraint: Optional[str] = None):
        super().__init__(
            message=message,
            code="PERSISTENCE_CONFLICT",
            details={"constraint": constraint} if constraint else {},
        )

    @property
    def constraint(self) -> Optional[str]:
        return self.details.get("constraint")


class RepositoryException(Exception):
    """
    Exception raised for repository layer errors.

    This exception is used when data access operations fail,
    such as database connection issues or query failures.
    """
