"""
Domain exceptions for the booking and payment lifecycle.

Services raise these; the API layer turns them into HTTP responses
through ``DomainError.to_http_exception``.
"""

from typing import Any, Dict, Optional

from fastapi import HTTPException, status

HTTP_422_UNPROCESSABLE: int = getattr(status, "HTTP_422_UNPROCESSABLE_CONTENT", 422)


class DomainError(Exception):
    """Base exception for all domain errors."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR

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

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message": self.message,
            "code": self.code,
            "details": self.details,
        }

    def to_http_exception(self) -> HTTPException:
        return HTTPException(status_code=self.status_code, detail=self.to_dict())


# Families


class NotFoundError(DomainError):
    """Booking or payment absent."""

    status_code = status.HTTP_404_NOT_FOUND


class UnauthorizedError(DomainError):
    """Actor is not a party to the booking/payment."""

    status_code = status.HTTP_403_FORBIDDEN


class IllegalTransitionError(DomainError):
    """State machine violation (booking or payment)."""

    status_code = status.HTTP_409_CONFLICT


class OutsideWindowError(DomainError):
    """Cancellation or reschedule cutoff has passed."""

    status_code = HTTP_422_UNPROCESSABLE


class ValidationError(DomainError):
    """Malformed or out-of-range input."""

    status_code = status.HTTP_400_BAD_REQUEST


class ConflictError(DomainError):
    """Lost an optimistic-concurrency race. Never retried automatically."""

    status_code = status.HTTP_409_CONFLICT


class GatewayFailure(DomainError):
    """External gateway rejected or did not answer. Payment is already recorded failed."""

    status_code = status.HTTP_502_BAD_GATEWAY


# Concrete errors


class BookingNotFound(NotFoundError):
    def __init__(self, booking_id: Any):
        super().__init__(
            f"Booking not found: {booking_id}",
            details={"booking_id": str(booking_id)},
        )


class PaymentNotFound(NotFoundError):
    def __init__(self, payment_id: Any):
        super().__init__(
            f"Payment not found: {payment_id}",
            details={"payment_id": str(payment_id)},
        )


class Unauthorized(UnauthorizedError):
    pass


class IllegalBookingTransition(IllegalTransitionError):
    def __init__(self, current: str, target: str):
        super().__init__(
            f"Cannot move booking from {current} to {target}",
            details={"from": current, "to": target},
        )


class IllegalPaymentTransition(IllegalTransitionError):
    def __init__(self, current: str, target: str):
        super().__init__(
            f"Cannot move payment from {current} to {target}",
            details={"from": current, "to": target},
        )


class PaymentNotRefundable(IllegalTransitionError):
    def __init__(self, payment_status: str):
        super().__init__(
            f"Can only refund completed payments (status: {payment_status})",
            details={"status": payment_status},
        )


class PaymentAlreadyCompleted(IllegalTransitionError):
    def __init__(self, booking_id: Any):
        super().__init__(
            "Payment already completed for this booking",
            details={"booking_id": str(booking_id)},
        )


class OutsideCancellationWindow(OutsideWindowError):
    pass


class OutsideRescheduleWindow(OutsideWindowError):
    pass


class InvalidAmount(ValidationError):
    def __init__(self, amount: Any):
        super().__init__(
            f"Amount must be a positive number: {amount}",
            details={"amount": str(amount)},
        )


class RefundExceedsBalance(ValidationError):
    def __init__(self, requested: Any, remaining: Any):
        super().__init__(
            f"Refund amount cannot exceed ${remaining}",
            details={"requested": str(requested), "remaining": str(remaining)},
        )


class PricingLocked(ValidationError):
    pass


class GatewayTimeout(GatewayFailure):
    pass
