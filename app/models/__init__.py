"""Models package for database models."""

from app.models.booking import Booking, BookingTimelineEntry
from app.models.payment import Payment, PaymentRefund

__all__ = [
    "Booking",
    "BookingTimelineEntry",
    "Payment",
    "PaymentRefund",
]
