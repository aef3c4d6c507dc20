"""
FSM State Definitions.
Booking and payment statuses plus the supporting enums.
"""

from enum import Enum


class BookingStatus(str, Enum):
    """
    Booking lifecycle states.
    Only PENDING, CONFIRMED and IN_PROGRESS have outgoing transitions.
    """

    PENDING = "pending"            # Awaiting provider confirmation
    CONFIRMED = "confirmed"        # Provider accepted
    IN_PROGRESS = "in-progress"    # Service is being performed
    COMPLETED = "completed"
    CANCELLED = "cancelled"        # Cancelled by customer or provider
    NO_SHOW = "no-show"            # Customer didn't show up
    RESCHEDULED = "rescheduled"    # Superseded by a successor booking

    @property
    def is_terminal(self) -> bool:
        return self not in (
            BookingStatus.PENDING,
            BookingStatus.CONFIRMED,
            BookingStatus.IN_PROGRESS,
        )


class TimelineEvent(str, Enum):
    """Timeline entries that record an event without changing booking status."""

    PAYMENT_COMPLETED = "payment_completed"
    REFUNDED = "refunded"
    DATE_CHANGED = "date_changed"


class PaymentStatus(str, Enum):
    """Status of a payment attempt."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    PARTIAL_REFUND = "partial_refund"
    REFUNDED = "refunded"

    @property
    def is_terminal(self) -> bool:
        return self in (PaymentStatus.FAILED, PaymentStatus.REFUNDED)

    @property
    def is_refundable(self) -> bool:
        return self in (PaymentStatus.COMPLETED, PaymentStatus.PARTIAL_REFUND)

    @property
    def is_paid(self) -> bool:
        """Money was captured at some point for this attempt."""
        return self in (
            PaymentStatus.COMPLETED,
            PaymentStatus.PARTIAL_REFUND,
            PaymentStatus.REFUNDED,
        )


class PaymentMethod(str, Enum):
    """Payment method types accepted for a booking."""

    CREDIT_CARD = "credit_card"
    DEBIT_CARD = "debit_card"
    PAYPAL = "paypal"
    STRIPE = "stripe"
    BANK_TRANSFER = "bank_transfer"
    WALLET = "wallet"
    CASH = "cash"


class PartyRole(str, Enum):
    """Which side of a booking a user is on."""

    CUSTOMER = "customer"
    PROVIDER = "provider"
    ALL = "all"


class StatsPeriod(str, Enum):
    WEEK = "week"
    MONTH = "month"
    YEAR = "year"

    @property
    def days(self) -> int:
        return {
            StatsPeriod.WEEK: 7,
            StatsPeriod.MONTH: 30,
            StatsPeriod.YEAR: 365,
        }[self]
