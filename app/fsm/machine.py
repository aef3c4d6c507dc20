"""
FSM Machine - transition tables for bookings and payments.

Edges not listed are illegal.
"""

from typing import Dict, FrozenSet

from app.exceptions import IllegalBookingTransition, IllegalPaymentTransition
from app.fsm.states import BookingStatus, PaymentStatus


BOOKING_TRANSITIONS: Dict[BookingStatus, FrozenSet[BookingStatus]] = {
    BookingStatus.PENDING: frozenset({
        BookingStatus.CONFIRMED,
        BookingStatus.CANCELLED,
    }),
    BookingStatus.CONFIRMED: frozenset({
        BookingStatus.IN_PROGRESS,
        BookingStatus.CANCELLED,
        BookingStatus.RESCHEDULED,
        BookingStatus.NO_SHOW,
    }),
    BookingStatus.IN_PROGRESS: frozenset({
        BookingStatus.COMPLETED,
    }),
}

# pending -> completed/failed are the synchronous gateway shortcuts
PAYMENT_TRANSITIONS: Dict[PaymentStatus, FrozenSet[PaymentStatus]] = {
    PaymentStatus.PENDING: frozenset({
        PaymentStatus.PROCESSING,
        PaymentStatus.COMPLETED,
        PaymentStatus.FAILED,
    }),
    PaymentStatus.PROCESSING: frozenset({
        PaymentStatus.COMPLETED,
        PaymentStatus.FAILED,
    }),
    PaymentStatus.COMPLETED: frozenset({
        PaymentStatus.PARTIAL_REFUND,
        PaymentStatus.REFUNDED,
    }),
    PaymentStatus.PARTIAL_REFUND: frozenset({
        PaymentStatus.PARTIAL_REFUND,
        PaymentStatus.REFUNDED,
    }),
}


def can_transition_booking(current: BookingStatus, target: BookingStatus) -> bool:
    return target in BOOKING_TRANSITIONS.get(current, frozenset())


def can_transition_payment(current: PaymentStatus, target: PaymentStatus) -> bool:
    return target in PAYMENT_TRANSITIONS.get(current, frozenset())


def assert_booking_transition(current: BookingStatus, target: BookingStatus) -> None:
    if not can_transition_booking(current, target):
        raise IllegalBookingTransition(current.value, target.value)


def assert_payment_transition(current: PaymentStatus, target: PaymentStatus) -> None:
    if not can_transition_payment(current, target):
        raise IllegalPaymentTransition(current.value, target.value)
