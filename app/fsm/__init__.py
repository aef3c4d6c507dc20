"""FSM package for booking and payment state management."""

from app.fsm.states import BookingStatus, PaymentStatus, PaymentMethod, TimelineEvent

__all__ = ["BookingStatus", "PaymentStatus", "PaymentMethod", "TimelineEvent"]
