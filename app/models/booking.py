"""Booking model - customer/provider booking with status timeline."""

import uuid
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional, TYPE_CHECKING

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    JSON,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.config import settings
from app.database import Base
from app.exceptions import ValidationError
from app.fsm.machine import assert_booking_transition
from app.fsm.states import BookingStatus, PaymentStatus, TimelineEvent
from app.timeutils import as_utc, utcnow

if TYPE_CHECKING:
    from app.models.payment import Payment

# Smallest step between two timeline entries of one booking
TIMELINE_TICK = timedelta(microseconds=1)


class Booking(Base):
    """
    Booking of one service by a customer with a provider.

    The payment columns are a projection of the authoritative Payment row and
    are only written through ``project_payment``.
    """

    __tablename__ = "bookings"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )

    # Human-readable reference (HMZ-XXXXXXXX-XXXXXX), immutable
    booking_number: Mapped[str] = mapped_column(
        String(32),
        unique=True,
        nullable=False,
    )

    customer_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    provider_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)

    # Service snapshot taken at booking time
    service_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    service_title: Mapped[str] = mapped_column(String(200), nullable=False)
    service_description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    service_category: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    # Schedule
    scheduled_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        index=True,
    )
    time_window_start: Mapped[Optional[str]] = mapped_column(String(5), nullable=True)  # HH:MM
    time_window_end: Mapped[Optional[str]] = mapped_column(String(5), nullable=True)
    time_zone: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    status: Mapped[str] = mapped_column(
        String(20),
        default=BookingStatus.PENDING.value,
        nullable=False,
        index=True,
    )

    # Address, coordinates, access instructions
    location: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)

    # Pricing snapshot
    estimated_cost: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    final_cost: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)
    discount_amount: Mapped[Decimal] = mapped_column(
        Numeric(10, 2), default=Decimal("0"), nullable=False
    )
    discount_reason: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    tax_amount: Mapped[Decimal] = mapped_column(
        Numeric(10, 2), default=Decimal("0"), nullable=False
    )
    tax_percentage: Mapped[Optional[Decimal]] = mapped_column(Numeric(5, 2), nullable=True)
    currency: Mapped[str] = mapped_column(String(3), default="USD", nullable=False)

    # Payment projection (Payment is the source of truth)
    payment_method: Mapped[str] = mapped_column(String(30), nullable=False)
    payment_status: Mapped[str] = mapped_column(
        String(20),
        default=PaymentStatus.PENDING.value,
        nullable=False,
    )
    payment_transaction_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    refunded_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    refund_amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)

    # Cancellation
    cancelled_by: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    cancellation_reason: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    refund_eligible: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # Rescheduling
    previous_scheduled_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    reschedule_reason: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    rescheduled_by: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    rescheduled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    rescheduled_from_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("bookings.id"), nullable=True
    )
    rescheduled_to_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)

    # Completion
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    work_performed: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    completion_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        nullable=False,
    )

    # Optimistic concurrency counter
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    timeline: Mapped[List["BookingTimelineEntry"]] = relationship(
        back_populates="booking",
        order_by="BookingTimelineEntry.sequence",
        lazy="selectin",
        cascade="all, delete-orphan",
    )

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self) -> str:
        return f"<Booking {self.booking_number} {self.status}>"

    @property
    def status_enum(self) -> BookingStatus:
        return BookingStatus(self.status)

    @property
    def is_paid(self) -> bool:
        return self.payment_status == PaymentStatus.COMPLETED.value

    def is_party(self, user_id: uuid.UUID) -> bool:
        return user_id in (self.customer_id, self.provider_id)

    # Eligibility

    def hours_until_service(self, now: Optional[datetime] = None) -> float:
        now = as_utc(now) or utcnow()
        return (as_utc(self.scheduled_at) - now).total_seconds() / 3600

    def _within_open_window(self, cutoff_hours: int, now: Optional[datetime]) -> bool:
        if self.status_enum not in (BookingStatus.PENDING, BookingStatus.CONFIRMED):
            return False
        return self.hours_until_service(now) > cutoff_hours

    def can_be_cancelled(self, now: Optional[datetime] = None) -> bool:
        """Pending/confirmed and more than the cancellation cutoff away."""
        return self._within_open_window(settings.cancellation_cutoff_hours, now)

    def can_be_rescheduled(self, now: Optional[datetime] = None) -> bool:
        """Pending/confirmed and more than the reschedule cutoff away."""
        return self._within_open_window(settings.reschedule_cutoff_hours, now)

    def total_cost(self) -> Decimal:
        base = self.final_cost if self.final_cost is not None else self.estimated_cost
        total = Decimal(base or 0) - Decimal(self.discount_amount or 0) + Decimal(self.tax_amount or 0)
        return max(Decimal("0.00"), total)

    # Timeline

    @property
    def latest_entry(self) -> Optional["BookingTimelineEntry"]:
        return self.timeline[-1] if self.timeline else None

    @property
    def latest_status_entry(self) -> Optional["BookingTimelineEntry"]:
        for entry in reversed(self.timeline):
            if entry.is_status_change:
                return entry
        return None

    def append_timeline(
        self,
        status: str,
        note: str,
        actor_id: uuid.UUID,
        is_status_change: bool = True,
        now: Optional[datetime] = None,
    ) -> "BookingTimelineEntry":
        """Append one audit entry with a timestamp strictly after the previous one."""
        if not note or not note.strip():
            raise ValidationError("Timeline entries require a note")
        if actor_id is None:
            raise ValidationError("Timeline entries require an actor")

        timestamp = as_utc(now) or utcnow()
        last = self.latest_entry
        if last is not None:
            floor = as_utc(last.created_at) + TIMELINE_TICK
            if timestamp < floor:
                timestamp = floor

        entry = BookingTimelineEntry(
            sequence=(last.sequence + 1) if last is not None else 1,
            status=status,
            note=note.strip(),
            actor_id=actor_id,
            is_status_change=is_status_change,
            created_at=timestamp,
        )
        self.timeline.append(entry)
        # Touch the row so the version check covers timeline appends
        self.updated_at = timestamp
        return entry

    def transition_to(
        self,
        target: BookingStatus,
        note: str,
        actor_id: uuid.UUID,
        now: Optional[datetime] = None,
    ) -> "BookingTimelineEntry":
        """Validate the edge, update status and record exactly one timeline entry."""
        assert_booking_transition(self.status_enum, target)
        entry = self.append_timeline(target.value, note, actor_id, True, now)
        self.status = target.value
        return entry

    def record_event(
        self,
        event: TimelineEvent,
        note: str,
        actor_id: uuid.UUID,
        now: Optional[datetime] = None,
    ) -> "BookingTimelineEntry":
        return self.append_timeline(event.value, note, actor_id, False, now)

    # Payment projection

    def project_payment(self, payment: "Payment") -> None:
        """Copy the payment view fields from the authoritative Payment row."""
        self.payment_method = payment.method
        self.payment_status = (
            PaymentStatus.COMPLETED.value
            if payment.status == PaymentStatus.PARTIAL_REFUND.value
            else payment.status
        )
        self.payment_transaction_id = payment.gateway_transaction_id
        self.paid_at = payment.completed_at
        self.refunded_at = payment.refunded_at
        self.refund_amount = payment.refunded_total or None


class BookingTimelineEntry(Base):
    """
    Immutable audit record of a booking status change or payment event.
    (booking_id, sequence) is unique so concurrent appends cannot interleave.
    """

    __tablename__ = "booking_timeline"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )

    booking_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("bookings.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    sequence: Mapped[int] = mapped_column(Integer, nullable=False)

    # BookingStatus value, or a TimelineEvent value when is_status_change is False
    status: Mapped[str] = mapped_column(String(30), nullable=False)
    is_status_change: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    note: Mapped[str] = mapped_column(String(500), nullable=False)
    actor_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )

    booking: Mapped["Booking"] = relationship(back_populates="timeline")

    __table_args__ = (
        UniqueConstraint("booking_id", "sequence", name="uq_booking_timeline_sequence"),
    )

    def __repr__(self) -> str:
        return f"<BookingTimelineEntry {self.sequence} {self.status}>"
