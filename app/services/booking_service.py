"""
Booking Service - booking creation and lifecycle transitions.
"""

import uuid
import logging
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from app.exceptions import (
    BookingNotFound,
    ConflictError,
    OutsideCancellationWindow,
    OutsideRescheduleWindow,
    PricingLocked,
    Unauthorized,
    ValidationError,
)
from app.fsm.machine import assert_booking_transition
from app.fsm.states import (
    BookingStatus,
    PartyRole,
    PaymentMethod,
    PaymentStatus,
    StatsPeriod,
    TimelineEvent,
)
from app.models.booking import Booking, BookingTimelineEntry
from app.models.payment import Payment
from app.services.fee_calculator import Amount, round_cents, to_money
from app.services.identifiers import new_booking_number
from app.timeutils import as_utc, utcnow

logger = logging.getLogger(__name__)

NO_REASON = "No reason provided"

SORTABLE_COLUMNS = frozenset({"created_at", "scheduled_at", "updated_at", "status"})

CAPTURED_STATUSES = (
    PaymentStatus.COMPLETED.value,
    PaymentStatus.PARTIAL_REFUND.value,
)


def _non_negative_money(value: Amount, field: str) -> Decimal:
    try:
        if Decimal(str(value)) == 0:
            return Decimal("0.00")
        return to_money(value)
    except (InvalidOperation, ValidationError):
        raise ValidationError(f"{field} must be a non-negative amount", details={field: str(value)})


class BookingService:
    """Service for booking lifecycle management."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_booking(self, booking_id: uuid.UUID, fresh: bool = False) -> Booking:
        """Get booking by ID. ``fresh`` bypasses the identity map."""
        stmt = select(Booking).where(Booking.id == booking_id)
        if fresh:
            stmt = stmt.execution_options(populate_existing=True).with_for_update()
        result = await self.db.execute(stmt)
        booking = result.scalar_one_or_none()
        if not booking:
            raise BookingNotFound(booking_id)
        return booking

    async def get_booking_by_number(self, booking_number: str) -> Booking:
        result = await self.db.execute(
            select(Booking).where(Booking.booking_number == booking_number)
        )
        booking = result.scalar_one_or_none()
        if not booking:
            raise BookingNotFound(booking_number)
        return booking

    async def get_timeline(self, booking_id: uuid.UUID) -> List[BookingTimelineEntry]:
        booking = await self.get_booking(booking_id)
        return list(booking.timeline)

    async def list_for_user(
        self,
        user_id: uuid.UUID,
        role: PartyRole = PartyRole.ALL,
        status: Optional[BookingStatus] = None,
        page: int = 1,
        limit: int = 10,
        sort_by: str = "created_at",
        order: str = "desc",
    ) -> Dict[str, Any]:
        """Paginated bookings where the user is the customer and/or the provider."""
        page = max(page, 1)
        limit = min(max(limit, 1), 100)

        if role == PartyRole.PROVIDER:
            condition = Booking.provider_id == user_id
        elif role == PartyRole.CUSTOMER:
            condition = Booking.customer_id == user_id
        else:
            condition = or_(Booking.customer_id == user_id, Booking.provider_id == user_id)

        filters = [condition]
        if status is not None:
            filters.append(Booking.status == BookingStatus(status).value)

        if sort_by not in SORTABLE_COLUMNS:
            raise ValidationError(
                f"Cannot sort bookings by {sort_by}",
                details={"sort_by": sort_by, "allowed": sorted(SORTABLE_COLUMNS)},
            )
        column = getattr(Booking, sort_by)
        ordering = column.asc() if order == "asc" else column.desc()

        total_result = await self.db.execute(
            select(func.count()).select_from(Booking).where(*filters)
        )
        total = total_result.scalar_one()

        result = await self.db.execute(
            select(Booking)
            .where(*filters)
            .order_by(ordering, Booking.booking_number)
            .offset((page - 1) * limit)
            .limit(limit)
        )
        bookings = list(result.scalars().all())

        return {
            "bookings": bookings,
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "pages": (total + limit - 1) // limit,
                "has_next": (page - 1) * limit + len(bookings) < total,
                "has_prev": page > 1,
            },
        }

    async def provider_statistics(
        self,
        provider_id: uuid.UUID,
        period: StatsPeriod = StatsPeriod.MONTH,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """
        Booking counts per status for a provider over the period.

        Revenue per status sums the final cost of bookings that have one.
        """
        since = (as_utc(now) or utcnow()) - timedelta(days=StatsPeriod(period).days)

        result = await self.db.execute(
            select(
                Booking.status,
                func.count(Booking.id),
                func.coalesce(func.sum(Booking.final_cost), 0),
            )
            .where(Booking.provider_id == provider_id)
            .where(Booking.created_at >= since)
            .group_by(Booking.status)
        )

        by_status: Dict[str, Dict[str, Any]] = {}
        for status, count, revenue in result.all():
            by_status[status] = {"count": count, "revenue": round_cents(Decimal(str(revenue)))}

        return {
            "period": StatsPeriod(period).value,
            "total_bookings": sum(s["count"] for s in by_status.values()),
            "by_status": by_status,
        }

    async def create_booking(
        self,
        customer_id: uuid.UUID,
        provider_id: uuid.UUID,
        service_id: uuid.UUID,
        service_title: str,
        scheduled_at: datetime,
        estimated_cost: Amount,
        payment_method: PaymentMethod,
        service_description: Optional[str] = None,
        service_category: Optional[str] = None,
        time_window_start: Optional[str] = None,
        time_window_end: Optional[str] = None,
        time_zone: Optional[str] = None,
        location: Optional[Dict[str, Any]] = None,
        currency: str = "USD",
        now: Optional[datetime] = None,
    ) -> Booking:
        """
        Create a pending booking.

        The service fields are a snapshot; later edits to the service are not reflected.
        """
        now = as_utc(now) or utcnow()
        scheduled_at = as_utc(scheduled_at)
        if scheduled_at <= now:
            raise ValidationError("Booking must be scheduled in the future")
        if customer_id == provider_id:
            raise ValidationError("Customer and provider must be different users")

        booking = Booking(
            booking_number=new_booking_number(),
            customer_id=customer_id,
            provider_id=provider_id,
            service_id=service_id,
            service_title=service_title,
            service_description=service_description,
            service_category=service_category,
            scheduled_at=scheduled_at,
            time_window_start=time_window_start,
            time_window_end=time_window_end,
            time_zone=time_zone,
            location=location,
            estimated_cost=to_money(estimated_cost),
            discount_amount=Decimal("0.00"),
            tax_amount=Decimal("0.00"),
            currency=currency,
            payment_method=PaymentMethod(payment_method).value,
            payment_status=PaymentStatus.PENDING.value,
            status=BookingStatus.PENDING.value,
            created_at=now,
        )
        booking.append_timeline(
            BookingStatus.PENDING.value,
            "Booking requested by customer",
            customer_id,
            now=now,
        )
        self.db.add(booking)
        await self.db.flush()

        logger.info(f"Created booking {booking.booking_number} for customer {customer_id}")
        return booking

    async def _commit_transition(self, booking: Booking) -> Booking:
        try:
            await self.db.flush()
        except StaleDataError:
            await self.db.rollback()
            raise ConflictError(
                "Booking was modified concurrently",
                details={"booking_id": str(booking.id)},
            )
        return booking

    def _require_provider(self, booking: Booking, actor_id: uuid.UUID, action: str) -> None:
        if booking.provider_id != actor_id:
            raise Unauthorized(f"Not authorized to {action} this booking")

    def _require_party(self, booking: Booking, actor_id: uuid.UUID, action: str) -> None:
        if not booking.is_party(actor_id):
            raise Unauthorized(f"Not authorized to {action} this booking")

    async def confirm(
        self,
        booking_id: uuid.UUID,
        provider_id: uuid.UUID,
        note: str = "Booking confirmed by provider",
        now: Optional[datetime] = None,
    ) -> Booking:
        booking = await self.get_booking(booking_id)
        self._require_provider(booking, provider_id, "confirm")
        booking.transition_to(BookingStatus.CONFIRMED, note, provider_id, now)
        logger.info(f"Booking {booking.booking_number} confirmed")
        return await self._commit_transition(booking)

    async def start_service(
        self,
        booking_id: uuid.UUID,
        provider_id: uuid.UUID,
        note: str = "Service started by provider",
        now: Optional[datetime] = None,
    ) -> Booking:
        booking = await self.get_booking(booking_id)
        self._require_provider(booking, provider_id, "start")
        booking.transition_to(BookingStatus.IN_PROGRESS, note, provider_id, now)
        logger.info(f"Booking {booking.booking_number} in progress")
        return await self._commit_transition(booking)

    async def complete_service(
        self,
        booking_id: uuid.UUID,
        provider_id: uuid.UUID,
        note: str = "Service completed by provider",
        final_cost: Optional[Amount] = None,
        work_performed: Optional[str] = None,
        completion_notes: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Booking:
        """Mark an in-progress booking completed. Final cost is set only if still unset."""
        booking = await self.get_booking(booking_id)
        self._require_provider(booking, provider_id, "complete")

        if final_cost is not None and booking.final_cost is not None:
            raise PricingLocked("Final cost is already set for this booking")
        cost = to_money(final_cost) if final_cost is not None else None

        entry = booking.transition_to(BookingStatus.COMPLETED, note, provider_id, now)
        booking.completed_at = entry.created_at
        booking.work_performed = work_performed
        booking.completion_notes = completion_notes
        if cost is not None:
            booking.final_cost = cost

        logger.info(f"Booking {booking.booking_number} completed")
        return await self._commit_transition(booking)

    async def mark_no_show(
        self,
        booking_id: uuid.UUID,
        provider_id: uuid.UUID,
        note: str = "Customer did not show up",
        now: Optional[datetime] = None,
    ) -> Booking:
        booking = await self.get_booking(booking_id)
        self._require_provider(booking, provider_id, "mark no-show for")
        booking.transition_to(BookingStatus.NO_SHOW, note, provider_id, now)
        logger.info(f"Booking {booking.booking_number} marked no-show")
        return await self._commit_transition(booking)

    async def cancel(
        self,
        booking_id: uuid.UUID,
        actor_id: uuid.UUID,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Booking:
        """
        Cancel a booking (customer or provider) outside the cutoff window.
        Customer cancellations are refund eligible.
        """
        now = as_utc(now) or utcnow()
        booking = await self.get_booking(booking_id)
        self._require_party(booking, actor_id, "cancel")

        assert_booking_transition(booking.status_enum, BookingStatus.CANCELLED)
        if not booking.can_be_cancelled(now):
            raise OutsideCancellationWindow(
                "Booking cannot be cancelled at this time",
                details={"hours_until_service": round(booking.hours_until_service(now), 2)},
            )

        is_customer = actor_id == booking.customer_id
        reason = reason or NO_REASON
        entry = booking.transition_to(
            BookingStatus.CANCELLED,
            f"Booking cancelled by {'customer' if is_customer else 'provider'}: {reason}",
            actor_id,
            now,
        )
        booking.cancelled_by = actor_id
        booking.cancellation_reason = reason
        booking.cancelled_at = entry.created_at
        booking.refund_eligible = is_customer

        logger.info(f"Booking {booking.booking_number} cancelled by {actor_id}")
        return await self._commit_transition(booking)

    async def reschedule(
        self,
        booking_id: uuid.UUID,
        actor_id: uuid.UUID,
        new_scheduled_at: datetime,
        reason: Optional[str] = None,
        time_window_start: Optional[str] = None,
        time_window_end: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Booking:
        """
        Move a booking to a new date. Returns the booking that now holds the new date.

        A pending booking is moved in place (there is no pending -> rescheduled edge).
        A confirmed booking becomes ``rescheduled`` (terminal) and a successor is
        created in ``pending`` with the same service and pricing snapshot.
        A captured payment moves to the successor, so it is not charged twice.
        """
        now = as_utc(now) or utcnow()
        new_scheduled_at = as_utc(new_scheduled_at)
        booking = await self.get_booking(booking_id)
        self._require_party(booking, actor_id, "reschedule")

        if booking.status_enum != BookingStatus.PENDING:
            assert_booking_transition(booking.status_enum, BookingStatus.RESCHEDULED)
        if not booking.can_be_rescheduled(now):
            raise OutsideRescheduleWindow(
                "Booking cannot be rescheduled at this time",
                details={"hours_until_service": round(booking.hours_until_service(now), 2)},
            )
        if new_scheduled_at <= now:
            raise ValidationError("New date must be in the future")

        reason = reason or NO_REASON

        if booking.status_enum == BookingStatus.PENDING:
            previous = booking.scheduled_at
            booking.record_event(
                TimelineEvent.DATE_CHANGED,
                f"Moved from {as_utc(previous).isoformat()} to {new_scheduled_at.isoformat()}: {reason}",
                actor_id,
                now,
            )
            booking.previous_scheduled_at = previous
            booking.scheduled_at = new_scheduled_at
            booking.time_window_start = time_window_start or booking.time_window_start
            booking.time_window_end = time_window_end or booking.time_window_end
            booking.reschedule_reason = reason
            booking.rescheduled_by = actor_id
            booking.rescheduled_at = now
            logger.info(f"Pending booking {booking.booking_number} moved to {new_scheduled_at}")
            return await self._commit_transition(booking)

        successor = Booking(
            id=uuid.uuid4(),
            booking_number=new_booking_number(),
            customer_id=booking.customer_id,
            provider_id=booking.provider_id,
            service_id=booking.service_id,
            service_title=booking.service_title,
            service_description=booking.service_description,
            service_category=booking.service_category,
            scheduled_at=new_scheduled_at,
            time_window_start=time_window_start or booking.time_window_start,
            time_window_end=time_window_end or booking.time_window_end,
            time_zone=booking.time_zone,
            location=booking.location,
            estimated_cost=booking.estimated_cost,
            discount_amount=booking.discount_amount,
            discount_reason=booking.discount_reason,
            tax_amount=booking.tax_amount,
            tax_percentage=booking.tax_percentage,
            currency=booking.currency,
            payment_method=booking.payment_method,
            payment_status=PaymentStatus.PENDING.value,
            status=BookingStatus.PENDING.value,
            previous_scheduled_at=booking.scheduled_at,
            rescheduled_from_id=booking.id,
            created_at=now,
        )
        successor.append_timeline(
            BookingStatus.PENDING.value,
            f"Rescheduled from {booking.booking_number}: {reason}",
            actor_id,
            now=now,
        )
        self.db.add(successor)

        entry = booking.transition_to(
            BookingStatus.RESCHEDULED,
            f"Rescheduled to {successor.booking_number}: {reason}",
            actor_id,
            now,
        )
        booking.reschedule_reason = reason
        booking.rescheduled_by = actor_id
        booking.rescheduled_at = entry.created_at
        booking.rescheduled_to_id = successor.id
        await self._commit_transition(booking)

        # A captured charge follows the service to its new date
        payment = await self._captured_payment(booking.id)
        if payment is not None:
            payment.booking_id = successor.id
            successor.project_payment(payment)
            successor.record_event(
                TimelineEvent.PAYMENT_COMPLETED,
                f"Payment {payment.payment_id} carried over from {booking.booking_number}",
                actor_id,
                now,
            )
            await self._commit_transition(successor)
            logger.info(
                f"Payment {payment.payment_id} moved from {booking.booking_number} "
                f"to {successor.booking_number}"
            )

        logger.info(f"Booking {booking.booking_number} rescheduled to {successor.booking_number}")
        return successor

    async def _captured_payment(self, booking_id: uuid.UUID) -> Optional[Payment]:
        result = await self.db.execute(
            select(Payment)
            .where(Payment.booking_id == booking_id)
            .where(Payment.status.in_(CAPTURED_STATUSES))
            .execution_options(populate_existing=True)
        )
        return result.scalars().first()

    async def adjust_pricing(
        self,
        booking_id: uuid.UUID,
        actor_id: uuid.UUID,
        discount_amount: Optional[Amount] = None,
        discount_reason: Optional[str] = None,
        tax_amount: Optional[Amount] = None,
        tax_percentage: Optional[Amount] = None,
    ) -> Booking:
        """Explicit discount/tax adjustment. Only allowed before payment completes."""
        booking = await self.get_booking(booking_id)
        self._require_provider(booking, actor_id, "adjust pricing for")

        if booking.payment_status in (PaymentStatus.COMPLETED.value, PaymentStatus.REFUNDED.value):
            raise PricingLocked("Pricing cannot change after payment")

        if discount_amount is not None:
            booking.discount_amount = _non_negative_money(discount_amount, "discount_amount")
            booking.discount_reason = discount_reason
        if tax_amount is not None:
            booking.tax_amount = _non_negative_money(tax_amount, "tax_amount")
        if tax_percentage is not None:
            booking.tax_percentage = Decimal(str(tax_percentage))

        logger.info(
            f"Booking {booking.booking_number} pricing adjusted: total={booking.total_cost()}"
        )
        return await self._commit_transition(booking)
