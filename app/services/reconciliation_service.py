"""
Reconciliation Service - detects and repairs Booking/Payment drift.

Anomalies:
- completed payment whose booking projection is not paid (booking write lost a race)
- payment stuck in pending or processing past the stale threshold (worker died mid-charge)
- payment flagged requires_reconciliation by a timeout/cancel/duplicate charge
- refund attempt whose gateway outcome is unknown or never settled

Flagged payments and refunds stop being reported once an operator marks them reconciled.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import func, or_, and_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.exceptions import IllegalTransitionError, PaymentNotFound
from app.fsm.states import PaymentStatus, TimelineEvent
from app.models.booking import Booking
from app.models.payment import REFUND_PENDING, REFUND_UNKNOWN, Payment, PaymentRefund
from app.timeutils import as_utc, utcnow

logger = logging.getLogger(__name__)

UNPROJECTED_COMPLETION = "unprojected_completion"
STALE_PENDING = "stale_pending"
STALE_PROCESSING = "stale_processing"
NEEDS_MANUAL_REVIEW = "needs_manual_review"
UNCONFIRMED_REFUND = "unconfirmed_refund"

STALE_STATUSES = (PaymentStatus.PENDING.value, PaymentStatus.PROCESSING.value)


@dataclass
class PaymentAnomaly:
    kind: str
    payment_id: str
    booking_id: str
    payment_status: str
    booking_payment_status: Optional[str] = None
    refund_id: Optional[str] = None

    def as_dict(self) -> dict:
        return {
            "kind": self.kind,
            "payment_id": self.payment_id,
            "booking_id": self.booking_id,
            "payment_status": self.payment_status,
            "booking_payment_status": self.booking_payment_status,
            "refund_id": self.refund_id,
        }


class ReconciliationService:
    """Service for finding and repairing payment/booking inconsistencies."""

    def __init__(self, db: AsyncSession):
        self.db = db

    def _stale_cutoff(self, now: Optional[datetime]) -> datetime:
        return (as_utc(now) or utcnow()) - timedelta(minutes=settings.stale_processing_minutes)

    def _stale_payments(self, now: Optional[datetime]):
        # A pending row never got a processing_at stamp
        last_progress = func.coalesce(Payment.processing_at, Payment.initiated_at)
        return (
            select(Payment)
            .where(Payment.status.in_(STALE_STATUSES))
            .where(last_progress < self._stale_cutoff(now))
        )

    async def find_payment_anomalies(self, now: Optional[datetime] = None) -> List[PaymentAnomaly]:
        anomalies: List[PaymentAnomaly] = []

        result = await self.db.execute(
            select(Payment, Booking)
            .join(Booking, Booking.id == Payment.booking_id)
            .where(Payment.status == PaymentStatus.COMPLETED.value)
            .where(Booking.payment_status != PaymentStatus.COMPLETED.value)
        )
        for payment, booking in result.all():
            anomalies.append(PaymentAnomaly(
                kind=UNPROJECTED_COMPLETION,
                payment_id=payment.payment_id,
                booking_id=str(booking.id),
                payment_status=payment.status,
                booking_payment_status=booking.payment_status,
            ))

        result = await self.db.execute(self._stale_payments(now))
        for payment in result.scalars().all():
            anomalies.append(PaymentAnomaly(
                kind=STALE_PENDING if payment.status == PaymentStatus.PENDING.value else STALE_PROCESSING,
                payment_id=payment.payment_id,
                booking_id=str(payment.booking_id),
                payment_status=payment.status,
            ))

        result = await self.db.execute(
            select(Payment)
            .where(Payment.status == PaymentStatus.FAILED.value)
            .where(Payment.requires_reconciliation.is_(True))
            .where(Payment.reconciled_at.is_(None))
        )
        for payment in result.scalars().all():
            anomalies.append(PaymentAnomaly(
                kind=NEEDS_MANUAL_REVIEW,
                payment_id=payment.payment_id,
                booking_id=str(payment.booking_id),
                payment_status=payment.status,
            ))

        result = await self.db.execute(
            select(PaymentRefund, Payment)
            .join(Payment, Payment.id == PaymentRefund.payment_id)
            .where(PaymentRefund.reconciled_at.is_(None))
            .where(or_(
                PaymentRefund.status == REFUND_UNKNOWN,
                and_(
                    PaymentRefund.status == REFUND_PENDING,
                    PaymentRefund.created_at < self._stale_cutoff(now),
                ),
            ))
        )
        for refund, payment in result.all():
            anomalies.append(PaymentAnomaly(
                kind=UNCONFIRMED_REFUND,
                payment_id=payment.payment_id,
                booking_id=str(payment.booking_id),
                payment_status=payment.status,
                refund_id=refund.refund_id,
            ))

        for anomaly in anomalies:
            logger.warning(
                f"Payment anomaly: {anomaly.as_dict()}",
                extra={
                    "anomaly": anomaly.kind,
                    "payment_id": anomaly.payment_id,
                    "booking_id": anomaly.booking_id,
                    "refund_id": anomaly.refund_id,
                },
            )
        return anomalies

    async def fail_stale_processing(self, now: Optional[datetime] = None) -> int:
        """
        Mark payments stuck in pending or processing as failed.
        Returns how many were failed. Frees the booking for a new attempt.
        """
        result = await self.db.execute(self._stale_payments(now))
        payments = result.scalars().all()

        for payment in payments:
            stale_status = payment.status
            payment.mark_failed({
                "error_code": f"stale_{stale_status}",
                "error_message": "No gateway outcome recorded before the stale threshold",
                # A pending row never reached the gateway
                "requires_reconciliation": stale_status == PaymentStatus.PROCESSING.value,
            }, now=now)
            logger.warning(f"Failed stale {stale_status} payment {payment.payment_id}")

        await self.db.flush()
        return len(payments)

    async def mark_reconciled(self, payment_id: str, now: Optional[datetime] = None) -> Payment:
        """Record that an operator resolved a flagged payment and its unsettled refunds."""
        result = await self.db.execute(
            select(Payment)
            .where(Payment.payment_id == payment_id)
            .execution_options(populate_existing=True)
        )
        payment = result.scalar_one_or_none()
        if payment is None:
            raise PaymentNotFound(payment_id)

        timestamp = as_utc(now) or utcnow()
        if payment.requires_reconciliation:
            payment.reconciled_at = timestamp
        for refund in payment.refunds:
            if refund.status in (REFUND_PENDING, REFUND_UNKNOWN) and refund.reconciled_at is None:
                refund.reconciled_at = timestamp

        await self.db.flush()
        logger.info(f"Payment {payment_id} marked reconciled")
        return payment

    async def repair_projection(self, payment_id: str, now: Optional[datetime] = None) -> Booking:
        """Re-project a completed payment onto its booking (read-repair)."""
        result = await self.db.execute(
            select(Payment)
            .where(Payment.payment_id == payment_id)
            .execution_options(populate_existing=True)
        )
        payment = result.scalar_one()
        if payment.status != PaymentStatus.COMPLETED.value:
            raise IllegalTransitionError(
                f"Only completed payments can be re-projected (status: {payment.status})",
                details={"payment_id": payment_id},
            )

        result = await self.db.execute(
            select(Booking)
            .where(Booking.id == payment.booking_id)
            .execution_options(populate_existing=True)
        )
        booking = result.scalar_one()
        if booking.is_paid:
            return booking

        booking.project_payment(payment)
        booking.record_event(
            TimelineEvent.PAYMENT_COMPLETED,
            f"Payment {payment.payment_id} reconciled",
            payment.customer_id,
            now,
        )
        await self.db.flush()

        logger.info(f"Repaired projection of {payment.payment_id} onto {booking.booking_number}")
        return booking
