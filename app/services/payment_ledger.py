"""
Payment Ledger Service - payment records, fee snapshot and refund bookkeeping.
"""

import uuid
import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.exceptions import (
    ConflictError,
    PaymentNotFound,
    PaymentNotRefundable,
    RefundExceedsBalance,
    ValidationError,
)
from app.fsm.states import PartyRole, PaymentMethod, PaymentStatus, StatsPeriod
from app.models.booking import Booking
from app.models.payment import Payment, PaymentRefund
from app.services.fee_calculator import Amount, calculate_fees, round_cents, to_money
from app.services.identifiers import new_payment_id, new_refund_id
from app.timeutils import as_utc, utcnow

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = (
    PaymentStatus.PENDING.value,
    PaymentStatus.PROCESSING.value,
    PaymentStatus.COMPLETED.value,
    PaymentStatus.PARTIAL_REFUND.value,
)

# Captured money that still counts as provider revenue
REVENUE_STATUSES = (
    PaymentStatus.COMPLETED.value,
    PaymentStatus.PARTIAL_REFUND.value,
)


class PaymentLedgerService:
    """Service for creating payments and applying refunds."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def create(
        self,
        booking: Booking,
        amount: Amount,
        method: PaymentMethod,
        metadata: Optional[Dict[str, Any]] = None,
        method_details: Optional[Dict[str, Any]] = None,
    ) -> Payment:
        """
        Create a pending payment for a booking with fees precomputed.

        The payment id is assigned here, before the row is flushed.
        Raises ConflictError if the booking already has an active payment.
        """
        fees = calculate_fees(amount)
        try:
            method = PaymentMethod(method)
        except ValueError:
            raise ValidationError(f"Unsupported payment method: {method}")

        payment = Payment(
            payment_id=new_payment_id(),
            booking_id=booking.id,
            customer_id=booking.customer_id,
            provider_id=booking.provider_id,
            gross_amount=fees.gross_amount,
            platform_fee=fees.platform_fee,
            processing_fee=fees.processing_fee,
            total_fees=fees.total_fees,
            net_amount=fees.net_amount,
            currency=booking.currency,
            method=method.value,
            method_details=method_details,
            status=PaymentStatus.PENDING.value,
            request_metadata=metadata,
        )
        self.db.add(payment)

        try:
            await self.db.flush()
        except IntegrityError:
            await self.db.rollback()
            logger.warning(f"Active payment already exists for booking {booking.id}")
            raise ConflictError(
                "Another payment for this booking is in progress",
                details={"booking_id": str(booking.id)},
            )

        logger.info(
            f"Created payment {payment.payment_id} for booking {booking.booking_number}: "
            f"gross={fees.gross_amount} net={fees.net_amount}"
        )
        return payment

    async def get_payment(self, payment_id: str, fresh: bool = False) -> Payment:
        """Get payment by its human-readable id."""
        stmt = select(Payment).where(Payment.payment_id == payment_id)
        if fresh:
            stmt = stmt.execution_options(populate_existing=True).with_for_update()
        result = await self.db.execute(stmt)
        payment = result.scalar_one_or_none()
        if not payment:
            raise PaymentNotFound(payment_id)
        return payment

    async def get_active_payment(self, booking_id: uuid.UUID) -> Optional[Payment]:
        """Fresh read of the booking's single active (non-failed) payment, if any."""
        result = await self.db.execute(
            select(Payment)
            .where(Payment.booking_id == booking_id)
            .where(Payment.status.in_(ACTIVE_STATUSES))
            .execution_options(populate_existing=True)
        )
        return result.scalars().first()

    async def start_refund(
        self,
        payment: Payment,
        amount: Amount,
        reason: Optional[str],
        initiated_by: uuid.UUID,
        now: Optional[datetime] = None,
    ) -> PaymentRefund:
        """Write a pending refund attempt so a lost gateway answer stays visible."""
        attempt = payment.start_refund(
            amount=to_money(amount),
            reason=reason,
            initiated_by=initiated_by,
            refund_id=new_refund_id(),
            now=now,
        )
        await self.db.flush()
        logger.info(f"Refund attempt {attempt.refund_id} of {attempt.amount} started for {payment.payment_id}")
        return attempt

    async def refund(
        self,
        payment: Payment,
        amount: Amount,
        reason: Optional[str],
        initiated_by: uuid.UUID,
        refund_id: Optional[str] = None,
        now: Optional[datetime] = None,
        attempt: Optional[PaymentRefund] = None,
    ) -> PaymentRefund:
        """
        Apply a refund against the payment's current (freshly read) balance.
        ``attempt`` is settled in place when the refund was recorded up front.

        Raises PaymentNotRefundable, InvalidAmount or RefundExceedsBalance.
        """
        payment = await self.get_payment(payment.payment_id, fresh=True)

        if not payment.status_enum.is_refundable:
            raise PaymentNotRefundable(payment.status)

        refund_amount = to_money(amount)
        remaining = payment.remaining_refundable
        if refund_amount > remaining:
            raise RefundExceedsBalance(refund_amount, remaining)

        refund = payment.apply_refund(
            amount=refund_amount,
            reason=reason,
            initiated_by=initiated_by,
            refund_id=refund_id or (attempt.refund_id if attempt else new_refund_id()),
            now=now,
            attempt=attempt,
        )
        await self.db.flush()

        logger.info(
            f"Refund {refund.refund_id} of {refund_amount} applied to {payment.payment_id}: "
            f"status={payment.status} remaining={payment.remaining_refundable}"
        )
        return refund

    async def list_for_user(
        self,
        user_id: uuid.UUID,
        role: PartyRole = PartyRole.ALL,
        status: Optional[PaymentStatus] = None,
        page: int = 1,
        limit: int = 10,
    ) -> Tuple[List[Payment], int]:
        """Paginated payment history, newest first. Returns (payments, total)."""
        page = max(page, 1)
        limit = min(max(limit, 1), 100)

        if role == PartyRole.PROVIDER:
            condition = Payment.provider_id == user_id
        elif role == PartyRole.CUSTOMER:
            condition = Payment.customer_id == user_id
        else:
            condition = or_(Payment.customer_id == user_id, Payment.provider_id == user_id)

        filters = [condition]
        if status is not None:
            filters.append(Payment.status == PaymentStatus(status).value)

        total_result = await self.db.execute(
            select(func.count()).select_from(Payment).where(*filters)
        )
        total = total_result.scalar_one()

        result = await self.db.execute(
            select(Payment)
            .where(*filters)
            .order_by(Payment.created_at.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        return list(result.scalars().all()), total

    async def provider_statistics(
        self,
        provider_id: uuid.UUID,
        period: StatsPeriod = StatsPeriod.MONTH,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """Revenue totals over captured (not fully refunded) payments in the period."""
        since = (as_utc(now) or utcnow()) - timedelta(days=StatsPeriod(period).days)

        result = await self.db.execute(
            select(
                func.coalesce(func.sum(Payment.net_amount), 0),
                func.count(Payment.id),
                func.avg(Payment.gross_amount),
            )
            .where(Payment.provider_id == provider_id)
            .where(Payment.status.in_(REVENUE_STATUSES))
            .where(Payment.created_at >= since)
        )
        total_net, count, average = result.one()

        return {
            "period": StatsPeriod(period).value,
            "total_revenue": round_cents(Decimal(str(total_net))),
            "total_transactions": count,
            "average_amount": round_cents(Decimal(str(average))) if average is not None else Decimal("0.00"),
        }

    async def revenue_trend(
        self,
        provider_id: uuid.UUID,
        months: int = 6,
        now: Optional[datetime] = None,
    ) -> List[Dict[str, Any]]:
        """Net revenue per calendar month, oldest first."""
        now = as_utc(now) or utcnow()
        since = now - timedelta(days=31 * months)

        result = await self.db.execute(
            select(Payment.created_at, Payment.net_amount)
            .where(Payment.provider_id == provider_id)
            .where(Payment.status.in_(REVENUE_STATUSES))
            .where(Payment.created_at >= since)
        )

        buckets: Dict[Tuple[int, int], Dict[str, Any]] = {}
        for created_at, net in result.all():
            created_at = as_utc(created_at)
            key = (created_at.year, created_at.month)
            bucket = buckets.setdefault(
                key,
                {"year": key[0], "month": key[1], "revenue": Decimal("0.00"), "transactions": 0},
            )
            bucket["revenue"] += Decimal(net)
            bucket["transactions"] += 1

        return [buckets[key] for key in sorted(buckets)]
