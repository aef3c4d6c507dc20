"""
Transaction Coordinator - payment and refund across Booking and Payment.

Flow for a charge:
1. Validate booking, owner and payment projection
2. Create Payment (pending) and commit - the attempt is durable from here on
3. Mark processing, commit, call the gateway under a timeout
4. Success: complete Payment, project it onto Booking, append timeline entry
5. Failure/timeout/cancel: mark Payment failed, leave Booking untouched

Refunds write a pending attempt row before the gateway call. An unanswered
refund leaves it `unknown` for the reconciliation sweep.
"""

import asyncio
import uuid
import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from app.config import settings
from app.exceptions import (
    ConflictError,
    GatewayFailure,
    GatewayTimeout,
    IllegalTransitionError,
    PaymentAlreadyCompleted,
    PaymentNotRefundable,
    RefundExceedsBalance,
    Unauthorized,
)
from app.fsm.states import (
    BookingStatus,
    PartyRole,
    PaymentMethod,
    PaymentStatus,
    StatsPeriod,
    TimelineEvent,
)
from app.models.booking import Booking
from app.models.payment import REFUND_FAILED, REFUND_UNKNOWN, Payment, PaymentRefund
from app.services.booking_lock import booking_lock
from app.services.booking_service import BookingService
from app.services.fee_calculator import Amount, to_money
from app.services.gateway import GatewayCharge, GatewayError, PaymentGateway, get_gateway
from app.services.payment_ledger import PaymentLedgerService

logger = logging.getLogger(__name__)

UNPAYABLE_BOOKING_STATUSES = (
    BookingStatus.CANCELLED,
    BookingStatus.NO_SHOW,
    BookingStatus.RESCHEDULED,
)


@dataclass
class PaymentResult:
    payment_id: str
    booking_id: uuid.UUID
    booking_number: str
    status: str
    gross_amount: Decimal
    platform_fee: Decimal
    processing_fee: Decimal
    net_amount: Decimal
    currency: str
    transaction_id: Optional[str]

    @classmethod
    def from_payment(cls, payment: Payment, booking: Booking) -> "PaymentResult":
        return cls(
            payment_id=payment.payment_id,
            booking_id=booking.id,
            booking_number=booking.booking_number,
            status=payment.status,
            gross_amount=payment.gross_amount,
            platform_fee=payment.platform_fee,
            processing_fee=payment.processing_fee,
            net_amount=payment.net_amount,
            currency=payment.currency,
            transaction_id=payment.gateway_transaction_id,
        )


@dataclass
class RefundResult:
    refund_id: str
    payment_id: str
    amount: Decimal
    status: str
    remaining: Decimal
    booking_events: Dict[str, Any] = field(default_factory=dict)


class TransactionCoordinator:
    """Orchestrates charges and refunds over the booking and payment stores."""

    def __init__(
        self,
        db: AsyncSession,
        gateway: Optional[PaymentGateway] = None,
        timeout_seconds: Optional[float] = None,
    ):
        self.db = db
        self.gateway = gateway or get_gateway()
        self.timeout_seconds = timeout_seconds or settings.gateway_timeout_seconds
        self.bookings = BookingService(db)
        self.ledger = PaymentLedgerService(db)

    # Charges

    async def process_payment(
        self,
        booking_id: uuid.UUID,
        customer_id: uuid.UUID,
        amount: Amount,
        method: PaymentMethod,
        method_details: Optional[Dict[str, Any]] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> PaymentResult:
        """
        Charge the customer for a booking.

        Raises BookingNotFound, Unauthorized, PaymentAlreadyCompleted, InvalidAmount,
        ConflictError or GatewayFailure. On any failure the booking's payment
        projection is left as it was.
        """
        gross = to_money(amount)
        booking = await self.bookings.get_booking(booking_id, fresh=True)

        if booking.customer_id != customer_id:
            raise Unauthorized("Unauthorized to process payment for this booking")
        if booking.is_paid:
            raise PaymentAlreadyCompleted(booking.id)
        if booking.status_enum in UNPAYABLE_BOOKING_STATUSES:
            raise IllegalTransitionError(
                f"Cannot pay for a booking in status {booking.status}",
                details={"booking_id": str(booking.id), "status": booking.status},
            )

        async with booking_lock(booking.id):
            active = await self.ledger.get_active_payment(booking.id)
            if active is not None:
                if active.status_enum.is_paid:
                    # Payment row says paid but the booking projection does not
                    logger.error(
                        f"Booking {booking.booking_number} has paid payment {active.payment_id} "
                        f"but projection is {booking.payment_status}"
                    )
                    raise PaymentAlreadyCompleted(booking.id)
                raise ConflictError(
                    "A payment for this booking is already in progress",
                    details={"booking_id": str(booking.id), "payment_id": active.payment_id},
                )

            payment = await self.ledger.create(
                booking,
                gross,
                method,
                metadata=metadata,
                method_details=method_details,
            )
            await self.db.commit()

            payment.mark_processing()
            await self.db.commit()

            try:
                charge = await asyncio.wait_for(
                    self.gateway.charge(payment.gross_amount, payment.method),
                    timeout=self.timeout_seconds,
                )
            except asyncio.TimeoutError:
                # Charge may have gone through without acknowledgement
                await self._record_failure(payment, {
                    "error_code": "gateway_timeout",
                    "error_message": f"Gateway did not answer within {self.timeout_seconds}s",
                    "requires_reconciliation": True,
                })
                raise GatewayTimeout(
                    "Payment gateway timed out",
                    details={"payment_id": payment.payment_id, "requires_reconciliation": True},
                )
            except GatewayError as e:
                await self._record_failure(payment, e.to_response())
                if e.requires_reconciliation:
                    raise GatewayTimeout(
                        f"Payment gateway outcome unknown: {e.message}",
                        code=e.code,
                        details={"payment_id": payment.payment_id, "requires_reconciliation": True},
                    )
                raise GatewayFailure(
                    f"Payment processing failed: {e.message}",
                    code=e.code,
                    details={"payment_id": payment.payment_id},
                )
            except asyncio.CancelledError:
                await asyncio.shield(self._record_failure(payment, {
                    "error_code": "cancelled",
                    "error_message": "Caller cancelled the payment request",
                    "requires_reconciliation": True,
                }))
                raise

            return await self._complete(booking.id, payment, charge, customer_id)

    async def _record_failure(self, payment: Payment, response: Dict[str, Any]) -> None:
        payment.mark_failed(response)
        await self.db.commit()
        logger.warning(
            f"Payment {payment.payment_id} failed: {response.get('error_code')} "
            f"{response.get('error_message')}"
        )

    async def _complete(
        self,
        booking_id: uuid.UUID,
        payment: Payment,
        charge: GatewayCharge,
        customer_id: uuid.UUID,
    ) -> PaymentResult:
        # Optimistic re-check against a fresh read right before commit
        booking = await self.bookings.get_booking(booking_id, fresh=True)
        if booking.is_paid:
            await self._record_failure(payment, {
                "id": charge.transaction_id,
                "error_code": "duplicate_completion",
                "error_message": "Booking was paid by another request; charge needs reversal",
                "requires_reconciliation": True,
            })
            raise PaymentAlreadyCompleted(booking.id)

        payment.mark_completed(charge.to_response())
        booking.project_payment(payment)
        booking.record_event(
            TimelineEvent.PAYMENT_COMPLETED,
            "Payment processed successfully",
            customer_id,
        )

        try:
            await self.db.commit()
        except StaleDataError:
            await self.db.rollback()
            await self._complete_payment_only(payment.payment_id, charge)
            raise ConflictError(
                "Booking changed while the payment was completing",
                details={"payment_id": payment.payment_id, "booking_id": str(booking_id)},
            )

        logger.info(
            f"Payment {payment.payment_id} completed for booking {booking.booking_number}: "
            f"{payment.gross_amount} {payment.currency} ({payment.gateway_transaction_id})",
            extra={
                "payment_id": payment.payment_id,
                "booking_id": str(booking.id),
                "booking_number": booking.booking_number,
            },
        )
        return PaymentResult.from_payment(payment, booking)

    async def _complete_payment_only(self, payment_id: str, charge: GatewayCharge) -> None:
        """
        Persist the captured charge even though the booking write lost a race.
        Leaves the detectable anomaly: completed Payment, booking not marked paid.
        """
        payment = await self.ledger.get_payment(payment_id, fresh=True)
        payment.mark_completed(charge.to_response())
        await self.db.commit()
        logger.error(
            f"Payment {payment_id} completed but booking {payment.booking_id} projection "
            f"was not updated; needs reconciliation"
        )

    # Refunds

    async def process_refund(
        self,
        payment_id: str,
        requester_id: uuid.UUID,
        amount: Amount,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> RefundResult:
        """
        Refund part or all of a completed payment.

        Raises PaymentNotFound, Unauthorized, PaymentNotRefundable, InvalidAmount,
        RefundExceedsBalance, GatewayFailure or ConflictError.
        """
        refund_amount = to_money(amount)
        payment = await self.ledger.get_payment(payment_id, fresh=True)

        if not payment.is_party(requester_id):
            raise Unauthorized("Unauthorized to refund this payment")
        if not payment.status_enum.is_refundable:
            raise PaymentNotRefundable(payment.status)
        if refund_amount > payment.remaining_refundable:
            raise RefundExceedsBalance(refund_amount, payment.remaining_refundable)

        async with booking_lock(payment.booking_id):
            attempt = await self.ledger.start_refund(
                payment, refund_amount, reason, requester_id, now=now
            )
            await self.db.commit()

            try:
                gateway_refund = await asyncio.wait_for(
                    self.gateway.refund(payment.gateway_transaction_id, refund_amount),
                    timeout=self.timeout_seconds,
                )
            except asyncio.TimeoutError:
                await self._settle_refund_attempt(attempt, REFUND_UNKNOWN)
                raise GatewayTimeout(
                    "Refund gateway timed out",
                    details={
                        "payment_id": payment_id,
                        "refund_id": attempt.refund_id,
                        "requires_reconciliation": True,
                    },
                )
            except GatewayError as e:
                if e.requires_reconciliation:
                    await self._settle_refund_attempt(attempt, REFUND_UNKNOWN)
                    raise GatewayTimeout(
                        f"Refund gateway outcome unknown: {e.message}",
                        code=e.code,
                        details={
                            "payment_id": payment_id,
                            "refund_id": attempt.refund_id,
                            "requires_reconciliation": True,
                        },
                    )
                await self._settle_refund_attempt(attempt, REFUND_FAILED)
                raise GatewayFailure(
                    f"Refund processing failed: {e.message}",
                    code=e.code,
                    details={"payment_id": payment_id},
                )
            except asyncio.CancelledError:
                await asyncio.shield(self._settle_refund_attempt(attempt, REFUND_UNKNOWN))
                raise

            refund = await self.ledger.refund(
                payment,
                refund_amount,
                reason,
                requester_id,
                refund_id=gateway_refund.refund_id,
                now=now,
                attempt=attempt,
            )

            booking = await self.bookings.get_booking(payment.booking_id)
            booking.project_payment(payment)
            events = {}
            if payment.status == PaymentStatus.REFUNDED.value:
                entry = booking.record_event(
                    TimelineEvent.REFUNDED,
                    f"Full refund processed: {reason or 'No reason provided'}",
                    requester_id,
                    now,
                )
                events[entry.status] = entry.created_at

            try:
                await self.db.commit()
            except StaleDataError:
                await self.db.rollback()
                attempt.refund_id = gateway_refund.refund_id
                await self._settle_refund_attempt(attempt, REFUND_UNKNOWN)
                logger.error(
                    f"Refund {gateway_refund.refund_id} issued by gateway but not recorded "
                    f"for {payment_id}; needs reconciliation"
                )
                raise ConflictError(
                    "Payment changed while the refund was being recorded",
                    details={"payment_id": payment_id, "refund_id": gateway_refund.refund_id},
                )

        logger.info(
            f"Refund {refund.refund_id} processed for {payment_id}: {refund_amount}",
            extra={"payment_id": payment_id, "refund_id": refund.refund_id},
        )
        return RefundResult(
            refund_id=refund.refund_id,
            payment_id=payment.payment_id,
            amount=refund.amount,
            status=payment.status,
            remaining=payment.remaining_refundable,
            booking_events=events,
        )

    async def _settle_refund_attempt(self, attempt: PaymentRefund, status: str) -> None:
        attempt.status = status
        await self.db.commit()
        logger.warning(f"Refund attempt {attempt.refund_id} settled as {status}")

    # Reads

    async def get_payment(self, payment_id: str, user_id: uuid.UUID) -> Payment:
        """Payment details, visible to the customer and the provider only."""
        payment = await self.ledger.get_payment(payment_id)
        if not payment.is_party(user_id):
            raise Unauthorized("Unauthorized to view this payment")
        return payment

    async def get_payment_history(
        self,
        user_id: uuid.UUID,
        role: PartyRole = PartyRole.ALL,
        status: Optional[PaymentStatus] = None,
        page: int = 1,
        limit: int = 10,
    ) -> Dict[str, Any]:
        page = max(page, 1)
        limit = min(max(limit, 1), 100)
        payments, total = await self.ledger.list_for_user(
            user_id, role=role, status=status, page=page, limit=limit
        )
        pages = (total + limit - 1) // limit
        return {
            "payments": payments,
            "pagination": {"page": page, "limit": limit, "total": total, "pages": pages},
        }

    async def get_provider_statistics(
        self,
        provider_id: uuid.UUID,
        period: StatsPeriod = StatsPeriod.MONTH,
        months: int = 6,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        stats = await self.ledger.provider_statistics(provider_id, period=period, now=now)
        stats["revenue_trend"] = await self.ledger.revenue_trend(provider_id, months=months, now=now)
        return stats
