"""
Tests for TransactionCoordinator: charges, refunds and their failure modes.
"""

import asyncio
import uuid
from datetime import timedelta
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy import select, update
from sqlalchemy.orm.exc import StaleDataError

from app.exceptions import (
    ConflictError,
    GatewayFailure,
    GatewayTimeout,
    IllegalTransitionError,
    InvalidAmount,
    PaymentAlreadyCompleted,
    PaymentNotRefundable,
    RefundExceedsBalance,
    Unauthorized,
)
from app.fsm.states import BookingStatus, PaymentMethod, PaymentStatus, TimelineEvent
from app.models.booking import Booking
from app.models.payment import REFUND_FAILED, REFUND_UNKNOWN, Payment
from app.services.booking_service import BookingService
from app.services.gateway import GatewayCharge, GatewayError, GatewayRefund
from app.services.reconciliation_service import (
    UNCONFIRMED_REFUND,
    UNPROJECTED_COMPLETION,
    ReconciliationService,
)
from app.services.transaction_coordinator import TransactionCoordinator


class StubGateway:
    """Deterministic gateway recording every call."""

    def __init__(self, fail_with=None, delay=0.0, on_charge=None):
        self.fail_with = fail_with
        self.delay = delay
        self.on_charge = on_charge
        self.charges = []
        self.refunds = []

    async def charge(self, amount, method):
        self.charges.append((amount, method))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.on_charge:
            await self.on_charge()
        if self.fail_with:
            raise self.fail_with
        return GatewayCharge(transaction_id=f"pi_stub_{len(self.charges)}")

    async def refund(self, transaction_id, amount):
        self.refunds.append((transaction_id, amount))
        return GatewayRefund(refund_id=f"re_stub_{len(self.refunds)}")


async def _payments_for(db, booking):
    result = await db.execute(
        select(Payment).where(Payment.booking_id == booking.id).order_by(Payment.created_at)
    )
    return list(result.scalars().all())


async def _paid_booking(db, make_booking, customer_id, gateway=None):
    booking = await make_booking()
    coordinator = TransactionCoordinator(db, gateway=gateway or StubGateway())
    result = await coordinator.process_payment(
        booking.id, customer_id, "100.00", PaymentMethod.CREDIT_CARD
    )
    return booking, result


@pytest.mark.asyncio
async def test_successful_payment_projects_onto_booking(db, make_booking, customer_id):
    gateway = StubGateway()
    booking, result = await _paid_booking(db, make_booking, customer_id, gateway)

    assert result.status == PaymentStatus.COMPLETED.value
    assert result.net_amount == Decimal("91.80")
    assert result.transaction_id == "pi_stub_1"
    assert gateway.charges == [(Decimal("100.00"), PaymentMethod.CREDIT_CARD.value)]

    assert booking.payment_status == PaymentStatus.COMPLETED.value
    assert booking.payment_transaction_id == "pi_stub_1"
    assert booking.paid_at is not None
    assert booking.timeline[-1].status == TimelineEvent.PAYMENT_COMPLETED.value
    assert booking.timeline[-1].note == "Payment processed successfully"
    assert booking.status == BookingStatus.PENDING.value


@pytest.mark.asyncio
async def test_gateway_failure_keeps_failed_attempt(db, make_booking, customer_id):
    booking = await make_booking()
    gateway = StubGateway(
        fail_with=GatewayError("Payment failed: Insufficient funds", code="insufficient_funds")
    )
    coordinator = TransactionCoordinator(db, gateway=gateway)

    with pytest.raises(GatewayFailure) as exc:
        await coordinator.process_payment(booking.id, customer_id, "100.00", PaymentMethod.CREDIT_CARD)
    assert exc.value.code == "insufficient_funds"
    assert "Insufficient funds" in exc.value.message

    payments = await _payments_for(db, booking)
    assert [p.status for p in payments] == [PaymentStatus.FAILED.value]
    assert payments[0].error_code == "insufficient_funds"
    assert booking.payment_status == PaymentStatus.PENDING.value
    assert len(booking.timeline) == 1

    # A retry creates a second attempt
    coordinator.gateway = StubGateway()
    await coordinator.process_payment(booking.id, customer_id, "100.00", PaymentMethod.CREDIT_CARD)
    payments = await _payments_for(db, booking)
    assert [p.status for p in payments] == [PaymentStatus.FAILED.value, PaymentStatus.COMPLETED.value]


@pytest.mark.asyncio
async def test_gateway_timeout_flags_reconciliation(db, make_booking, customer_id):
    booking = await make_booking()
    coordinator = TransactionCoordinator(db, gateway=StubGateway(delay=1.0), timeout_seconds=0.01)

    with pytest.raises(GatewayTimeout) as exc:
        await coordinator.process_payment(booking.id, customer_id, "100.00", PaymentMethod.CREDIT_CARD)
    assert isinstance(exc.value, GatewayFailure)
    assert exc.value.details["requires_reconciliation"]

    [payment] = await _payments_for(db, booking)
    assert payment.status == PaymentStatus.FAILED.value
    assert payment.error_code == "gateway_timeout"
    assert payment.requires_reconciliation
    assert booking.payment_status == PaymentStatus.PENDING.value


@pytest.mark.asyncio
async def test_already_paid_booking_skips_gateway(db, make_booking, customer_id):
    booking, _ = await _paid_booking(db, make_booking, customer_id)
    gateway = AsyncMock()
    coordinator = TransactionCoordinator(db, gateway=gateway)

    with pytest.raises(PaymentAlreadyCompleted):
        await coordinator.process_payment(booking.id, customer_id, "100.00", PaymentMethod.CREDIT_CARD)

    gateway.charge.assert_not_awaited()
    assert len(await _payments_for(db, booking)) == 1


@pytest.mark.asyncio
async def test_only_owner_can_pay(db, make_booking, provider_id):
    booking = await make_booking()
    gateway = StubGateway()
    coordinator = TransactionCoordinator(db, gateway=gateway)

    with pytest.raises(Unauthorized):
        await coordinator.process_payment(booking.id, provider_id, "100.00", PaymentMethod.CREDIT_CARD)
    assert gateway.charges == []


@pytest.mark.asyncio
async def test_invalid_amount_rejected_before_anything(db, make_booking, customer_id):
    booking = await make_booking()
    gateway = StubGateway()

    with pytest.raises(InvalidAmount):
        await TransactionCoordinator(db, gateway=gateway).process_payment(
            booking.id, customer_id, "0", PaymentMethod.CREDIT_CARD
        )
    assert gateway.charges == []
    assert await _payments_for(db, booking) == []


@pytest.mark.asyncio
async def test_cancelled_booking_cannot_be_paid(db, make_booking, customer_id):
    booking = await make_booking()
    await BookingService(db).cancel(booking.id, customer_id)

    with pytest.raises(IllegalTransitionError):
        await TransactionCoordinator(db, gateway=StubGateway()).process_payment(
            booking.id, customer_id, "100.00", PaymentMethod.CREDIT_CARD
        )


@pytest.mark.asyncio
async def test_held_lock_rejects_concurrent_attempt(db, make_booking, customer_id, mock_redis):
    booking = await make_booking()
    mock_redis.set.return_value = False
    gateway = StubGateway()

    with pytest.raises(ConflictError):
        await TransactionCoordinator(db, gateway=gateway).process_payment(
            booking.id, customer_id, "100.00", PaymentMethod.CREDIT_CARD
        )
    assert gateway.charges == []


@pytest.mark.asyncio
async def test_lock_fails_open_without_redis(db, make_booking, customer_id, mock_redis):
    mock_redis.set.side_effect = RedisConnectionError("down")

    booking, result = await _paid_booking(db, make_booking, customer_id)

    assert result.status == PaymentStatus.COMPLETED.value
    mock_redis.eval.assert_not_awaited()


@pytest.mark.asyncio
async def test_in_flight_payment_conflicts(db, make_booking, customer_id):
    booking = await make_booking()
    coordinator = TransactionCoordinator(db, gateway=StubGateway())
    pending = await coordinator.ledger.create(booking, "100.00", PaymentMethod.CREDIT_CARD)
    await db.commit()

    with pytest.raises(ConflictError) as exc:
        await coordinator.process_payment(booking.id, customer_id, "100.00", PaymentMethod.CREDIT_CARD)
    assert exc.value.details["payment_id"] == pending.payment_id


@pytest.mark.asyncio
async def test_booking_paid_during_charge_is_not_double_completed(db, make_booking, customer_id):
    booking = await make_booking()

    async def someone_else_paid():
        await db.execute(
            update(Booking)
            .where(Booking.id == booking.id)
            .values(payment_status=PaymentStatus.COMPLETED.value)
        )

    coordinator = TransactionCoordinator(db, gateway=StubGateway(on_charge=someone_else_paid))

    with pytest.raises(PaymentAlreadyCompleted):
        await coordinator.process_payment(booking.id, customer_id, "100.00", PaymentMethod.CREDIT_CARD)

    [payment] = await _payments_for(db, booking)
    assert payment.status == PaymentStatus.FAILED.value
    assert payment.error_code == "duplicate_completion"
    assert payment.gateway_transaction_id == "pi_stub_1"
    assert payment.requires_reconciliation


@pytest.mark.asyncio
async def test_partial_refund_keeps_booking_paid(db, make_booking, customer_id):
    gateway = StubGateway()
    booking, result = await _paid_booking(db, make_booking, customer_id, gateway)
    coordinator = TransactionCoordinator(db, gateway=gateway)

    refund = await coordinator.process_refund(result.payment_id, customer_id, "40.00", reason="Partial")

    assert refund.status == PaymentStatus.PARTIAL_REFUND.value
    assert refund.remaining == Decimal("60.00")
    assert refund.refund_id == "re_stub_1"
    assert refund.booking_events == {}
    assert gateway.refunds == [("pi_stub_1", Decimal("40.00"))]
    assert booking.payment_status == PaymentStatus.COMPLETED.value
    assert booking.refund_amount == Decimal("40.00")

    with pytest.raises(RefundExceedsBalance):
        await coordinator.process_refund(result.payment_id, customer_id, "70.00")
    assert len(gateway.refunds) == 1


@pytest.mark.asyncio
async def test_full_refund_cascades_to_booking(db, make_booking, customer_id, provider_id):
    booking, result = await _paid_booking(db, make_booking, customer_id)
    coordinator = TransactionCoordinator(db, gateway=StubGateway())

    refund = await coordinator.process_refund(
        result.payment_id, provider_id, "100.00", reason="Provider unavailable"
    )

    assert refund.status == PaymentStatus.REFUNDED.value
    assert TimelineEvent.REFUNDED.value in refund.booking_events
    assert booking.payment_status == PaymentStatus.REFUNDED.value
    assert booking.refunded_at is not None
    assert booking.timeline[-1].note == "Full refund processed: Provider unavailable"
    assert booking.latest_status_entry.status == booking.status

    with pytest.raises(PaymentNotRefundable):
        await coordinator.process_refund(result.payment_id, customer_id, "1.00")


@pytest.mark.asyncio
async def test_refund_gateway_failure_changes_nothing(db, make_booking, customer_id):
    booking, result = await _paid_booking(db, make_booking, customer_id)
    gateway = StubGateway()
    gateway.refund = AsyncMock(side_effect=GatewayError("Refund declined", code="refund_declined"))
    coordinator = TransactionCoordinator(db, gateway=gateway)

    with pytest.raises(GatewayFailure):
        await coordinator.process_refund(result.payment_id, customer_id, "10.00")

    payment = await coordinator.ledger.get_payment(result.payment_id, fresh=True)
    assert payment.status == PaymentStatus.COMPLETED.value
    assert payment.refunded_total == Decimal("0.00")
    assert [r.status for r in payment.refunds] == [REFUND_FAILED]


@pytest.mark.asyncio
async def test_refund_and_view_require_party(db, make_booking, customer_id):
    _, result = await _paid_booking(db, make_booking, customer_id)
    coordinator = TransactionCoordinator(db, gateway=StubGateway())
    stranger = uuid.uuid4()

    with pytest.raises(Unauthorized):
        await coordinator.process_refund(result.payment_id, stranger, "10.00")
    with pytest.raises(Unauthorized):
        await coordinator.get_payment(result.payment_id, stranger)

    payment = await coordinator.get_payment(result.payment_id, customer_id)
    assert payment.payment_id == result.payment_id


@pytest.mark.asyncio
async def test_history_and_statistics(db, make_booking, customer_id, provider_id):
    for _ in range(3):
        await _paid_booking(db, make_booking, customer_id)
    coordinator = TransactionCoordinator(db, gateway=StubGateway())

    history = await coordinator.get_payment_history(customer_id, page=2, limit=2)
    assert history["pagination"] == {"page": 2, "limit": 2, "total": 3, "pages": 2}
    assert len(history["payments"]) == 1

    stats = await coordinator.get_provider_statistics(provider_id)
    assert stats["total_transactions"] == 3
    assert stats["total_revenue"] == Decimal("275.40")
    assert sum(b["transactions"] for b in stats["revenue_trend"]) == 3


@pytest.mark.asyncio
async def test_ambiguous_gateway_error_flags_reconciliation(db, make_booking, customer_id):
    booking = await make_booking()
    gateway = StubGateway(
        fail_with=GatewayError("Gateway timed out: read", code="timeout", requires_reconciliation=True)
    )

    with pytest.raises(GatewayTimeout) as exc:
        await TransactionCoordinator(db, gateway=gateway).process_payment(
            booking.id, customer_id, "100.00", PaymentMethod.CREDIT_CARD
        )
    assert exc.value.code == "timeout"
    assert exc.value.details["requires_reconciliation"]

    [payment] = await _payments_for(db, booking)
    assert payment.status == PaymentStatus.FAILED.value
    assert payment.requires_reconciliation
    assert booking.payment_status == PaymentStatus.PENDING.value


@pytest.mark.asyncio
async def test_cancelled_caller_records_flagged_failure(db, make_booking, customer_id):
    booking = await make_booking()
    gateway = StubGateway(delay=5.0)
    coordinator = TransactionCoordinator(db, gateway=gateway, timeout_seconds=30)

    task = asyncio.create_task(
        coordinator.process_payment(booking.id, customer_id, "100.00", PaymentMethod.CREDIT_CARD)
    )
    while not gateway.charges:
        await asyncio.sleep(0.01)
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task

    [payment] = await _payments_for(db, booking)
    assert payment.status == PaymentStatus.FAILED.value
    assert payment.error_code == "cancelled"
    assert payment.requires_reconciliation
    assert booking.payment_status == PaymentStatus.PENDING.value


@pytest.mark.asyncio
async def test_lost_booking_write_keeps_completed_payment(db, make_booking, customer_id, monkeypatch):
    booking = await make_booking()
    booking_id = booking.id
    real_commit = db.commit
    race = {"armed": False}

    async def booking_changes_underneath():
        race["armed"] = True

    async def commit():
        if race["armed"]:
            race["armed"] = False
            raise StaleDataError("UPDATE statement on table 'bookings' expected to update 1 row(s)")
        await real_commit()

    monkeypatch.setattr(db, "commit", commit)
    coordinator = TransactionCoordinator(db, gateway=StubGateway(on_charge=booking_changes_underneath))

    with pytest.raises(ConflictError) as exc:
        await coordinator.process_payment(booking_id, customer_id, "100.00", PaymentMethod.CREDIT_CARD)

    result = await db.execute(select(Payment).where(Payment.booking_id == booking_id))
    [payment] = result.scalars().all()
    assert payment.status == PaymentStatus.COMPLETED.value
    assert payment.gateway_transaction_id == "pi_stub_1"
    assert exc.value.details["payment_id"] == payment.payment_id

    fresh = await BookingService(db).get_booking(booking_id, fresh=True)
    assert fresh.payment_status == PaymentStatus.PENDING.value

    anomalies = await ReconciliationService(db).find_payment_anomalies()
    assert [(a.kind, a.payment_id) for a in anomalies] == [(UNPROJECTED_COMPLETION, payment.payment_id)]


@pytest.mark.asyncio
async def test_rescheduled_paid_booking_is_not_charged_again(db, make_booking, customer_id, provider_id):
    gateway = StubGateway()
    booking, result = await _paid_booking(db, make_booking, customer_id, gateway)
    service = BookingService(db)
    await service.confirm(booking.id, provider_id)

    successor = await service.reschedule(
        booking.id, customer_id, booking.scheduled_at + timedelta(days=7), reason="Travelling"
    )

    assert successor.payment_status == PaymentStatus.COMPLETED.value
    assert successor.payment_transaction_id == "pi_stub_1"
    assert successor.timeline[-1].status == TimelineEvent.PAYMENT_COMPLETED.value
    payment = await TransactionCoordinator(db, gateway=gateway).ledger.get_payment(result.payment_id)
    assert payment.booking_id == successor.id

    coordinator = TransactionCoordinator(db, gateway=gateway)
    with pytest.raises(PaymentAlreadyCompleted):
        await coordinator.process_payment(successor.id, customer_id, "100.00", PaymentMethod.CREDIT_CARD)
    assert len(gateway.charges) == 1

    await coordinator.process_refund(result.payment_id, customer_id, "100.00")
    assert successor.payment_status == PaymentStatus.REFUNDED.value


@pytest.mark.asyncio
async def test_refund_timeout_leaves_unknown_attempt(db, make_booking, customer_id):
    _, result = await _paid_booking(db, make_booking, customer_id)
    gateway = StubGateway()

    async def slow_refund(transaction_id, amount):
        await asyncio.sleep(1.0)

    gateway.refund = slow_refund
    coordinator = TransactionCoordinator(db, gateway=gateway, timeout_seconds=0.01)

    with pytest.raises(GatewayTimeout) as exc:
        await coordinator.process_refund(result.payment_id, customer_id, "25.00")

    payment = await coordinator.ledger.get_payment(result.payment_id, fresh=True)
    assert payment.status == PaymentStatus.COMPLETED.value
    assert payment.refunded_total == Decimal("0.00")
    [attempt] = payment.refunds
    assert attempt.status == REFUND_UNKNOWN
    assert attempt.amount == Decimal("25.00")
    assert exc.value.details["refund_id"] == attempt.refund_id

    reconciliation = ReconciliationService(db)
    anomalies = await reconciliation.find_payment_anomalies()
    assert [(a.kind, a.refund_id) for a in anomalies] == [(UNCONFIRMED_REFUND, attempt.refund_id)]

    await reconciliation.mark_reconciled(result.payment_id)
    assert await reconciliation.find_payment_anomalies() == []
