"""
Tests for PaymentLedgerService.
"""

import uuid
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select

from app.exceptions import (
    ConflictError,
    IllegalPaymentTransition,
    InvalidAmount,
    PaymentNotFound,
    PaymentNotRefundable,
    RefundExceedsBalance,
    ValidationError,
)
from app.fsm.states import PartyRole, PaymentMethod, PaymentStatus, StatsPeriod
from app.models.payment import Payment, PaymentRefund
from app.services.payment_ledger import PaymentLedgerService
from app.timeutils import utcnow


async def _completed_payment(db, booking, amount="100.00"):
    ledger = PaymentLedgerService(db)
    payment = await ledger.create(booking, amount, PaymentMethod.CREDIT_CARD)
    payment.mark_processing()
    payment.mark_completed({"id": "pi_test_123", "status": "succeeded"})
    await db.flush()
    return payment


@pytest.mark.asyncio
async def test_create_snapshots_fees(db, make_booking):
    booking = await make_booking()
    ledger = PaymentLedgerService(db)

    payment = await ledger.create(booking, "100.00", "credit_card", metadata={"ip_address": "10.0.0.1"})

    assert payment.payment_id.startswith("PAY-")
    assert payment.status == PaymentStatus.PENDING.value
    assert payment.platform_fee == Decimal("5.00")
    assert payment.processing_fee == Decimal("3.20")
    assert payment.net_amount == Decimal("91.80")
    assert payment.customer_id == booking.customer_id
    assert payment.provider_id == booking.provider_id
    assert payment.request_metadata == {"ip_address": "10.0.0.1"}


@pytest.mark.asyncio
async def test_create_rejects_bad_input(db, make_booking):
    booking = await make_booking()
    ledger = PaymentLedgerService(db)

    with pytest.raises(InvalidAmount):
        await ledger.create(booking, "-1", PaymentMethod.CREDIT_CARD)
    with pytest.raises(ValidationError):
        await ledger.create(booking, "10.00", "gold_bars")


@pytest.mark.asyncio
async def test_second_active_payment_conflicts(db, make_booking):
    booking = await make_booking()
    ledger = PaymentLedgerService(db)
    await ledger.create(booking, "100.00", PaymentMethod.CREDIT_CARD)

    with pytest.raises(ConflictError):
        await ledger.create(booking, "100.00", PaymentMethod.CREDIT_CARD)


@pytest.mark.asyncio
async def test_failed_attempt_allows_retry(db, make_booking):
    booking = await make_booking()
    ledger = PaymentLedgerService(db)
    first = await ledger.create(booking, "100.00", PaymentMethod.CREDIT_CARD)
    first.mark_failed({"error_code": "insufficient_funds", "error_message": "Payment failed: Insufficient funds"})
    await db.flush()

    second = await ledger.create(booking, "100.00", PaymentMethod.CREDIT_CARD)

    assert second.payment_id != first.payment_id
    assert (await ledger.get_active_payment(booking.id)).payment_id == second.payment_id
    assert first.error_code == "insufficient_funds"


@pytest.mark.asyncio
async def test_partial_then_excessive_refund(db, make_booking, customer_id):
    booking = await make_booking()
    payment = await _completed_payment(db, booking)
    ledger = PaymentLedgerService(db)

    refund = await ledger.refund(payment, "40.00", "Partial service", customer_id)

    assert payment.status == PaymentStatus.PARTIAL_REFUND.value
    assert payment.refunded_total == Decimal("40.00")
    assert payment.remaining_refundable == Decimal("60.00")
    assert refund.resulting_status == PaymentStatus.PARTIAL_REFUND.value

    with pytest.raises(RefundExceedsBalance) as exc:
        await ledger.refund(payment, "70.00", "Too much", customer_id)
    assert exc.value.details["remaining"] == "60.00"
    assert "60.00" in exc.value.message

    assert payment.refunded_total == Decimal("40.00")
    assert payment.status == PaymentStatus.PARTIAL_REFUND.value


@pytest.mark.asyncio
async def test_refunds_sum_to_full(db, make_booking, customer_id):
    booking = await make_booking()
    payment = await _completed_payment(db, booking)
    ledger = PaymentLedgerService(db)

    await ledger.refund(payment, "30.00", None, customer_id)
    await ledger.refund(payment, "70.00", "Rest", customer_id)

    assert payment.status == PaymentStatus.REFUNDED.value
    assert payment.remaining_refundable == Decimal("0.00")

    result = await db.execute(select(PaymentRefund).where(PaymentRefund.payment_id == payment.id))
    assert len(result.scalars().all()) == 2

    with pytest.raises(PaymentNotRefundable):
        await ledger.refund(payment, "1.00", None, customer_id)


@pytest.mark.asyncio
async def test_refund_requires_completed_payment(db, make_booking, customer_id):
    booking = await make_booking()
    ledger = PaymentLedgerService(db)
    payment = await ledger.create(booking, "100.00", PaymentMethod.CREDIT_CARD)

    with pytest.raises(PaymentNotRefundable):
        await ledger.refund(payment, "10.00", None, customer_id)


@pytest.mark.asyncio
async def test_illegal_payment_transitions(db, make_booking):
    booking = await make_booking()
    payment = await _completed_payment(db, booking)

    with pytest.raises(IllegalPaymentTransition):
        payment.mark_failed({"error_code": "late"})

    failed_booking = await make_booking()
    ledger = PaymentLedgerService(db)
    failed = await ledger.create(failed_booking, "50.00", PaymentMethod.PAYPAL)
    failed.mark_failed({"error_code": "declined"})
    with pytest.raises(IllegalPaymentTransition):
        failed.mark_completed({"id": "pi_late"})


@pytest.mark.asyncio
async def test_completed_payment_records_gateway_ids(db, make_booking):
    booking = await make_booking()
    payment = await _completed_payment(db, booking)

    assert payment.gateway_transaction_id == "pi_test_123"
    assert payment.internal_transaction_id == payment.payment_id
    assert payment.completed_at is not None
    assert not payment.requires_reconciliation


@pytest.mark.asyncio
async def test_get_payment_not_found(db):
    with pytest.raises(PaymentNotFound):
        await PaymentLedgerService(db).get_payment("PAY-00000000-NOPE00")


@pytest.mark.asyncio
async def test_list_for_user_filters_by_role(db, make_booking, customer_id, provider_id):
    for _ in range(3):
        await _completed_payment(db, await make_booking())
    ledger = PaymentLedgerService(db)

    as_customer, total = await ledger.list_for_user(customer_id, role=PartyRole.CUSTOMER, limit=2)
    assert total == 3
    assert len(as_customer) == 2

    as_provider, total = await ledger.list_for_user(customer_id, role=PartyRole.PROVIDER)
    assert total == 0

    everything, total = await ledger.list_for_user(provider_id, status=PaymentStatus.COMPLETED)
    assert total == 3


@pytest.mark.asyncio
async def test_provider_statistics(db, make_booking, provider_id, customer_id):
    first = await _completed_payment(db, await make_booking(), "100.00")
    await _completed_payment(db, await make_booking(), "50.00")
    ledger = PaymentLedgerService(db)
    await ledger.refund(first, "10.00", None, customer_id)

    stats = await ledger.provider_statistics(provider_id, period=StatsPeriod.WEEK)

    assert stats["period"] == "week"
    assert stats["total_transactions"] == 2
    # 91.80 + 45.75 (50 - 2.50 - 1.75)
    assert stats["total_revenue"] == Decimal("137.55")
    assert stats["average_amount"] == Decimal("75.00")

    trend = await ledger.revenue_trend(provider_id, months=3)
    now = utcnow()
    assert trend[-1]["year"] == now.year
    assert trend[-1]["month"] == now.month
    assert trend[-1]["transactions"] == 2

    empty = await ledger.provider_statistics(uuid.uuid4())
    assert empty["total_transactions"] == 0
    assert empty["total_revenue"] == Decimal("0.00")


@pytest.mark.asyncio
async def test_statistics_ignore_old_payments(db, make_booking, provider_id):
    payment = await _completed_payment(db, await make_booking())
    payment.created_at = utcnow() - timedelta(days=40)
    await db.flush()

    stats = await PaymentLedgerService(db).provider_statistics(provider_id, period=StatsPeriod.MONTH)
    assert stats["total_transactions"] == 0
