"""
Payment Endpoints.
Charges, refunds, history and provider revenue statistics.
"""

import logging
import uuid
from decimal import Decimal
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_current_user_id
from app.database import get_db
from app.fsm.states import PartyRole, PaymentMethod, PaymentStatus, StatsPeriod
from app.models.payment import Payment
from app.services.transaction_coordinator import TransactionCoordinator

router = APIRouter()
logger = logging.getLogger(__name__)


class ProcessPaymentRequest(BaseModel):
    """Request body for charging a booking."""
    booking_id: uuid.UUID
    amount: Decimal
    method: PaymentMethod
    method_details: Optional[Dict[str, Any]] = None


class RefundRequest(BaseModel):
    """Request body for refunding a payment."""
    amount: Decimal
    reason: Optional[str] = Field(None, max_length=500)


def serialize_payment(payment: Payment) -> Dict[str, Any]:
    return {
        "payment_id": payment.payment_id,
        "booking_id": str(payment.booking_id),
        "customer_id": str(payment.customer_id),
        "provider_id": str(payment.provider_id),
        "status": payment.status,
        "method": payment.method,
        "amount": {
            "gross": float(payment.gross_amount),
            "platform_fee": float(payment.platform_fee),
            "processing_fee": float(payment.processing_fee),
            "total_fees": float(payment.total_fees),
            "net": float(payment.net_amount),
            "currency": payment.currency,
        },
        "transaction_id": payment.gateway_transaction_id,
        "refunded_total": float(payment.refunded_total),
        "refunds": [
            {
                "refund_id": refund.refund_id,
                "amount": float(refund.amount),
                "reason": refund.reason,
                "status": refund.status,
                "payment_status": refund.resulting_status,
                "created_at": refund.created_at.isoformat(),
            }
            for refund in payment.refunds
        ],
        "error": {"code": payment.error_code, "message": payment.error_message}
        if payment.error_code
        else None,
        "created_at": payment.created_at.isoformat(),
        "completed_at": payment.completed_at.isoformat() if payment.completed_at else None,
    }


def _request_metadata(request: Request) -> Dict[str, Any]:
    return {
        "ip_address": request.client.host if request.client else None,
        "user_agent": request.headers.get("user-agent"),
    }


@router.post("/process", status_code=201)
async def process_payment(
    body: ProcessPaymentRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    user_id: uuid.UUID = Depends(get_current_user_id),
):
    """
    Charge the caller for one of their bookings.

    A failed charge is recorded and reported as 502; the booking is not touched.
    """
    coordinator = TransactionCoordinator(db)
    result = await coordinator.process_payment(
        booking_id=body.booking_id,
        customer_id=user_id,
        amount=body.amount,
        method=body.method,
        method_details=body.method_details,
        metadata=_request_metadata(request),
    )

    logger.info(f"Payment processed: {result.payment_id}")

    return {
        "status": "success",
        "payment": {
            "payment_id": result.payment_id,
            "booking_number": result.booking_number,
            "status": result.status,
            "amount": float(result.gross_amount),
            "platform_fee": float(result.platform_fee),
            "processing_fee": float(result.processing_fee),
            "net_amount": float(result.net_amount),
            "currency": result.currency,
            "transaction_id": result.transaction_id,
        },
    }


@router.post("/{payment_id}/refund")
async def refund_payment(
    payment_id: str,
    body: RefundRequest,
    db: AsyncSession = Depends(get_db),
    user_id: uuid.UUID = Depends(get_current_user_id),
):
    coordinator = TransactionCoordinator(db)
    result = await coordinator.process_refund(
        payment_id,
        user_id,
        body.amount,
        reason=body.reason,
    )
    return {
        "status": "success",
        "refund": {
            "refund_id": result.refund_id,
            "payment_id": result.payment_id,
            "amount": float(result.amount),
            "payment_status": result.status,
            "remaining": float(result.remaining),
        },
    }


@router.get("/history")
async def payment_history(
    role: PartyRole = PartyRole.ALL,
    status: Optional[PaymentStatus] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
    user_id: uuid.UUID = Depends(get_current_user_id),
):
    """Paginated payments where the caller is the customer and/or the provider."""
    coordinator = TransactionCoordinator(db)
    history = await coordinator.get_payment_history(
        user_id, role=role, status=status, page=page, limit=limit
    )
    return {
        "status": "success",
        "payments": [serialize_payment(p) for p in history["payments"]],
        "pagination": history["pagination"],
    }


@router.get("/statistics")
async def provider_statistics(
    period: StatsPeriod = StatsPeriod.MONTH,
    db: AsyncSession = Depends(get_db),
    user_id: uuid.UUID = Depends(get_current_user_id),
):
    """Revenue for the calling provider over the period, plus a monthly trend."""
    coordinator = TransactionCoordinator(db)
    stats = await coordinator.get_provider_statistics(user_id, period=period)
    return {
        "status": "success",
        "statistics": {
            "period": stats["period"],
            "total_revenue": float(stats["total_revenue"]),
            "total_transactions": stats["total_transactions"],
            "average_amount": float(stats["average_amount"]),
            "revenue_trend": [
                {**bucket, "revenue": float(bucket["revenue"])}
                for bucket in stats["revenue_trend"]
            ],
        },
    }


@router.get("/{payment_id}")
async def get_payment(
    payment_id: str,
    db: AsyncSession = Depends(get_db),
    user_id: uuid.UUID = Depends(get_current_user_id),
):
    payment = await TransactionCoordinator(db).get_payment(payment_id, user_id)
    return {"status": "success", "payment": serialize_payment(payment)}
