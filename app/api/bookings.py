"""
Booking Endpoints.
Lifecycle operations for customers and providers.
"""

import logging
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Literal, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_current_user_id
from app.database import get_db
from app.exceptions import Unauthorized
from app.fsm.states import BookingStatus, PartyRole, PaymentMethod, StatsPeriod
from app.models.booking import Booking
from app.services.booking_service import BookingService

router = APIRouter()
logger = logging.getLogger(__name__)


class CreateBookingRequest(BaseModel):
    """Request body for creating a booking."""
    provider_id: uuid.UUID
    service_id: uuid.UUID
    service_title: str = Field(..., max_length=200)
    service_description: Optional[str] = None
    service_category: Optional[str] = None
    scheduled_at: datetime
    time_window_start: Optional[str] = Field(None, pattern=r"^\d{2}:\d{2}$")
    time_window_end: Optional[str] = Field(None, pattern=r"^\d{2}:\d{2}$")
    time_zone: Optional[str] = None
    location: Optional[Dict[str, Any]] = None
    estimated_cost: Decimal
    currency: str = "USD"
    payment_method: PaymentMethod


class ReasonRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


class RescheduleRequest(BaseModel):
    new_scheduled_at: datetime
    time_window_start: Optional[str] = Field(None, pattern=r"^\d{2}:\d{2}$")
    time_window_end: Optional[str] = Field(None, pattern=r"^\d{2}:\d{2}$")
    reason: Optional[str] = Field(None, max_length=500)


class CompleteServiceRequest(BaseModel):
    final_cost: Optional[Decimal] = None
    work_performed: Optional[str] = None
    completion_notes: Optional[str] = None


class AdjustPricingRequest(BaseModel):
    discount_amount: Optional[Decimal] = None
    discount_reason: Optional[str] = None
    tax_amount: Optional[Decimal] = None
    tax_percentage: Optional[Decimal] = None


def _money(value: Optional[Decimal]) -> Optional[float]:
    return float(value) if value is not None else None


def serialize_booking(booking: Booking, include_timeline: bool = False) -> Dict[str, Any]:
    data = {
        "id": str(booking.id),
        "booking_number": booking.booking_number,
        "customer_id": str(booking.customer_id),
        "provider_id": str(booking.provider_id),
        "service": {
            "id": str(booking.service_id),
            "title": booking.service_title,
            "description": booking.service_description,
            "category": booking.service_category,
        },
        "scheduled_at": booking.scheduled_at.isoformat(),
        "time_window": {
            "start": booking.time_window_start,
            "end": booking.time_window_end,
            "time_zone": booking.time_zone,
        },
        "location": booking.location,
        "status": booking.status,
        "pricing": {
            "estimated_cost": _money(booking.estimated_cost),
            "final_cost": _money(booking.final_cost),
            "discount_amount": _money(booking.discount_amount),
            "tax_amount": _money(booking.tax_amount),
            "total_cost": _money(booking.total_cost()),
            "currency": booking.currency,
        },
        "payment": {
            "method": booking.payment_method,
            "status": booking.payment_status,
            "transaction_id": booking.payment_transaction_id,
            "paid_at": booking.paid_at.isoformat() if booking.paid_at else None,
            "refund_amount": _money(booking.refund_amount),
        },
        "refund_eligible": booking.refund_eligible,
        "rescheduled_from_id": str(booking.rescheduled_from_id) if booking.rescheduled_from_id else None,
        "rescheduled_to_id": str(booking.rescheduled_to_id) if booking.rescheduled_to_id else None,
    }
    if include_timeline:
        data["timeline"] = [
            {
                "sequence": entry.sequence,
                "status": entry.status,
                "is_status_change": entry.is_status_change,
                "note": entry.note,
                "actor_id": str(entry.actor_id),
                "timestamp": entry.created_at.isoformat(),
            }
            for entry in booking.timeline
        ]
    return data


@router.post("", status_code=201)
async def create_booking(
    request: CreateBookingRequest,
    db: AsyncSession = Depends(get_db),
    user_id: uuid.UUID = Depends(get_current_user_id),
):
    """Create a pending booking for the calling customer."""
    service = BookingService(db)
    booking = await service.create_booking(
        customer_id=user_id,
        provider_id=request.provider_id,
        service_id=request.service_id,
        service_title=request.service_title,
        service_description=request.service_description,
        service_category=request.service_category,
        scheduled_at=request.scheduled_at,
        time_window_start=request.time_window_start,
        time_window_end=request.time_window_end,
        time_zone=request.time_zone,
        location=request.location,
        estimated_cost=request.estimated_cost,
        currency=request.currency,
        payment_method=request.payment_method,
    )
    return {"status": "success", "booking": serialize_booking(booking, include_timeline=True)}


@router.get("")
async def list_bookings(
    role: PartyRole = PartyRole.ALL,
    status: Optional[BookingStatus] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    sort_by: Literal["created_at", "scheduled_at", "updated_at", "status"] = "created_at",
    order: Literal["asc", "desc"] = "desc",
    db: AsyncSession = Depends(get_db),
    user_id: uuid.UUID = Depends(get_current_user_id),
):
    """Bookings where the caller is the customer and/or the provider."""
    listing = await BookingService(db).list_for_user(
        user_id,
        role=role,
        status=status,
        page=page,
        limit=limit,
        sort_by=sort_by,
        order=order,
    )
    return {
        "status": "success",
        "bookings": [serialize_booking(b) for b in listing["bookings"]],
        "pagination": listing["pagination"],
    }


@router.get("/statistics")
async def booking_statistics(
    period: StatsPeriod = StatsPeriod.MONTH,
    db: AsyncSession = Depends(get_db),
    user_id: uuid.UUID = Depends(get_current_user_id),
):
    """Per-status booking counts for the calling provider."""
    stats = await BookingService(db).provider_statistics(user_id, period=period)
    return {
        "status": "success",
        "statistics": {
            "period": stats["period"],
            "total_bookings": stats["total_bookings"],
            "by_status": {
                status: {"count": s["count"], "revenue": float(s["revenue"])}
                for status, s in stats["by_status"].items()
            },
        },
    }


@router.get("/{booking_id}")
async def get_booking(
    booking_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    user_id: uuid.UUID = Depends(get_current_user_id),
):
    booking = await BookingService(db).get_booking(booking_id)
    if not booking.is_party(user_id):
        raise Unauthorized("Unauthorized to view this booking")
    return {"status": "success", "booking": serialize_booking(booking, include_timeline=True)}


@router.post("/{booking_id}/confirm")
async def confirm_booking(
    booking_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    user_id: uuid.UUID = Depends(get_current_user_id),
):
    booking = await BookingService(db).confirm(booking_id, user_id)
    return {"status": "success", "booking": serialize_booking(booking)}


@router.post("/{booking_id}/start")
async def start_service(
    booking_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    user_id: uuid.UUID = Depends(get_current_user_id),
):
    booking = await BookingService(db).start_service(booking_id, user_id)
    return {"status": "success", "booking": serialize_booking(booking)}


@router.post("/{booking_id}/complete")
async def complete_service(
    booking_id: uuid.UUID,
    request: CompleteServiceRequest,
    db: AsyncSession = Depends(get_db),
    user_id: uuid.UUID = Depends(get_current_user_id),
):
    booking = await BookingService(db).complete_service(
        booking_id,
        user_id,
        final_cost=request.final_cost,
        work_performed=request.work_performed,
        completion_notes=request.completion_notes,
    )
    return {"status": "success", "booking": serialize_booking(booking)}


@router.post("/{booking_id}/no-show")
async def mark_no_show(
    booking_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    user_id: uuid.UUID = Depends(get_current_user_id),
):
    booking = await BookingService(db).mark_no_show(booking_id, user_id)
    return {"status": "success", "booking": serialize_booking(booking)}


@router.post("/{booking_id}/cancel")
async def cancel_booking(
    booking_id: uuid.UUID,
    request: ReasonRequest,
    db: AsyncSession = Depends(get_db),
    user_id: uuid.UUID = Depends(get_current_user_id),
):
    """
    Cancel a booking.

    Only allowed while pending/confirmed and more than the cancellation cutoff
    before the scheduled time.
    """
    booking = await BookingService(db).cancel(booking_id, user_id, reason=request.reason)
    return {"status": "success", "booking": serialize_booking(booking)}


@router.post("/{booking_id}/reschedule")
async def reschedule_booking(
    booking_id: uuid.UUID,
    request: RescheduleRequest,
    db: AsyncSession = Depends(get_db),
    user_id: uuid.UUID = Depends(get_current_user_id),
):
    """Move a booking to a new date. Returns the booking holding the new date."""
    booking = await BookingService(db).reschedule(
        booking_id,
        user_id,
        request.new_scheduled_at,
        reason=request.reason,
        time_window_start=request.time_window_start,
        time_window_end=request.time_window_end,
    )
    return {"status": "success", "booking": serialize_booking(booking)}


@router.post("/{booking_id}/pricing")
async def adjust_pricing(
    booking_id: uuid.UUID,
    request: AdjustPricingRequest,
    db: AsyncSession = Depends(get_db),
    user_id: uuid.UUID = Depends(get_current_user_id),
):
    booking = await BookingService(db).adjust_pricing(
        booking_id,
        user_id,
        discount_amount=request.discount_amount,
        discount_reason=request.discount_reason,
        tax_amount=request.tax_amount,
        tax_percentage=request.tax_percentage,
    )
    return {"status": "success", "booking": serialize_booking(booking)}


@router.get("/{booking_id}/timeline")
async def get_timeline(
    booking_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    user_id: uuid.UUID = Depends(get_current_user_id),
):
    service = BookingService(db)
    booking = await service.get_booking(booking_id)
    if not booking.is_party(user_id):
        raise Unauthorized("Unauthorized to view this booking")
    return {
        "status": "success",
        "timeline": serialize_booking(booking, include_timeline=True)["timeline"],
    }
