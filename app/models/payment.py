"""Payment model - one charge attempt for a booking, with fee split and refunds."""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    JSON,
    Numeric,
    String,
    Uuid,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base
from app.fsm.machine import assert_payment_transition
from app.fsm.states import PaymentStatus
from app.timeutils import as_utc, utcnow

# Statuses that count as the booking's single active payment
ACTIVE_STATUS_SQL = "status IN ('pending', 'processing', 'completed', 'partial_refund')"

# Refund attempt statuses
REFUND_PENDING = "pending"
REFUND_SUCCEEDED = "succeeded"
REFUND_FAILED = "failed"
REFUND_UNKNOWN = "unknown"


class Payment(Base):
    """
    Payment attempt for a booking.

    Failed attempts are kept as history; a retry creates a new row.
    At most one active (non-failed, not fully refunded) payment exists per booking.
    """

    __tablename__ = "payments"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )

    # Human-readable id (PAY-XXXXXXXX-XXXXXX), immutable
    payment_id: Mapped[str] = mapped_column(
        String(32),
        unique=True,
        nullable=False,
    )

    booking_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("bookings.id"),
        nullable=False,
        index=True,
    )
    customer_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    provider_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)

    # Amounts
    gross_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    platform_fee: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    processing_fee: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    total_fees: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    net_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="USD", nullable=False)

    # Method descriptor
    method: Mapped[str] = mapped_column(String(30), nullable=False)
    method_details: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)

    status: Mapped[str] = mapped_column(
        String(20),
        default=PaymentStatus.PENDING.value,
        nullable=False,
        index=True,
    )

    # Transaction identifiers
    gateway_transaction_id: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True, index=True
    )
    internal_transaction_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    # Status timestamps
    initiated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    processing_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    failed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    refunded_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Refund sub-record (latest refund; history in payment_refunds)
    refunded_total: Mapped[Decimal] = mapped_column(
        Numeric(10, 2), default=Decimal("0"), nullable=False
    )
    refund_reason: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    refund_initiated_by: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    refund_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    # Raw gateway response metadata
    gateway_response: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)
    error_code: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    # Set when the gateway outcome is uncertain; reconciled_at marks it resolved
    requires_reconciliation: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False, index=True
    )
    reconciled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Request metadata (ip, user agent, device)
    request_metadata: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )

    version: Mapped[int] = mapped_column(Integer, nullable=False)

    refunds: Mapped[List["PaymentRefund"]] = relationship(
        back_populates="payment",
        order_by="PaymentRefund.created_at",
        lazy="selectin",
        cascade="all, delete-orphan",
    )

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index(
            "uq_payments_active_booking",
            "booking_id",
            unique=True,
            sqlite_where=text(ACTIVE_STATUS_SQL),
            postgresql_where=text(ACTIVE_STATUS_SQL),
        ),
    )

    def __repr__(self) -> str:
        return f"<Payment {self.payment_id} {self.status}>"

    @property
    def status_enum(self) -> PaymentStatus:
        return PaymentStatus(self.status)

    @property
    def remaining_refundable(self) -> Decimal:
        return Decimal(self.gross_amount) - Decimal(self.refunded_total or 0)

    def is_party(self, user_id: uuid.UUID) -> bool:
        return user_id in (self.customer_id, self.provider_id)

    def _move_to(self, target: PaymentStatus) -> None:
        assert_payment_transition(self.status_enum, target)
        self.status = target.value

    def mark_processing(self, now: Optional[datetime] = None) -> None:
        self._move_to(PaymentStatus.PROCESSING)
        self.processing_at = as_utc(now) or utcnow()

    def mark_completed(
        self,
        gateway_response: Dict[str, Any],
        now: Optional[datetime] = None,
    ) -> None:
        self._move_to(PaymentStatus.COMPLETED)
        self.completed_at = as_utc(now) or utcnow()
        self.gateway_response = gateway_response
        self.gateway_transaction_id = gateway_response.get("id") or gateway_response.get(
            "transaction_id"
        )
        self.internal_transaction_id = self.payment_id

    def mark_failed(
        self,
        gateway_response: Dict[str, Any],
        now: Optional[datetime] = None,
    ) -> None:
        self._move_to(PaymentStatus.FAILED)
        self.failed_at = as_utc(now) or utcnow()
        self.gateway_response = gateway_response
        self.error_code = gateway_response.get("error_code")
        self.error_message = (gateway_response.get("error_message") or "")[:500] or None
        self.requires_reconciliation = bool(gateway_response.get("requires_reconciliation"))
        if gateway_response.get("id"):
            self.gateway_transaction_id = gateway_response["id"]

    def start_refund(
        self,
        amount: Decimal,
        reason: Optional[str],
        initiated_by: uuid.UUID,
        refund_id: str,
        now: Optional[datetime] = None,
    ) -> "PaymentRefund":
        """Record a refund attempt before the gateway is asked to issue it."""
        refund = PaymentRefund(
            refund_id=refund_id,
            amount=amount,
            reason=reason,
            initiated_by=initiated_by,
            status=REFUND_PENDING,
            created_at=as_utc(now) or utcnow(),
        )
        self.refunds.append(refund)
        return refund

    def apply_refund(
        self,
        amount: Decimal,
        reason: Optional[str],
        initiated_by: uuid.UUID,
        refund_id: str,
        now: Optional[datetime] = None,
        attempt: Optional["PaymentRefund"] = None,
    ) -> "PaymentRefund":
        """
        Record a refund whose bounds were already validated.
        Moves to REFUNDED when nothing remains, else PARTIAL_REFUND.
        ``attempt`` is the pending row written by ``start_refund``, if any.
        """
        timestamp = as_utc(now) or utcnow()
        new_total = Decimal(self.refunded_total or 0) + amount
        target = (
            PaymentStatus.REFUNDED
            if new_total >= Decimal(self.gross_amount)
            else PaymentStatus.PARTIAL_REFUND
        )
        self._move_to(target)

        self.refunded_total = new_total
        self.refund_reason = reason
        self.refund_initiated_by = initiated_by
        self.refund_id = refund_id
        self.refunded_at = timestamp

        refund = attempt
        if refund is None:
            refund = PaymentRefund(
                amount=amount,
                reason=reason,
                initiated_by=initiated_by,
                created_at=timestamp,
            )
            self.refunds.append(refund)
        refund.refund_id = refund_id
        refund.status = REFUND_SUCCEEDED
        refund.resulting_status = target.value
        return refund


class PaymentRefund(Base):
    """
    History of refunds requested against a payment.

    A row is written as ``pending`` before the gateway call and settles to
    ``succeeded``, ``failed`` or ``unknown`` (gateway outcome not known).
    """

    __tablename__ = "payment_refunds"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )

    payment_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("payments.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    refund_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    reason: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    initiated_by: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)

    status: Mapped[str] = mapped_column(
        String(20), default=REFUND_SUCCEEDED, nullable=False, index=True
    )

    # Payment status after this refund was applied
    resulting_status: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)

    reconciled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )

    payment: Mapped["Payment"] = relationship(back_populates="refunds")

    def __repr__(self) -> str:
        return f"<PaymentRefund {self.refund_id} {self.amount} {self.status}>"

