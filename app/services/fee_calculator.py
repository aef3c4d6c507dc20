"""
Fee Calculator - platform/processing fees and provider net payout.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Optional, Union

from app.config import settings
from app.exceptions import InvalidAmount

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")

Amount = Union[Decimal, int, float, str]


@dataclass(frozen=True)
class FeeBreakdown:
    """Fee split for one gross amount. Every field is in cents precision."""

    gross_amount: Decimal
    platform_fee: Decimal
    processing_fee: Decimal
    total_fees: Decimal
    net_amount: Decimal

    @property
    def is_negative_net(self) -> bool:
        return self.net_amount < 0

    def as_dict(self) -> dict:
        return {
            "gross": str(self.gross_amount),
            "platform_fee": str(self.platform_fee),
            "processing_fee": str(self.processing_fee),
            "total_fees": str(self.total_fees),
            "net": str(self.net_amount),
        }


def to_money(value: Amount) -> Decimal:
    """
    Parse a monetary input into a Decimal with at most two decimal places.

    Raises InvalidAmount for non-numeric, non-finite, sub-cent or non-positive input.
    """
    if isinstance(value, bool):
        raise InvalidAmount(value)
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        raise InvalidAmount(value)

    if not amount.is_finite() or amount <= 0:
        raise InvalidAmount(value)
    if amount != amount.quantize(CENT):
        raise InvalidAmount(value)
    return amount.quantize(CENT)


def round_cents(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def calculate_fees(
    gross: Amount,
    platform_rate: Optional[Decimal] = None,
    processing_rate: Optional[Decimal] = None,
    processing_fixed: Optional[Decimal] = None,
) -> FeeBreakdown:
    """
    Compute the fee breakdown for a gross amount.

    Each fee is rounded to cents before summing so that
    net == gross - platform_fee - processing_fee holds exactly.
    A negative net is reported (logged) but not rejected.
    """
    gross_amount = to_money(gross)

    if platform_rate is None:
        platform_rate = Decimal(str(settings.platform_fee_rate))
    if processing_rate is None:
        processing_rate = Decimal(str(settings.processing_fee_rate))
    if processing_fixed is None:
        processing_fixed = Decimal(str(settings.processing_fee_fixed))

    platform_fee = round_cents(gross_amount * platform_rate)
    processing_fee = round_cents(gross_amount * processing_rate + processing_fixed)
    total_fees = platform_fee + processing_fee
    net_amount = gross_amount - total_fees

    breakdown = FeeBreakdown(
        gross_amount=gross_amount,
        platform_fee=platform_fee,
        processing_fee=processing_fee,
        total_fees=total_fees,
        net_amount=net_amount,
    )

    if breakdown.is_negative_net:
        logger.warning(
            f"Fees exceed gross amount: gross={gross_amount} fees={total_fees} net={net_amount}"
        )

    return breakdown
