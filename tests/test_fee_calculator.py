"""
Tests for fee calculation and money parsing.
"""

import logging
import re
from decimal import Decimal

import pytest

from app.exceptions import InvalidAmount
from app.services.fee_calculator import calculate_fees, to_money
from app.services.identifiers import new_booking_number, new_payment_id


def test_standard_breakdown():
    fees = calculate_fees(100)

    assert fees.gross_amount == Decimal("100.00")
    assert fees.platform_fee == Decimal("5.00")
    assert fees.processing_fee == Decimal("3.20")
    assert fees.total_fees == Decimal("8.20")
    assert fees.net_amount == Decimal("91.80")


@pytest.mark.parametrize("gross", ["0.01", "1.00", "9.99", "33.33", "250.55", "12345.67"])
def test_net_is_gross_minus_fees(gross):
    fees = calculate_fees(gross)

    assert fees.net_amount == fees.gross_amount - fees.platform_fee - fees.processing_fee
    assert fees.total_fees == fees.platform_fee + fees.processing_fee
    for value in (fees.platform_fee, fees.processing_fee, fees.net_amount):
        assert value == value.quantize(Decimal("0.01"))


def test_fees_round_half_up():
    # 10.10 * 0.05 = 0.505 -> 0.51
    fees = calculate_fees("10.10")
    assert fees.platform_fee == Decimal("0.51")


def test_custom_rates():
    fees = calculate_fees(
        "200.00",
        platform_rate=Decimal("0.10"),
        processing_rate=Decimal("0"),
        processing_fixed=Decimal("0"),
    )
    assert fees.platform_fee == Decimal("20.00")
    assert fees.processing_fee == Decimal("0.00")
    assert fees.net_amount == Decimal("180.00")


def test_negative_net_is_reported_not_rejected(caplog):
    with caplog.at_level(logging.WARNING, logger="app.services.fee_calculator"):
        fees = calculate_fees("0.10")

    assert fees.is_negative_net
    assert fees.net_amount < 0
    assert "Fees exceed gross amount" in caplog.text


@pytest.mark.parametrize("value", [0, -5, "-0.01", "abc", "NaN", "Infinity", "1.005", None, True])
def test_invalid_amounts_rejected(value):
    with pytest.raises(InvalidAmount):
        to_money(value)


def test_to_money_normalises():
    assert to_money(42) == Decimal("42.00")
    assert to_money("19.9") == Decimal("19.90")
    assert str(to_money(Decimal("7"))) == "7.00"


def test_as_dict_uses_strings():
    data = calculate_fees(100).as_dict()
    assert data["net"] == "91.80"
    assert data["platform_fee"] == "5.00"


def test_reference_format():
    assert re.fullmatch(r"HMZ-\d{8}-[A-Z0-9]{6}", new_booking_number())
    assert re.fullmatch(r"PAY-\d{8}-[A-Z0-9]{6}", new_payment_id())
    assert new_payment_id() != new_payment_id()
