"""
Human-readable identifiers for bookings, payments and refunds.

Format: <PREFIX>-<last 8 digits of epoch millis>-<6 uppercase alphanumerics>
"""

import secrets
import string
import time

_ALPHABET = string.ascii_uppercase + string.digits

BOOKING_PREFIX = "HMZ"
PAYMENT_PREFIX = "PAY"
REFUND_PREFIX = "RFD"


def _reference(prefix: str) -> str:
    millis = str(int(time.time() * 1000))[-8:]
    suffix = "".join(secrets.choice(_ALPHABET) for _ in range(6))
    return f"{prefix}-{millis}-{suffix}"


def new_booking_number() -> str:
    return _reference(BOOKING_PREFIX)


def new_payment_id() -> str:
    return _reference(PAYMENT_PREFIX)


def new_refund_id() -> str:
    return _reference(REFUND_PREFIX)
