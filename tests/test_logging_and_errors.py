"""
Tests for structured logging, the Redis health check and the domain error contract.
"""

import json
import logging
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from app.exceptions import (
    BookingNotFound,
    GatewayTimeout,
    OutsideCancellationWindow,
    RefundExceedsBalance,
)
from app.logging_config import JSONFormatter
from app.redis import RedisClient


def _record(msg, *args):
    return logging.LogRecord(
        name="app.services.transaction_coordinator",
        level=logging.INFO,
        pathname=__file__,
        lineno=10,
        msg=msg,
        args=args,
        exc_info=None,
    )


def test_json_formatter_lifts_transaction_ids():
    record = _record("Refund %s processed for %s: %s", "re_1", "PAY-12345678-ABCDEF", Decimal("40.00"))
    record.payment_id = "PAY-12345678-ABCDEF"
    record.refund_id = "re_1"

    data = json.loads(JSONFormatter().format(record))

    assert data["level"] == "INFO"
    assert data["logger"] == "app.services.transaction_coordinator"
    assert data["message"] == "Refund re_1 processed for PAY-12345678-ABCDEF: 40.00"
    assert data["payment_id"] == "PAY-12345678-ABCDEF"
    assert data["refund_id"] == "re_1"
    assert "booking_id" not in data


def test_json_formatter_includes_extra_from_logger_call(caplog):
    logger = logging.getLogger("app.services.reconciliation_service")
    with caplog.at_level(logging.WARNING, logger=logger.name):
        logger.warning("Payment anomaly", extra={"anomaly": "stale_processing", "booking_id": "b-1"})

    data = json.loads(JSONFormatter().format(caplog.records[-1]))

    assert data["anomaly"] == "stale_processing"
    assert data["booking_id"] == "b-1"


@pytest.mark.asyncio
async def test_redis_unreachable_reports_unavailable():
    client = MagicMock()
    client.ping = AsyncMock(side_effect=RedisConnectionError("refused"))

    with patch.object(RedisClient, "get_client", return_value=client):
        assert await RedisClient.is_available() is False


@pytest.mark.asyncio
async def test_redis_ping_reports_available():
    client = MagicMock()
    client.ping = AsyncMock(return_value=True)

    with patch.object(RedisClient, "get_client", return_value=client):
        assert await RedisClient.is_available() is True


def test_error_status_codes():
    assert BookingNotFound("x").status_code == 404
    assert OutsideCancellationWindow("late").status_code == 422
    assert RefundExceedsBalance(Decimal("70.00"), Decimal("60.00")).status_code == 400
    assert GatewayTimeout("slow").status_code == 502


def test_to_http_exception_carries_payload():
    exc = RefundExceedsBalance(Decimal("70.00"), Decimal("60.00")).to_http_exception()

    assert exc.status_code == 400
    assert exc.detail["code"] == "RefundExceedsBalance"
    assert exc.detail["details"] == {"requested": "70.00", "remaining": "60.00"}
