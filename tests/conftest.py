"""
Pytest configuration and fixtures.
"""

import sys
import os
import uuid
from datetime import timedelta
from typing import AsyncGenerator
from unittest.mock import AsyncMock, patch

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

# Add app to path
sys.path.append(os.getcwd())

from app.database import Base
import app.models  # noqa: F401
from app.fsm.states import PaymentMethod
from app.services.booking_service import BookingService
from app.timeutils import utcnow

# Use in-memory SQLite for tests
TEST_DB_URL = "sqlite+aiosqlite:///:memory:"


@pytest_asyncio.fixture(scope="function")
async def test_engine():
    """Create async engine for tests. One connection so commits stay visible."""
    engine = create_async_engine(
        TEST_DB_URL,
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def session_maker(test_engine):
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture(scope="function")
async def db(session_maker) -> AsyncGenerator[AsyncSession, None]:
    """Create a fresh database session for a test."""
    async with session_maker() as session:
        yield session
        await session.rollback()


@pytest.fixture(autouse=True)
def mock_redis():
    """Redis stand-in: every lock acquisition succeeds."""
    redis = AsyncMock()
    redis.set.return_value = True
    redis.eval.return_value = 1
    with patch("app.redis.get_redis", AsyncMock(return_value=redis)):
        yield redis


@pytest.fixture
def customer_id() -> uuid.UUID:
    return uuid.uuid4()


@pytest.fixture
def provider_id() -> uuid.UUID:
    return uuid.uuid4()


@pytest.fixture
def make_booking(db, customer_id, provider_id):
    """Factory for a pending booking scheduled `hours_ahead` from now."""

    async def _make(hours_ahead: float = 72, estimated_cost="100.00", now=None, **kwargs):
        now = now or utcnow()
        service = BookingService(db)
        return await service.create_booking(
            customer_id=kwargs.pop("customer", customer_id),
            provider_id=kwargs.pop("provider", provider_id),
            service_id=uuid.uuid4(),
            service_title="Deep clean, 2 bedrooms",
            scheduled_at=now + timedelta(hours=hours_ahead),
            estimated_cost=estimated_cost,
            payment_method=PaymentMethod.CREDIT_CARD,
            now=now,
            **kwargs,
        )

    return _make
