"""
Test configuration and fixtures.
Uses SQLite in-memory for fast tests. Mocks Redis and the worker session factory.
"""
import pytest
import uuid
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.dialects.postgresql import JSONB
from laundrify.config import get_settings
from laundrify.database import Base
import laundrify.models  # noqa: F401  (registers tables on Base.metadata)
from laundrify.models.booking import Booking
from laundrify.models.referral import Referral


# Register JSONB as JSON for SQLite compatibility in tests
@compiles(JSONB, "sqlite")
def _compile_jsonb_sqlite(type_, compiler, **kw):
    return "JSON"


@pytest.fixture(autouse=True)
def _clear_settings_cache():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
async def db():
    """In-memory SQLite database for tests."""
    engine = create_async_engine("sqlite+aiosqlite:///:memory:")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with session_factory() as session:
        yield session
    await engine.dispose()


@pytest.fixture
def mock_redis():
    """Mock for async Redis - prevents real Redis calls in tests."""
    with patch("laundrify.utils.redis.get_redis", new_callable=AsyncMock) as mock:
        redis_mock = AsyncMock()
        redis_mock.set = AsyncMock(return_value=True)
        redis_mock.get = AsyncMock(return_value=None)
        redis_mock.ping = AsyncMock(return_value=True)
        mock.return_value = redis_mock
        yield redis_mock


@pytest.fixture
def no_sleep():
    """Skip retry backoff sleeps."""
    with patch("asyncio.sleep", new_callable=AsyncMock) as mock:
        yield mock


@pytest.fixture
def checkout_payload():
    """A complete checkout payload as the storefront sends it."""
    return {
        "customer_id": "cust_7f3a9c21",
        "customer_name": "Priya Sharma",
        "phone": "+919812345678",
        "address": "14 Lake View Road, Koramangala",
        "address_details": {"landmark": "Near Forum Mall", "pincode": "560095"},
        "pickup_date": "2025-01-15",
        "pickup_time": "09:00-11:00",
        "services": ["Wash & Fold", "Dry Clean"],
        "line_items": [
            {"name": "Shirt", "quantity": 2, "unit_price": 30},
            {"service_name": "Towel", "quantity": 1, "unit_price": 20},
        ],
        "charges_breakdown": {
            "base_price": 80,
            "tax": 11,
            "service_fee": 0,
            "delivery_fee": 0,
            "handling_fee": 9,
            "discount": 0,
        },
        "total_price": 100,
        "discount_amount": 0,
    }


@pytest.fixture
def make_booking(db):
    """Insert a booking row directly, bypassing the controller."""
    async def _make(**overrides) -> Booking:
        now = datetime.now(timezone.utc)
        values = {
            "order_id": f"T{uuid.uuid4().hex[:10].upper()}",
            "customer_id": "cust_direct",
            "address": "1 Test Street",
            "line_items": [{"name": "Shirt", "quantity": 1, "unit_price": 100.0, "line_total": 100.0}],
            "items_summary": "Shirt x 1",
            "charges_breakdown": {"base_price": 100.0, "discount": 0.0},
            "total_price": 100.0,
            "discount_amount": 0.0,
            "final_amount": 100.0,
            "status": "pending",
            "payment_status": "pending",
            "created_at": now,
        }
        values.update(overrides)
        booking = Booking(**values)
        db.add(booking)
        await db.flush()
        return booking
    return _make


@pytest.fixture
def make_referral(db):
    """Insert a referral row directly."""
    async def _make(**overrides) -> Referral:
        now = datetime.now(timezone.utc)
        values = {
            "referrer_id": "user_referrer_1",
            "referral_code": f"REFTEST{uuid.uuid4().hex[:8].upper()}",
            "status": "pending",
            "discount_percentage": 50,
            "created_at": now,
            "expires_at": now + timedelta(days=30),
        }
        values.update(overrides)
        referral = Referral(**values)
        db.add(referral)
        await db.flush()
        return referral
    return _make
