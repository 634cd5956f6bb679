"""
Global pytest fixtures for the Wayfarer test suite.

Provides:
- Async database session with SQLite in-memory
- FastAPI async client sharing the test session
- Stripe client with zero-wait retries (mock HTTP with respx)
- Profile factory and auth headers
"""
import os
from typing import Any, AsyncGenerator, Awaitable, Callable, Optional
from uuid import uuid4

# Set test environment BEFORE any app imports
os.environ["TESTING"] = "true"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["SUPABASE_JWT_SECRET"] = "test-jwt-secret-for-testing-at-least-32-bytes"
os.environ["STRIPE_SECRET_KEY"] = "sk_test_wayfarer"
os.environ["STRIPE_PUBLISHABLE_KEY"] = "pk_test_wayfarer"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_wayfarer"
os.environ["STRIPE_API_BASE_URL"] = "https://api.stripe.com/v1"
os.environ["DB_SSL_MODE"] = "disable"
# Keep in-process webhook retries fast
os.environ["WEBHOOK_RETRY_BASE_DELAY_SECONDS"] = "0.001"
os.environ["WEBHOOK_RETRY_MAX_DELAY_SECONDS"] = "0.002"

import httpx  # noqa: E402
import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402

from tests.utils import FAST_RETRY, STRIPE_API  # noqa: E402


# ============================================================================
# Async Database Fixtures
# ============================================================================

@pytest_asyncio.fixture
async def async_engine():
    """In-memory SQLite engine shared across connections via StaticPool."""
    from sqlalchemy.ext.asyncio import create_async_engine
    from sqlalchemy.pool import StaticPool

    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(async_engine) -> AsyncGenerator:
    """Create database tables and provide async session."""
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    import app.models  # noqa: F401
    from app.shared.db.base import Base

    async with async_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async_session_maker = async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )

    async with async_session_maker() as session:
        try:
            yield session
        finally:
            await session.rollback()
            await session.close()


@pytest_asyncio.fixture
async def db(db_session):
    """Alias for db_session."""
    return db_session


# ============================================================================
# Data Factories
# ============================================================================

@pytest.fixture
def profile_factory(db) -> Callable[..., Awaitable[Any]]:
    """Insert a profile row and return it."""
    from app.models.profile import Profile

    async def _create(
        tier: str = "free",
        *,
        role: str = "user",
        status: str = "active",
        stripe_customer_id: Optional[str] = None,
        email: Optional[str] = None,
        storage_used: int = 0,
    ) -> Profile:
        profile = Profile(
            id=uuid4(),
            email=email or f"traveller-{uuid4().hex[:8]}@example.com",
            full_name="Test Traveller",
            role=role,
            subscription_tier=tier,
            subscription_status=status,
            stripe_customer_id=stripe_customer_id,
            storage_used=storage_used,
        )
        db.add(profile)
        await db.commit()
        return profile

    return _create


@pytest.fixture
def subscription_factory(db) -> Callable[..., Awaitable[Any]]:
    """Insert a subscription row for a profile."""
    from datetime import datetime, timedelta, timezone

    from app.models.subscription import Subscription

    async def _create(
        user_id,
        *,
        tier: str = "explorer",
        status: str = "active",
        stripe_subscription_id: str = "sub_123",
        stripe_customer_id: str = "cus_123",
        interval: str = "month",
        period_end: Optional[datetime] = None,
    ) -> Subscription:
        now = datetime.now(timezone.utc)
        sub = Subscription(
            user_id=user_id,
            stripe_subscription_id=stripe_subscription_id,
            stripe_customer_id=stripe_customer_id,
            stripe_price_id="price_123",
            tier=tier,
            status=status,
            interval=interval,
            current_period_start=now,
            current_period_end=period_end or now + timedelta(days=30),
        )
        db.add(sub)
        await db.commit()
        return sub

    return _create


# ============================================================================
# Stripe Fixtures
# ============================================================================

@pytest_asyncio.fixture
async def stripe_http() -> AsyncGenerator:
    async with httpx.AsyncClient() as client:
        yield client


@pytest.fixture
def stripe_client(stripe_http):
    from app.modules.billing.domain.billing.stripe_client import StripeClient

    return StripeClient(
        "sk_test_wayfarer",
        base_url=STRIPE_API,
        retry_config=dict(FAST_RETRY),
        http_client=stripe_http,
    )


@pytest.fixture
def fast_payment_retry():
    from app.modules.billing.domain.billing.payment_errors import PaymentRetryManager

    return PaymentRetryManager(config=dict(FAST_RETRY))


# ============================================================================
# FastAPI Test Client Fixtures
# ============================================================================

@pytest.fixture
def app():
    """Use the real Wayfarer app."""
    from app.main import app as wayfarer_app

    return wayfarer_app


@pytest_asyncio.fixture
async def async_client(app, db, stripe_client) -> AsyncGenerator:
    """Async test client. Overrides get_db and the Stripe client dependency."""
    from httpx import ASGITransport, AsyncClient

    from app.modules.billing.domain.billing.stripe_client import get_stripe_client
    from app.shared.db.session import get_db

    async def _get_db():
        yield db

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_stripe_client] = lambda: stripe_client

    transport = ASGITransport(app=app)
    try:
        async with AsyncClient(transport=transport, base_url="http://test") as ac:
            yield ac
    finally:
        app.dependency_overrides.pop(get_db, None)
        app.dependency_overrides.pop(get_stripe_client, None)


@pytest_asyncio.fixture
async def ac(async_client):
    """Alias for async_client."""
    return async_client


# ============================================================================
# Utility Fixtures
# ============================================================================

@pytest.fixture(autouse=True)
def set_testing_env():
    """Ensure TESTING is set for all tests."""
    os.environ["TESTING"] = "true"
    yield
