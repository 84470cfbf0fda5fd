"""
Pytest configuration and fixtures.

WHY: Fixtures provide reusable test setup/teardown logic, reducing
duplication and ensuring consistent test environments.

Services that open their own sessions (the notifier and the sweep) share
one in-memory SQLite connection with the test session through StaticPool,
so rows committed in one are visible to the others.
"""

import pytest
import pytest_asyncio
from typing import AsyncGenerator
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.pool import StaticPool

from billing_engine.main import app
from billing_engine import models  # noqa: F401  (registers tables)
from billing_engine.api.subscriptions import get_notifier
from billing_engine.core.auth import create_access_token
from billing_engine.core.config import settings
from billing_engine.db.session import get_db, make_session_factory
from billing_engine.models.base import Base
from billing_engine.models.plan import BillingInterval, PlanType
from billing_engine.models.user import UserRole
from billing_engine.services.email import EmailService, MockEmailProvider
from billing_engine.services.payment_gateway import get_payment_gateway
from billing_engine.services.reconciliation_sweep import ReconciliationSweep
from billing_engine.services.scheduler import get_sweep
from billing_engine.services.subscription_notifier import SubscriptionNotifier

from tests.factories import PlanFactory, UserFactory
from tests.fakes import FakePaymentGateway


# Test database URL
# WHY: Using SQLite for tests eliminates external database dependencies
# and makes tests faster.
TEST_ASYNC_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@pytest_asyncio.fixture(scope="function")
async def db_engine():
    """
    Create a test database engine.

    WHY: Function scope ensures each test gets a fresh database state,
    preventing test pollution and ensuring test isolation.
    """
    engine = create_async_engine(
        TEST_ASYNC_DATABASE_URL,
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    """Session factory bound to the test engine (same options as production)."""
    return make_session_factory(db_engine)


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """
    Create a test database session.

    Yields:
        AsyncSession: Database session for the test
    """
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture(autouse=True)
def use_mock_email_provider(monkeypatch):
    """
    Ensure all tests use the mock email provider.

    WHY: Tests should never send real emails. Clearing the class-level
    outbox keeps assertions about sent emails local to each test.
    """
    monkeypatch.setattr(settings, "RESEND_API_KEY", None)
    MockEmailProvider.clear_sent_emails()
    yield
    MockEmailProvider.clear_sent_emails()


@pytest.fixture
def gateway() -> FakePaymentGateway:
    return FakePaymentGateway()


@pytest.fixture
def email_service() -> EmailService:
    return EmailService(provider=MockEmailProvider())


@pytest.fixture
def notifier(session_factory, email_service) -> SubscriptionNotifier:
    return SubscriptionNotifier(session_factory=session_factory, email_service=email_service)


@pytest.fixture
def sweep(session_factory, gateway, notifier) -> ReconciliationSweep:
    return ReconciliationSweep(
        session_factory=session_factory,
        gateway=gateway,
        notifier=notifier,
    )


@pytest_asyncio.fixture
async def client(
    db_session: AsyncSession,
    gateway: FakePaymentGateway,
    notifier: SubscriptionNotifier,
    sweep: ReconciliationSweep,
) -> AsyncGenerator[AsyncClient, None]:
    """
    Create a test HTTP client.

    WHY: AsyncClient allows testing FastAPI endpoints without running
    a real server. Startup hooks do not run under ASGITransport, so the
    scheduler stays off.
    """

    async def override_get_db():
        """Override database dependency with test session."""
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_payment_gateway] = lambda: gateway
    app.dependency_overrides[get_notifier] = lambda: notifier
    app.dependency_overrides[get_sweep] = lambda: sweep

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


# ============================================================================
# Catalog and users
# ============================================================================


@pytest_asyncio.fixture
async def free_plan(db_session):
    return await PlanFactory.create_free(db_session)


@pytest_asyncio.fixture
async def standard_plan(db_session):
    """Monthly paid plan with a 7-day trial."""
    return await PlanFactory.create(
        db_session,
        name="Standard",
        plan_type=PlanType.STANDARD,
        price=4900,
        trial_period_days=7,
        stripe_price_id="price_standard",
        features=["analytics", "review_replies"],
        max_products=10,
        sort_order=1,
        is_popular=True,
    )


@pytest_asyncio.fixture
async def premium_plan(db_session):
    """Yearly paid plan without a trial."""
    return await PlanFactory.create(
        db_session,
        name="Premium",
        plan_type=PlanType.PREMIUM,
        price=99000,
        billing_interval=BillingInterval.YEAR,
        stripe_price_id="price_premium",
        features=["analytics", "review_replies", "dispute_priority"],
        sort_order=2,
    )


@pytest_asyncio.fixture
async def vendor(db_session):
    return await UserFactory.create(
        db_session,
        email="vendor@example.com",
        first_name="Vera",
        last_name="Vendor",
    )


@pytest_asyncio.fixture
async def admin(db_session):
    return await UserFactory.create(
        db_session,
        email="admin@example.com",
        first_name="Ada",
        last_name="Admin",
        role=UserRole.ADMIN,
    )


@pytest.fixture
def vendor_headers(vendor) -> dict:
    token = create_access_token({"user_id": vendor.id, "role": vendor.role.value})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def admin_headers(admin) -> dict:
    token = create_access_token({"user_id": admin.id, "role": admin.role.value})
    return {"Authorization": f"Bearer {token}"}
