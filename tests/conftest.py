"""
Global pytest fixtures for the tenant billing test suite.

Provides:
- Async database session on a per-test SQLite file
- In-memory tenant billing store
- Record/plan factories
- FastAPI app and async client with DB and ASAAS overrides
"""
import os
from typing import Any, AsyncGenerator, Optional
from unittest.mock import AsyncMock, MagicMock
from uuid import UUID, uuid4

import pytest
import pytest_asyncio

# Set test environment BEFORE any application imports
os.environ["TESTING"] = "true"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["ENVIRONMENT"] = "development"
os.environ["ASAAS_API_KEY"] = "test-asaas-api-key"
os.environ["ASAAS_ENVIRONMENT"] = "sandbox"
os.environ["ASAAS_WEBHOOK_TOKEN"] = "test-webhook-token"
os.environ["INTERNAL_JOB_SECRET"] = "test-internal-job-secret-at-least-32-chars"

from tenant_billing.modules.billing.domain.billing.billing_plan import (  # noqa: E402
    BillingCycle,
    BillingPlan,
    SubscriptionMetadata,
    TenantBillingRecord,
)
from tenant_billing.modules.billing.domain.billing.billing_status import (  # noqa: E402
    BillingStatus,
)
from tenant_billing.modules.billing.domain.billing.store import (  # noqa: E402
    serialize_changes,
)

TEST_WEBHOOK_TOKEN = os.environ["ASAAS_WEBHOOK_TOKEN"]
TEST_INTERNAL_SECRET = os.environ["INTERNAL_JOB_SECRET"]


# ============================================================================
# In-memory store
# ============================================================================


class InMemoryTenantBillingStore:
    """TenantBillingStore over a dict, recording every update call."""

    def __init__(self) -> None:
        self.records: dict[UUID, TenantBillingRecord] = {}
        self.updates: list[tuple[UUID, dict[str, Any]]] = []

    def add(self, record: TenantBillingRecord) -> TenantBillingRecord:
        self.records[record.tenant_id] = record
        return record

    async def get(self, tenant_id: UUID) -> Optional[TenantBillingRecord]:
        return self.records.get(tenant_id)

    async def update(self, tenant_id: UUID, **changes: Any) -> None:
        serialize_changes(changes)
        self.updates.append((tenant_id, changes))
        current = self.records[tenant_id]
        self.records[tenant_id] = current.model_copy(update=changes)

    async def get_by_customer_id(
        self, customer_id: str
    ) -> Optional[TenantBillingRecord]:
        for record in self.records.values():
            if record.external_customer_id == customer_id:
                return record
        return None

    async def get_by_subscription_id(
        self, subscription_id: str
    ) -> Optional[TenantBillingRecord]:
        for record in self.records.values():
            if record.external_subscription_id == subscription_id:
                return record
        return None


@pytest.fixture
def store() -> InMemoryTenantBillingStore:
    return InMemoryTenantBillingStore()


# ============================================================================
# Factories
# ============================================================================


@pytest.fixture
def plan() -> BillingPlan:
    return BillingPlan(
        id="starter",
        name="Starter",
        price_in_cents=9900,
        cycle=BillingCycle.MONTHLY,
        trial_days=14,
        features=("reports",),
    )


@pytest.fixture
def make_record():
    """Build a TenantBillingRecord with sensible ASAAS identifiers."""

    def _make(
        status: BillingStatus = BillingStatus.ACTIVE,
        tenant_id: Optional[UUID] = None,
        customer_id: Optional[str] = "cus_000001",
        subscription_id: Optional[str] = "sub_000001",
        **metadata: Any,
    ) -> TenantBillingRecord:
        return TenantBillingRecord(
            tenant_id=tenant_id or uuid4(),
            external_customer_id=customer_id,
            external_subscription_id=subscription_id,
            billing_status=status,
            subscription_metadata=SubscriptionMetadata(
                plan_id="starter",
                plan_name="Starter",
                price_in_cents=9900,
                **metadata,
            ),
        )

    return _make


@pytest.fixture
def asaas_client() -> MagicMock:
    """AsaasClient double; tests set return values per call."""
    client = MagicMock()
    client.get_subscription = AsyncMock()
    client.cancel_subscription = AsyncMock()
    client.create_subscription = AsyncMock()
    client.get_customer = AsyncMock()
    client.create_customer = AsyncMock()
    client.update_customer = AsyncMock()
    client.find_customer_by_external_reference = AsyncMock()
    client.list_invoices = AsyncMock()
    client.get_payment = AsyncMock()
    return client


# ============================================================================
# Async Database Fixtures
# ============================================================================


@pytest_asyncio.fixture
async def async_engine(tmp_path) -> AsyncGenerator:
    """Async SQLite engine on a temporary file."""
    from sqlalchemy.ext.asyncio import create_async_engine

    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'test.sqlite'}", echo=False
    )
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_maker(async_engine):
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from tenant_billing.shared.db.base import Base

    async with async_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    return async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


@pytest_asyncio.fixture
async def db(session_maker) -> AsyncGenerator:
    """Create database tables and provide an async session."""
    async with session_maker() as session:
        try:
            yield session
        finally:
            await session.rollback()
            await session.close()


# ============================================================================
# FastAPI Test Client Fixtures
# ============================================================================


@pytest.fixture
def app():
    from tenant_billing.main import app as billing_app

    return billing_app


@pytest_asyncio.fixture
async def async_client(app, db, asaas_client) -> AsyncGenerator:
    """Async test client sharing the test session and the ASAAS double."""
    from httpx import ASGITransport, AsyncClient

    from tenant_billing.modules.billing.api.v1.billing_ops import get_asaas_client
    from tenant_billing.shared.db.session import get_db

    async def _get_db():
        yield db

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_asaas_client] = lambda: asaas_client
    try:
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as ac:
            yield ac
    finally:
        app.dependency_overrides.pop(get_db, None)
        app.dependency_overrides.pop(get_asaas_client, None)
