from datetime import date
from unittest.mock import AsyncMock
from uuid import uuid4

import pytest
from sqlalchemy.exc import OperationalError

from tenant_billing.models.billing import BillingPlanRecord
from tenant_billing.modules.billing.domain.billing.billing_plan import (
    BillingPlanCatalog,
    SubscriptionMetadata,
)
from tenant_billing.modules.billing.domain.billing.billing_status import BillingStatus
from tenant_billing.modules.billing.domain.billing.store import (
    SqlAlchemyTenantBillingStore,
    TenantBillingStore,
    serialize_changes,
)
from tenant_billing.shared.core.exceptions import (
    ResourceNotFoundError,
    StoreAdapterError,
)


@pytest.fixture
def sql_store(db) -> SqlAlchemyTenantBillingStore:
    return SqlAlchemyTenantBillingStore(db)


def test_sql_store_satisfies_protocol(sql_store):
    assert isinstance(sql_store, TenantBillingStore)


def test_serialize_changes_rejects_unknown_fields():
    with pytest.raises(ValueError, match="tenant_id"):
        serialize_changes({"tenant_id": uuid4()})


def test_serialize_changes_flattens_domain_values():
    metadata = SubscriptionMetadata(
        plan_id="starter",
        plan_name="Starter",
        price_in_cents=9900,
        next_billing_date=date(2026, 4, 1),
    )

    values = serialize_changes(
        {"billing_status": BillingStatus.OVERDUE, "subscription_metadata": metadata}
    )

    assert values["billing_status"] == "overdue"
    assert values["subscription_metadata"]["next_billing_date"] == "2026-04-01"


@pytest.mark.asyncio
async def test_create_and_get(sql_store):
    tenant_id = uuid4()

    created = await sql_store.create(tenant_id, external_customer_id="cus_1")
    fetched = await sql_store.get(tenant_id)

    assert created.billing_status == BillingStatus.TRIAL
    assert fetched.external_customer_id == "cus_1"
    assert fetched.subscription_metadata is None
    assert await sql_store.get(uuid4()) is None


@pytest.mark.asyncio
async def test_update_is_visible_to_next_read(sql_store):
    tenant_id = uuid4()
    await sql_store.create(tenant_id, billing_status=BillingStatus.ACTIVE)
    metadata = SubscriptionMetadata(
        plan_id="starter", plan_name="Starter", price_in_cents=9900, days_overdue=4
    )

    await sql_store.update(
        tenant_id,
        billing_status=BillingStatus.OVERDUE,
        subscription_metadata=metadata,
        external_subscription_id="sub_1",
    )

    record = await sql_store.get(tenant_id)
    assert record.billing_status == BillingStatus.OVERDUE
    assert record.subscription_metadata.days_overdue == 4
    assert record.external_subscription_id == "sub_1"


@pytest.mark.asyncio
async def test_lookup_by_processor_ids(sql_store):
    tenant_id = uuid4()
    await sql_store.create(
        tenant_id, external_customer_id="cus_7", external_subscription_id="sub_7"
    )

    by_customer = await sql_store.get_by_customer_id("cus_7")
    by_subscription = await sql_store.get_by_subscription_id("sub_7")

    assert by_customer.tenant_id == tenant_id
    assert by_subscription.tenant_id == tenant_id
    assert await sql_store.get_by_customer_id("cus_missing") is None


@pytest.mark.asyncio
async def test_update_unknown_tenant(sql_store):
    with pytest.raises(ResourceNotFoundError):
        await sql_store.update(uuid4(), billing_status=BillingStatus.ACTIVE)


@pytest.mark.asyncio
async def test_database_errors_are_wrapped(db):
    db.get = AsyncMock(side_effect=OperationalError("SELECT", {}, Exception("locked")))
    store = SqlAlchemyTenantBillingStore(db)

    with pytest.raises(StoreAdapterError):
        await store.get(uuid4())


@pytest.mark.asyncio
async def test_plan_catalog_lists_active_public_plans(db):
    db.add_all(
        [
            BillingPlanRecord(
                id="pro",
                name="Pro",
                price_in_cents=29900,
                trial_days=7,
                features=["reports", "exports"],
                sort_order=2,
            ),
            BillingPlanRecord(id="starter", name="Starter", price_in_cents=9900, sort_order=1),
            BillingPlanRecord(id="legacy", name="Legacy", price_in_cents=4900, is_active=False),
            BillingPlanRecord(id="partner", name="Partner", price_in_cents=0, is_public=False),
        ]
    )
    await db.commit()
    catalog = BillingPlanCatalog(db)

    plans = await catalog.list_active()

    assert [p.id for p in plans] == ["starter", "pro"]
    assert plans[1].features == ("reports", "exports")
    assert plans[1].price == 299.0
    assert [p.id for p in await catalog.list_active(public_only=False)] == [
        "partner",
        "starter",
        "pro",
    ]
    assert (await catalog.get("legacy")).active is False
    assert await catalog.get("missing") is None
