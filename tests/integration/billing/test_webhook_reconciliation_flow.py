"""
End-to-end reconciliation through the ledger, dispatcher and SQL store.

Only the ASAAS client is faked; dedup, claim, retry bookkeeping and status
transitions all run against a real SQLite database.
"""

from datetime import datetime, timezone
from uuid import uuid4

import pytest

from tenant_billing.models.webhook_event import WebhookEventStatus
from tenant_billing.modules.billing.domain.billing.asaas_dtos import AsaasSubscription
from tenant_billing.modules.billing.domain.billing.asaas_events import (
    AsaasWebhookEvent,
)
from tenant_billing.modules.billing.domain.billing.billing_enforcer import (
    AccessLevel,
    BillingEnforcer,
)
from tenant_billing.modules.billing.domain.billing.billing_plan import (
    SubscriptionMetadata,
)
from tenant_billing.modules.billing.domain.billing.billing_status import BillingStatus
from tenant_billing.modules.billing.domain.billing.errors import AsaasApiError
from tenant_billing.modules.billing.domain.billing.store import (
    SqlAlchemyTenantBillingStore,
)
from tenant_billing.modules.billing.domain.billing.subscription_service import (
    SubscriptionService,
)
from tenant_billing.modules.billing.domain.billing.webhook_handler import (
    WebhookHandler,
)
from tenant_billing.modules.billing.domain.billing.webhook_ledger import (
    ACTION_DUPLICATE,
    WebhookLedger,
)

NOW = datetime(2026, 3, 20, 10, 0, tzinfo=timezone.utc)


@pytest.fixture
def sql_store(db) -> SqlAlchemyTenantBillingStore:
    return SqlAlchemyTenantBillingStore(db)


@pytest.fixture
def handler(asaas_client, sql_store) -> WebhookHandler:
    service = SubscriptionService(
        asaas_client, sql_store, suspension_threshold_days=15, clock=lambda: NOW
    )
    return WebhookHandler(service, sql_store, webhook_token="", clock=lambda: NOW)


@pytest.fixture
def ledger(db) -> WebhookLedger:
    return WebhookLedger(db, max_attempts=3)


@pytest.fixture
def make_tenant(sql_store):
    async def _make(status: BillingStatus, **metadata):
        return await sql_store.create(
            uuid4(),
            billing_status=status,
            external_customer_id="cus_flow",
            external_subscription_id="sub_flow",
            subscription_metadata=SubscriptionMetadata(
                plan_id="starter", plan_name="Starter", price_in_cents=9900, **metadata
            ),
        )

    return _make


def envelope(event_id: str, event: str, **payment) -> AsaasWebhookEvent:
    body = {"id": "pay_flow", "customer": "cus_flow", "subscription": "sub_flow"}
    body.update(payment)
    return AsaasWebhookEvent.model_validate({"id": event_id, "event": event, "payment": body})


@pytest.mark.asyncio
async def test_overdue_past_threshold_suspends_and_denies_access(
    ledger, handler, sql_store, make_tenant
):
    tenant = await make_tenant(BillingStatus.OVERDUE, days_overdue=10)

    result = await ledger.receive(
        "asaas", envelope("evt_overdue", "PAYMENT_OVERDUE", dueDate="2026-03-04"), handler
    )

    assert result.action == "tenant_suspended"
    record = await sql_store.get(tenant.tenant_id)
    assert record.billing_status == BillingStatus.SUSPENDED
    assert record.subscription_metadata.days_overdue == 16

    context = await BillingEnforcer(sql_store).get_billing_context(tenant.tenant_id)
    assert context.access_level == AccessLevel.NONE
    assert context.is_suspended is True


@pytest.mark.asyncio
async def test_payment_on_canceled_tenant_fails_after_bounded_retries(
    ledger, handler, sql_store, make_tenant
):
    tenant = await make_tenant(BillingStatus.CANCELED)

    first = await ledger.receive(
        "asaas", envelope("evt_late", "PAYMENT_CONFIRMED"), handler
    )
    sweeps = [await ledger.process_pending(handler) for _ in range(3)]

    assert first.success is False
    assert sweeps[0]["retrying"] == 1
    assert sweeps[1]["failed"] == 1
    assert sweeps[2]["processed"] == 0

    event, _ = await ledger.ingest("asaas", "evt_late", "PAYMENT_CONFIRMED", {})
    assert event.status == WebhookEventStatus.FAILED.value
    assert event.attempts == 3
    assert "canceled" in event.error_message

    record = await sql_store.get(tenant.tenant_id)
    assert record.billing_status == BillingStatus.CANCELED


@pytest.mark.asyncio
async def test_duplicate_delivery_applies_once(ledger, handler, sql_store, make_tenant):
    tenant = await make_tenant(BillingStatus.PENDING_PAYMENT)
    delivery = envelope("evt_paid", "PAYMENT_CONFIRMED", paymentDate="2026-03-19")

    first = await ledger.receive("asaas", delivery, handler)
    await sql_store.update(
        tenant.tenant_id,
        subscription_metadata=(await sql_store.get(tenant.tenant_id))
        .subscription_metadata.model_copy(update={"last_payment_date": None}),
    )
    second = await ledger.receive("asaas", delivery, handler)

    assert first.action == "tenant_activated"
    assert second.action == ACTION_DUPLICATE
    record = await sql_store.get(tenant.tenant_id)
    assert record.billing_status == BillingStatus.ACTIVE
    # The redelivery did not re-run the handler.
    assert record.subscription_metadata.last_payment_date is None


@pytest.mark.asyncio
async def test_subscription_canceled_redelivery_for_canceled_tenant_succeeds(
    ledger, handler, sql_store, asaas_client, make_tenant
):
    tenant = await make_tenant(BillingStatus.CANCELED)
    asaas_client.get_subscription.return_value = AsaasSubscription(
        id="sub_flow", customer="cus_flow", deleted=True
    )
    delivery = AsaasWebhookEvent.model_validate(
        {
            "id": "evt_cancel",
            "event": "SUBSCRIPTION_CANCELED",
            "subscription": {"id": "sub_flow", "customer": "cus_flow"},
        }
    )

    result = await ledger.receive("asaas", delivery, handler)

    assert result.success is True
    event, _ = await ledger.ingest("asaas", "evt_cancel", "SUBSCRIPTION_CANCELED", {})
    assert event.status == WebhookEventStatus.PROCESSED.value
    assert (await sql_store.get(tenant.tenant_id)).billing_status == BillingStatus.CANCELED


@pytest.mark.asyncio
async def test_subscription_canceled_with_inactive_snapshot_keeps_tenant_canceled(
    ledger, handler, sql_store, asaas_client, make_tenant
):
    tenant = await make_tenant(BillingStatus.CANCELED)
    asaas_client.get_subscription.return_value = AsaasSubscription(
        id="sub_flow", customer="cus_flow", status="INACTIVE", deleted=False
    )
    delivery = AsaasWebhookEvent.model_validate(
        {
            "id": "evt_cancel_inactive",
            "event": "SUBSCRIPTION_CANCELED",
            "subscription": {"id": "sub_flow", "customer": "cus_flow"},
        }
    )

    result = await ledger.receive("asaas", delivery, handler)

    assert result.success is True
    assert result.error is None
    event, _ = await ledger.ingest(
        "asaas", "evt_cancel_inactive", "SUBSCRIPTION_CANCELED", {}
    )
    assert event.status == WebhookEventStatus.PROCESSED.value
    assert event.attempts == 1
    assert (await sql_store.get(tenant.tenant_id)).billing_status == BillingStatus.CANCELED


@pytest.mark.asyncio
async def test_outage_then_recovery_through_retry_sweep(
    ledger, handler, sql_store, asaas_client, make_tenant
):
    tenant = await make_tenant(BillingStatus.SUSPENDED)
    asaas_client.get_subscription.side_effect = [
        AsaasApiError(503, "ASAAS request failed"),
        AsaasSubscription(id="sub_flow", customer="cus_flow", status="ACTIVE"),
    ]
    delivery = AsaasWebhookEvent.model_validate(
        {
            "id": "evt_renewed",
            "event": "SUBSCRIPTION_RENEWED",
            "subscription": {"id": "sub_flow", "customer": "cus_flow"},
        }
    )

    first = await ledger.receive("asaas", delivery, handler)
    summary = await ledger.process_pending(handler)

    assert first.retryable is True
    assert summary["succeeded"] == 1
    assert (await sql_store.get(tenant.tenant_id)).billing_status == BillingStatus.ACTIVE
