from datetime import date, datetime, timezone
from typing import Any
from unittest.mock import AsyncMock

import pytest

from tenant_billing.modules.billing.domain.billing.asaas_dtos import AsaasSubscription
from tenant_billing.modules.billing.domain.billing.asaas_events import (
    AsaasEventType,
    AsaasWebhookEvent,
)
from tenant_billing.modules.billing.domain.billing.billing_status import BillingStatus
from tenant_billing.modules.billing.domain.billing.errors import (
    AsaasApiError,
    WebhookInvalidError,
)
from tenant_billing.modules.billing.domain.billing.subscription_service import (
    SubscriptionService,
)
from tenant_billing.modules.billing.domain.billing.webhook_handler import (
    ACTION_IGNORED,
    ACTION_TENANT_NOT_FOUND,
    WebhookHandler,
)

NOW = datetime(2026, 3, 20, 12, 0, tzinfo=timezone.utc)


def payment_event(event: str, **payment: Any) -> AsaasWebhookEvent:
    body = {
        "id": "pay_000001",
        "customer": "cus_000001",
        "subscription": "sub_000001",
        "value": 99.0,
        "dueDate": "2026-03-04",
    }
    body.update(payment)
    return AsaasWebhookEvent.model_validate(
        {"id": f"evt_{event.lower()}", "event": event, "payment": body}
    )


def subscription_event(event: str, **subscription: Any) -> AsaasWebhookEvent:
    body = {"id": "sub_000001", "customer": "cus_000001", "status": "ACTIVE"}
    body.update(subscription)
    return AsaasWebhookEvent.model_validate(
        {"id": f"evt_{event.lower()}", "event": event, "subscription": body}
    )


@pytest.fixture
def handler(asaas_client, store) -> WebhookHandler:
    service = SubscriptionService(
        asaas_client, store, suspension_threshold_days=15, clock=lambda: NOW
    )
    return WebhookHandler(
        service, store, webhook_token="secret-token", clock=lambda: NOW
    )


class TestAccessToken:
    def test_matching_token(self, handler) -> None:
        assert handler.validate_access_token("secret-token") is True

    def test_missing_or_wrong_token(self, handler) -> None:
        assert handler.validate_access_token(None) is False
        assert handler.validate_access_token("wrong") is False

    def test_no_configured_token_accepts_all(self, asaas_client, store) -> None:
        handler = WebhookHandler(
            SubscriptionService(asaas_client, store), store, webhook_token=""
        )
        assert handler.validate_access_token(None) is True

    @pytest.mark.asyncio
    async def test_handle_event_rejects_bad_token(self, handler, store) -> None:
        result = await handler.handle_event(
            payment_event("PAYMENT_CONFIRMED"), access_token="wrong"
        )
        assert result.success is False
        assert result.retryable is False
        assert store.updates == []


class TestValidateEvent:
    def test_unknown_event_type(self, handler) -> None:
        event = AsaasWebhookEvent(event="PAYMENT_TELEPORTED")
        with pytest.raises(WebhookInvalidError, match="Unknown event type"):
            handler.validate_event(event)

    def test_payment_event_without_payment(self, handler) -> None:
        with pytest.raises(WebhookInvalidError, match="Payment payload is required"):
            handler.validate_event(AsaasWebhookEvent(event="PAYMENT_CONFIRMED"))

    def test_subscription_event_without_subscription(self, handler) -> None:
        with pytest.raises(WebhookInvalidError):
            handler.validate_event(AsaasWebhookEvent(event="SUBSCRIPTION_UPDATED"))

    def test_malformed_payment(self, handler) -> None:
        event = AsaasWebhookEvent(event="PAYMENT_CONFIRMED", payment={"value": 10})
        with pytest.raises(WebhookInvalidError, match="Malformed"):
            handler.validate_event(event)

    def test_transfer_event_has_no_payload(self, handler) -> None:
        event_type, payload = handler.validate_event(
            AsaasWebhookEvent(event="TRANSFER_DONE", transfer={"id": "tra_1"})
        )
        assert event_type == AsaasEventType.TRANSFER_DONE
        assert payload is None


class TestDispatch:
    @pytest.mark.asyncio
    async def test_unknown_event_is_non_retryable_failure(self, handler) -> None:
        result = await handler.dispatch(AsaasWebhookEvent(event="NOPE"))
        assert result.success is False
        assert result.retryable is False
        assert result.event_type == "NOPE"

    @pytest.mark.asyncio
    async def test_unresolved_tenant(self, handler) -> None:
        result = await handler.dispatch(payment_event("PAYMENT_CONFIRMED"))
        assert result.success is True
        assert result.action == ACTION_TENANT_NOT_FOUND
        assert result.is_no_op

    @pytest.mark.asyncio
    async def test_tenant_resolved_by_customer_when_subscription_unknown(
        self, handler, store, make_record
    ) -> None:
        record = store.add(make_record(BillingStatus.PENDING_PAYMENT, subscription_id=None))

        result = await handler.dispatch(payment_event("PAYMENT_CONFIRMED"))

        assert result.tenant_id == record.tenant_id
        assert store.records[record.tenant_id].billing_status == BillingStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_payment_created_is_log_only(self, handler, store, make_record) -> None:
        record = store.add(make_record(BillingStatus.TRIAL))

        result = await handler.dispatch(payment_event("PAYMENT_CREATED"))

        assert result.action == "payment_registered"
        assert result.tenant_id == record.tenant_id
        assert store.updates == []

    @pytest.mark.asyncio
    async def test_payment_received_reports_its_own_type(
        self, handler, store, make_record
    ) -> None:
        record = store.add(make_record(BillingStatus.OVERDUE, days_overdue=3))

        result = await handler.dispatch(
            payment_event("PAYMENT_RECEIVED", paymentDate="2026-03-18")
        )

        assert result.event_type == "PAYMENT_RECEIVED"
        assert result.action == "tenant_activated"
        metadata = store.records[record.tenant_id].subscription_metadata
        assert metadata.last_payment_date == date(2026, 3, 18)

    @pytest.mark.asyncio
    async def test_confirmed_date_takes_precedence(
        self, handler, store, make_record
    ) -> None:
        record = store.add(make_record(BillingStatus.PENDING_PAYMENT))

        await handler.dispatch(
            payment_event(
                "PAYMENT_CONFIRMED",
                confirmedDate="2026-03-17",
                paymentDate="2026-03-18",
            )
        )

        metadata = store.records[record.tenant_id].subscription_metadata
        assert metadata.last_payment_date == date(2026, 3, 17)

    @pytest.mark.asyncio
    async def test_overdue_past_threshold_suspends(
        self, handler, store, make_record
    ) -> None:
        record = store.add(make_record(BillingStatus.OVERDUE, days_overdue=10))

        result = await handler.dispatch(
            payment_event("PAYMENT_OVERDUE", dueDate="2026-03-04")
        )

        assert result.success is True
        assert result.action == "tenant_suspended"
        stored = store.records[record.tenant_id]
        assert stored.billing_status == BillingStatus.SUSPENDED
        assert stored.subscription_metadata.days_overdue == 16

    @pytest.mark.asyncio
    async def test_overdue_below_threshold(self, handler, store, make_record) -> None:
        store.add(make_record(BillingStatus.ACTIVE))

        result = await handler.dispatch(
            payment_event("PAYMENT_OVERDUE", dueDate="2026-03-15")
        )

        assert result.action == "tenant_overdue"

    @pytest.mark.asyncio
    async def test_overdue_without_due_date_is_invalid(
        self, handler, store, make_record
    ) -> None:
        store.add(make_record(BillingStatus.ACTIVE))

        result = await handler.dispatch(payment_event("PAYMENT_OVERDUE", dueDate=None))

        assert result.success is False
        assert result.retryable is False

    @pytest.mark.asyncio
    async def test_refund_does_not_change_status(
        self, handler, store, make_record
    ) -> None:
        record = store.add(make_record(BillingStatus.ACTIVE))

        result = await handler.dispatch(payment_event("PAYMENT_REFUNDED"))

        assert result.action == "refund_registered"
        assert store.records[record.tenant_id].billing_status == BillingStatus.ACTIVE
        assert store.updates == []

    @pytest.mark.asyncio
    async def test_unhandled_payment_event_is_ignored(
        self, handler, store, make_record
    ) -> None:
        store.add(make_record(BillingStatus.ACTIVE))

        result = await handler.dispatch(payment_event("PAYMENT_UPDATED"))

        assert result.success is True
        assert result.action == "payment_event_ignored"
        assert result.is_no_op

    @pytest.mark.asyncio
    async def test_transfer_event_is_ignored(self, handler) -> None:
        result = await handler.dispatch(
            AsaasWebhookEvent(event="TRANSFER_DONE", transfer={"id": "tra_1"})
        )
        assert result.success is True
        assert result.action == ACTION_IGNORED

    @pytest.mark.asyncio
    async def test_canceled_tenant_payment_confirmed_is_retryable_failure(
        self, handler, store, make_record
    ) -> None:
        record = store.add(make_record(BillingStatus.CANCELED))

        result = await handler.dispatch(payment_event("PAYMENT_CONFIRMED"))

        assert result.success is False
        assert result.retryable is True
        assert "canceled" in result.error
        assert store.records[record.tenant_id].billing_status == BillingStatus.CANCELED

    @pytest.mark.asyncio
    async def test_subscription_events_sync(
        self, handler, store, make_record, asaas_client
    ) -> None:
        record = store.add(make_record(BillingStatus.SUSPENDED))
        asaas_client.get_subscription.return_value = AsaasSubscription.model_validate(
            {"id": "sub_000001", "customer": "cus_000001", "status": "ACTIVE"}
        )

        activated = await handler.dispatch(subscription_event("SUBSCRIPTION_ACTIVATED"))
        renewed = await handler.dispatch(subscription_event("SUBSCRIPTION_RENEWED"))

        assert activated.action == "subscription_synced"
        assert renewed.action == "subscription_updated"
        assert renewed.event_type == "SUBSCRIPTION_RENEWED"
        assert store.records[record.tenant_id].billing_status == BillingStatus.ACTIVE
        assert asaas_client.get_subscription.await_count == 2

    @pytest.mark.asyncio
    async def test_subscription_canceled_for_canceled_tenant_falls_back_to_sync(
        self, handler, store, make_record, asaas_client
    ) -> None:
        store.add(make_record(BillingStatus.CANCELED))
        asaas_client.get_subscription.return_value = AsaasSubscription.model_validate(
            {"id": "sub_000001", "customer": "cus_000001", "deleted": True}
        )

        result = await handler.dispatch(subscription_event("SUBSCRIPTION_CANCELED"))

        assert result.success is True
        assert result.error is None
        assert result.action == "tenant_canceled"
        asaas_client.get_subscription.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_processor_outage_is_retryable(
        self, handler, store, make_record, asaas_client
    ) -> None:
        store.add(make_record(BillingStatus.ACTIVE))
        asaas_client.get_subscription.side_effect = AsaasApiError(504, "timed out")

        result = await handler.dispatch(subscription_event("SUBSCRIPTION_UPDATED"))

        assert result.success is False
        assert result.retryable is True

    @pytest.mark.asyncio
    async def test_unexpected_error_becomes_result(
        self, handler, store, make_record
    ) -> None:
        store.add(make_record(BillingStatus.ACTIVE))
        handler.subscription_service.handle_payment_confirmed = AsyncMock(
            side_effect=RuntimeError("boom")
        )

        result = await handler.dispatch(payment_event("PAYMENT_CONFIRMED"))

        assert result.success is False
        assert result.error == "boom"
        assert result.retryable is True
