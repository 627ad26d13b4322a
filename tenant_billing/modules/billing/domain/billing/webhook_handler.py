"""Webhook dispatcher for ASAAS billing events."""

from __future__ import annotations

import hmac
from datetime import datetime
from typing import Awaitable, Callable, Optional, Union
from uuid import UUID

import structlog
from pydantic import BaseModel, ValidationError

from tenant_billing.modules.billing.domain.billing.asaas_events import (
    AsaasEventType,
    AsaasPaymentPayload,
    AsaasSubscriptionPayload,
    AsaasWebhookEvent,
    is_payment_event,
    is_subscription_event,
    parse_event_type,
)
from tenant_billing.modules.billing.domain.billing.billing_plan import (
    TenantBillingRecord,
)
from tenant_billing.modules.billing.domain.billing.billing_status import BillingStatus
from tenant_billing.modules.billing.domain.billing.errors import (
    BillingError,
    WebhookInvalidError,
)
from tenant_billing.modules.billing.domain.billing.store import TenantBillingStore
from tenant_billing.modules.billing.domain.billing.subscription_service import (
    SubscriptionService,
    calculate_days_overdue,
    utc_now,
)
from tenant_billing.shared.core.config import get_settings

logger = structlog.get_logger()

ACTION_IGNORED = "ignored"
ACTION_TENANT_NOT_FOUND = "tenant_not_found"
# Actions that acknowledge an event without touching tenant state.
NO_OP_ACTIONS = frozenset(
    {
        ACTION_IGNORED,
        ACTION_TENANT_NOT_FOUND,
        "payment_event_ignored",
        "subscription_event_ignored",
    }
)


class WebhookProcessingResult(BaseModel):
    success: bool
    event_type: str
    tenant_id: Optional[UUID] = None
    action: Optional[str] = None
    error: Optional[str] = None
    # Whether the ledger may try this event again after a failure.
    retryable: bool = True

    @property
    def is_no_op(self) -> bool:
        return self.success and self.action in NO_OP_ACTIONS


ParsedPayload = Union[AsaasPaymentPayload, AsaasSubscriptionPayload, None]
PaymentHandler = Callable[
    [TenantBillingRecord, AsaasPaymentPayload], Awaitable[WebhookProcessingResult]
]
SubscriptionHandler = Callable[
    [TenantBillingRecord, AsaasSubscriptionPayload], Awaitable[WebhookProcessingResult]
]


class WebhookHandler:
    """
    Classifies ASAAS events, resolves the owning tenant and routes to the
    matching reconciliation handler.

    `dispatch` never raises: failures come back as `success=False` results so
    the ledger's retry bookkeeping always runs.
    """

    def __init__(
        self,
        subscription_service: SubscriptionService,
        store: TenantBillingStore,
        webhook_token: Optional[str] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.subscription_service = subscription_service
        self.store = store
        self.webhook_token = (
            webhook_token
            if webhook_token is not None
            else get_settings().ASAAS_WEBHOOK_TOKEN
        )
        self.clock = clock

        self._payment_handlers: dict[AsaasEventType, PaymentHandler] = {
            AsaasEventType.PAYMENT_CREATED: self._handle_payment_created,
            AsaasEventType.PAYMENT_CONFIRMED: self._handle_payment_confirmed,
            AsaasEventType.PAYMENT_RECEIVED: self._handle_payment_confirmed,
            AsaasEventType.PAYMENT_OVERDUE: self._handle_payment_overdue,
            AsaasEventType.PAYMENT_REFUNDED: self._handle_payment_refunded,
        }
        self._subscription_handlers: dict[AsaasEventType, SubscriptionHandler] = {
            AsaasEventType.SUBSCRIPTION_ACTIVATED: self._handle_subscription_activated,
            AsaasEventType.SUBSCRIPTION_UPDATED: self._handle_subscription_updated,
            AsaasEventType.SUBSCRIPTION_RENEWED: self._handle_subscription_updated,
            AsaasEventType.SUBSCRIPTION_CANCELED: self._handle_subscription_canceled,
        }

    def validate_access_token(self, token: Optional[str]) -> bool:
        """Constant-time check of the `asaas-access-token` header."""
        if not self.webhook_token:
            return True
        if not token:
            logger.warning("asaas_webhook_missing_token")
            return False
        is_valid = hmac.compare_digest(
            self.webhook_token.encode("utf-8"), token.encode("utf-8")
        )
        if not is_valid:
            logger.warning("asaas_webhook_invalid_token")
        return is_valid

    def validate_event(self, event: AsaasWebhookEvent) -> tuple[AsaasEventType, ParsedPayload]:
        """
        Reject events that can never be processed.

        Raises:
            WebhookInvalidError: unknown event type, or a payment/subscription
                event whose payload is missing or malformed.
        """
        event_type = parse_event_type(event.event)
        if event_type is None:
            raise WebhookInvalidError(f"Unknown event type: {event.event}", event.event)

        try:
            if is_payment_event(event_type):
                if not event.payment:
                    raise WebhookInvalidError(
                        "Payment payload is required for payment events",
                        event_type.value,
                    )
                return event_type, AsaasPaymentPayload.model_validate(event.payment)
            if is_subscription_event(event_type):
                if not event.subscription:
                    raise WebhookInvalidError(
                        "Subscription payload is required for subscription events",
                        event_type.value,
                    )
                return event_type, AsaasSubscriptionPayload.model_validate(
                    event.subscription
                )
        except ValidationError as exc:
            raise WebhookInvalidError(
                f"Malformed {event_type.value} payload: {exc.error_count()} invalid field(s)",
                event_type.value,
            ) from exc
        return event_type, None

    async def handle_event(
        self, event: AsaasWebhookEvent, access_token: Optional[str] = None
    ) -> WebhookProcessingResult:
        """Authenticate then dispatch. Used when no ledger sits in front."""
        if not self.validate_access_token(access_token):
            return WebhookProcessingResult(
                success=False,
                event_type=event.event,
                error="Invalid webhook access token",
                retryable=False,
            )
        return await self.dispatch(event)

    async def dispatch(self, event: AsaasWebhookEvent) -> WebhookProcessingResult:
        logger.info("asaas_webhook_dispatch_started", event_type=event.event)
        try:
            event_type, payload = self.validate_event(event)
            if isinstance(payload, AsaasPaymentPayload):
                result = await self._handle_payment_event(event_type, payload)
            elif isinstance(payload, AsaasSubscriptionPayload):
                result = await self._handle_subscription_event(event_type, payload)
            else:
                # Transfer/invoice events: acknowledged so ASAAS stops redelivering.
                result = WebhookProcessingResult(
                    success=True, event_type=event_type.value, action=ACTION_IGNORED
                )
        except Exception as exc:
            retryable = exc.retryable if isinstance(exc, BillingError) else True
            log = logger.warning if isinstance(exc, BillingError) else logger.exception
            log(
                "asaas_webhook_dispatch_failed",
                event_type=event.event,
                error=str(exc),
                error_type=type(exc).__name__,
                retryable=retryable,
            )
            return WebhookProcessingResult(
                success=False,
                event_type=event.event,
                error=str(exc),
                retryable=retryable,
            )

        logger.info(
            "asaas_webhook_dispatch_completed",
            event_type=result.event_type,
            tenant_id=str(result.tenant_id) if result.tenant_id else None,
            action=result.action,
        )
        return result

    async def _resolve_tenant(
        self, subscription_id: Optional[str], customer_id: Optional[str]
    ) -> Optional[TenantBillingRecord]:
        tenant = None
        if subscription_id:
            tenant = await self.store.get_by_subscription_id(subscription_id)
        if tenant is None and customer_id:
            tenant = await self.store.get_by_customer_id(customer_id)
        return tenant

    async def _handle_payment_event(
        self, event_type: AsaasEventType, payment: AsaasPaymentPayload
    ) -> WebhookProcessingResult:
        tenant = await self._resolve_tenant(payment.subscription, payment.customer)
        if tenant is None:
            logger.info(
                "asaas_webhook_tenant_not_found",
                event_type=event_type.value,
                payment_id=payment.id,
            )
            return WebhookProcessingResult(
                success=True, event_type=event_type.value, action=ACTION_TENANT_NOT_FOUND
            )

        handler = self._payment_handlers.get(event_type)
        if handler is None:
            return WebhookProcessingResult(
                success=True,
                event_type=event_type.value,
                tenant_id=tenant.tenant_id,
                action="payment_event_ignored",
            )
        result = await handler(tenant, payment)
        # PAYMENT_RECEIVED shares a handler with PAYMENT_CONFIRMED.
        return result.model_copy(update={"event_type": event_type.value})

    async def _handle_subscription_event(
        self, event_type: AsaasEventType, subscription: AsaasSubscriptionPayload
    ) -> WebhookProcessingResult:
        tenant = await self._resolve_tenant(subscription.id, subscription.customer)
        if tenant is None:
            logger.info(
                "asaas_webhook_tenant_not_found",
                event_type=event_type.value,
                subscription_id=subscription.id,
            )
            return WebhookProcessingResult(
                success=True, event_type=event_type.value, action=ACTION_TENANT_NOT_FOUND
            )

        handler = self._subscription_handlers.get(event_type)
        if handler is None:
            return WebhookProcessingResult(
                success=True,
                event_type=event_type.value,
                tenant_id=tenant.tenant_id,
                action="subscription_event_ignored",
            )
        result = await handler(tenant, subscription)
        return result.model_copy(update={"event_type": event_type.value})

    # Payment handlers

    async def _handle_payment_created(
        self, tenant: TenantBillingRecord, payment: AsaasPaymentPayload
    ) -> WebhookProcessingResult:
        logger.info(
            "asaas_payment_created",
            tenant_id=str(tenant.tenant_id),
            payment_id=payment.id,
            value=payment.value,
        )
        return WebhookProcessingResult(
            success=True,
            event_type=AsaasEventType.PAYMENT_CREATED.value,
            tenant_id=tenant.tenant_id,
            action="payment_registered",
        )

    async def _handle_payment_confirmed(
        self, tenant: TenantBillingRecord, payment: AsaasPaymentPayload
    ) -> WebhookProcessingResult:
        payment_date = (
            payment.confirmed_date or payment.payment_date or self.clock().date()
        )
        await self.subscription_service.handle_payment_confirmed(
            tenant.tenant_id, payment_date
        )
        return WebhookProcessingResult(
            success=True,
            event_type=AsaasEventType.PAYMENT_CONFIRMED.value,
            tenant_id=tenant.tenant_id,
            action="tenant_activated",
        )

    async def _handle_payment_overdue(
        self, tenant: TenantBillingRecord, payment: AsaasPaymentPayload
    ) -> WebhookProcessingResult:
        if payment.due_date is None:
            raise WebhookInvalidError(
                "Overdue payment is missing dueDate",
                AsaasEventType.PAYMENT_OVERDUE.value,
            )
        days_overdue = calculate_days_overdue(payment.due_date, self.clock())
        updated = await self.subscription_service.handle_payment_overdue(
            tenant.tenant_id, days_overdue
        )
        action = (
            "tenant_suspended"
            if updated.billing_status == BillingStatus.SUSPENDED
            else "tenant_overdue"
        )
        return WebhookProcessingResult(
            success=True,
            event_type=AsaasEventType.PAYMENT_OVERDUE.value,
            tenant_id=tenant.tenant_id,
            action=action,
        )

    async def _handle_payment_refunded(
        self, tenant: TenantBillingRecord, payment: AsaasPaymentPayload
    ) -> WebhookProcessingResult:
        # No status change until a refund downgrade policy is agreed.
        logger.info(
            "asaas_payment_refunded",
            tenant_id=str(tenant.tenant_id),
            payment_id=payment.id,
            value=payment.value,
        )
        return WebhookProcessingResult(
            success=True,
            event_type=AsaasEventType.PAYMENT_REFUNDED.value,
            tenant_id=tenant.tenant_id,
            action="refund_registered",
        )

    # Subscription handlers

    async def _handle_subscription_activated(
        self, tenant: TenantBillingRecord, _subscription: AsaasSubscriptionPayload
    ) -> WebhookProcessingResult:
        await self.subscription_service.sync_subscription_status(tenant.tenant_id)
        return WebhookProcessingResult(
            success=True,
            event_type=AsaasEventType.SUBSCRIPTION_ACTIVATED.value,
            tenant_id=tenant.tenant_id,
            action="subscription_synced",
        )

    async def _handle_subscription_updated(
        self, tenant: TenantBillingRecord, _subscription: AsaasSubscriptionPayload
    ) -> WebhookProcessingResult:
        await self.subscription_service.sync_subscription_status(tenant.tenant_id)
        return WebhookProcessingResult(
            success=True,
            event_type=AsaasEventType.SUBSCRIPTION_UPDATED.value,
            tenant_id=tenant.tenant_id,
            action="subscription_updated",
        )

    async def _handle_subscription_canceled(
        self, tenant: TenantBillingRecord, _subscription: AsaasSubscriptionPayload
    ) -> WebhookProcessingResult:
        await self.subscription_service.handle_subscription_canceled(tenant.tenant_id)
        return WebhookProcessingResult(
            success=True,
            event_type=AsaasEventType.SUBSCRIPTION_CANCELED.value,
            tenant_id=tenant.tenant_id,
            action="tenant_canceled",
        )
