"""Billing Services."""

from tenant_billing.modules.billing.domain.billing.asaas_client import AsaasClient
from tenant_billing.modules.billing.domain.billing.billing_enforcer import (
    AccessContext,
    BillingEnforcer,
)
from tenant_billing.modules.billing.domain.billing.billing_service import (
    BillingService,
)
from tenant_billing.modules.billing.domain.billing.billing_status import BillingStatus
from tenant_billing.modules.billing.domain.billing.subscription_service import (
    SubscriptionService,
)
from tenant_billing.modules.billing.domain.billing.webhook_handler import (
    WebhookHandler,
)
from tenant_billing.modules.billing.domain.billing.webhook_ledger import WebhookLedger


__all__ = [
    "AccessContext",
    "AsaasClient",
    "BillingEnforcer",
    "BillingService",
    "BillingStatus",
    "SubscriptionService",
    "WebhookHandler",
    "WebhookLedger",
]
