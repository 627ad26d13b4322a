from tenant_billing.modules.billing.api.v1.billing import router
from tenant_billing.modules.billing.api.v1.billing_models import (
    TenantBillingSummary,
    WebhookAckResponse,
    WebhookRetrySummary,
)
from tenant_billing.modules.billing.domain.billing.billing_service import (
    BillingService,
)
from tenant_billing.modules.billing.domain.billing.webhook_handler import (
    WebhookHandler,
)
from tenant_billing.modules.billing.domain.billing.webhook_ledger import WebhookLedger

__all__ = [
    "router",
    "BillingService",
    "WebhookHandler",
    "WebhookLedger",
    "TenantBillingSummary",
    "WebhookAckResponse",
    "WebhookRetrySummary",
]
