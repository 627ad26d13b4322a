from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict

from tenant_billing.modules.billing.domain.billing.billing_enforcer import (
    AccessContext,
)
from tenant_billing.modules.billing.domain.billing.billing_plan import (
    SubscriptionMetadata,
)
from tenant_billing.modules.billing.domain.billing.billing_status import BillingStatus


class WebhookAckResponse(BaseModel):
    success: bool
    action: Optional[str] = None
    error: Optional[str] = None


class TenantBillingSummary(BaseModel):
    tenant_id: UUID
    billing_status: BillingStatus
    external_customer_id: Optional[str] = None
    external_subscription_id: Optional[str] = None
    subscription_metadata: Optional[SubscriptionMetadata] = None
    access: AccessContext


class WebhookRetrySummary(BaseModel):
    processed: int
    succeeded: int
    retrying: int
    failed: int
    skipped: int
    expired: int


class WebhookEventResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    source: str
    external_event_id: Optional[str] = None
    event_type: str
    status: str
    attempts: int
    max_attempts: int
    error_message: Optional[str] = None
    tenant_id: Optional[UUID] = None
    created_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
