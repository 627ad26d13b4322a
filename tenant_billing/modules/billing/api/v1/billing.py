"""
Billing API Endpoints - ASAAS Integration

Provides:
- POST /billing/webhook - Receive ASAAS webhooks through the dedup ledger
- GET /billing/tenants/{tenant_id}/access - Billing-derived access context
- POST /billing/tenants/{tenant_id}/sync - Reconcile against ASAAS
- POST /billing/webhooks/retry - Retry sweep (internal scheduler)
- POST /billing/webhooks/{event_id}/reset - Re-arm a failed webhook
- GET /billing/plans - Active plan catalog
"""

from typing import List, Optional
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from tenant_billing.modules.billing.api.v1.billing_models import (
    TenantBillingSummary,
    WebhookAckResponse,
    WebhookEventResponse,
    WebhookRetrySummary,
)
from tenant_billing.modules.billing.api.v1.billing_ops import (
    build_webhook_handler,
    get_asaas_client,
    process_asaas_webhook,
    require_internal_job_secret,
    summarize_record,
)
from tenant_billing.modules.billing.domain.billing.asaas_client import AsaasClient
from tenant_billing.modules.billing.domain.billing.billing_enforcer import (
    AccessContext,
    BillingEnforcer,
)
from tenant_billing.modules.billing.domain.billing.billing_plan import (
    BillingPlan,
    BillingPlanCatalog,
)
from tenant_billing.modules.billing.domain.billing.store import (
    SqlAlchemyTenantBillingStore,
)
from tenant_billing.modules.billing.domain.billing.subscription_service import (
    SubscriptionService,
)
from tenant_billing.modules.billing.domain.billing.webhook_ledger import WebhookLedger
from tenant_billing.shared.core.exceptions import ResourceNotFoundError
from tenant_billing.shared.db.session import get_db

logger = structlog.get_logger()
router = APIRouter(tags=["Billing"])


def _tenant_not_found(tenant_id: UUID) -> ResourceNotFoundError:
    return ResourceNotFoundError(
        f"No billing record for tenant {tenant_id}",
        details={"tenant_id": str(tenant_id)},
    )


@router.post("/webhook", response_model=WebhookAckResponse)
async def handle_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    asaas_client: AsaasClient = Depends(get_asaas_client),
) -> WebhookAckResponse:
    """
    Handle ASAAS webhook events with durable processing.

    Deliveries are stored in webhook_events before processing, enabling
    deduplication and bounded retry on failure.
    """
    return await process_asaas_webhook(request, db, asaas_client)


@router.get("/tenants/{tenant_id}/access", response_model=AccessContext)
async def get_tenant_access(
    tenant_id: UUID, db: AsyncSession = Depends(get_db)
) -> AccessContext:
    """Current access level, recomputed from the stored billing status."""
    enforcer = BillingEnforcer(SqlAlchemyTenantBillingStore(db))
    context = await enforcer.get_billing_context(tenant_id)
    if context is None:
        raise _tenant_not_found(tenant_id)
    return context


@router.post(
    "/tenants/{tenant_id}/sync",
    response_model=TenantBillingSummary,
    dependencies=[Depends(require_internal_job_secret)],
)
async def sync_tenant(
    tenant_id: UUID,
    db: AsyncSession = Depends(get_db),
    asaas_client: AsaasClient = Depends(get_asaas_client),
) -> TenantBillingSummary:
    """Reconcile one tenant against its ASAAS subscription."""
    store = SqlAlchemyTenantBillingStore(db)
    if await store.get(tenant_id) is None:
        raise _tenant_not_found(tenant_id)

    record = await SubscriptionService(asaas_client, store).sync_subscription_status(
        tenant_id
    )
    return summarize_record(record)


@router.post(
    "/webhooks/retry",
    response_model=WebhookRetrySummary,
    dependencies=[Depends(require_internal_job_secret)],
)
async def retry_webhooks(
    limit: Optional[int] = Query(default=None, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
    asaas_client: AsaasClient = Depends(get_asaas_client),
) -> WebhookRetrySummary:
    """One retry sweep over pending and stale webhook events."""
    handler = build_webhook_handler(db, asaas_client)
    summary = await WebhookLedger(db).process_pending(handler, limit=limit)
    return WebhookRetrySummary(**summary)


@router.post(
    "/webhooks/{event_id}/reset",
    response_model=WebhookEventResponse,
    dependencies=[Depends(require_internal_job_secret)],
)
async def reset_webhook(
    event_id: UUID, db: AsyncSession = Depends(get_db)
) -> WebhookEventResponse:
    """Return a failed webhook event to pending with a fresh attempt budget."""
    event = await WebhookLedger(db).reset(event_id)
    return WebhookEventResponse.model_validate(event)


@router.get("/plans", response_model=List[BillingPlan])
async def get_plans(db: AsyncSession = Depends(get_db)) -> List[BillingPlan]:
    """Active public plans, ordered for display."""
    return await BillingPlanCatalog(db).list_active()
