import json
import secrets
from typing import Any, Optional

import structlog
from fastapi import HTTPException, Query, Request
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from tenant_billing.modules.billing.api.v1.billing_models import (
    TenantBillingSummary,
    WebhookAckResponse,
)
from tenant_billing.modules.billing.domain.billing.asaas_client import AsaasClient
from tenant_billing.modules.billing.domain.billing.asaas_events import (
    AsaasWebhookEvent,
)
from tenant_billing.modules.billing.domain.billing.billing_enforcer import (
    project_access,
)
from tenant_billing.modules.billing.domain.billing.billing_plan import (
    TenantBillingRecord,
)
from tenant_billing.modules.billing.domain.billing.errors import WebhookInvalidError
from tenant_billing.modules.billing.domain.billing.store import (
    SqlAlchemyTenantBillingStore,
)
from tenant_billing.modules.billing.domain.billing.subscription_service import (
    SubscriptionService,
)
from tenant_billing.modules.billing.domain.billing.webhook_handler import (
    WebhookHandler,
)
from tenant_billing.modules.billing.domain.billing.webhook_ledger import WebhookLedger
from tenant_billing.shared.core.config import get_settings
from tenant_billing.shared.core.exceptions import AuthError

logger = structlog.get_logger()

ASAAS_TOKEN_HEADER = "asaas-access-token"


def get_asaas_client() -> AsaasClient:
    """FastAPI dependency; overridden in tests."""
    return AsaasClient()


async def require_internal_job_secret(
    secret: str = Query(..., description="Internal secret for the retry scheduler"),
) -> None:
    """Shared-secret auth for scheduler-driven and operator endpoints."""
    expected_secret = get_settings().INTERNAL_JOB_SECRET
    if not expected_secret or len(expected_secret) < 32:
        raise HTTPException(
            status_code=503,
            detail="INTERNAL_JOB_SECRET is not configured securely. Set a 32+ character secret.",
        )
    if not secrets.compare_digest(secret, expected_secret):
        raise HTTPException(status_code=403, detail="Invalid secret")


def build_webhook_handler(db: AsyncSession, asaas_client: AsaasClient) -> WebhookHandler:
    store = SqlAlchemyTenantBillingStore(db)
    return WebhookHandler(SubscriptionService(asaas_client, store), store)


def summarize_record(record: TenantBillingRecord) -> TenantBillingSummary:
    return TenantBillingSummary(
        tenant_id=record.tenant_id,
        billing_status=record.billing_status,
        external_customer_id=record.external_customer_id,
        external_subscription_id=record.external_subscription_id,
        subscription_metadata=record.subscription_metadata,
        access=project_access(record),
    )


def _parse_webhook_body(payload: bytes) -> dict[str, Any]:
    try:
        data = json.loads(payload)
    except (UnicodeDecodeError, ValueError) as exc:
        raise WebhookInvalidError("Webhook body is not valid JSON") from exc
    if not isinstance(data, dict):
        raise WebhookInvalidError("Webhook body must be a JSON object")
    return data


async def process_asaas_webhook(
    request: Request,
    db: AsyncSession,
    asaas_client: AsaasClient,
) -> WebhookAckResponse:
    """
    Authenticate, validate, store and process one ASAAS delivery.

    Deliveries that can never succeed (bad token, unknown event, malformed
    body) are rejected before a ledger row is written. Everything else is
    acknowledged with 200, including recorded failures, so ASAAS keeps its own
    retry queue clear while the ledger owns retries.
    """
    handler = build_webhook_handler(db, asaas_client)
    token: Optional[str] = request.headers.get(ASAAS_TOKEN_HEADER)
    if not handler.validate_access_token(token):
        raise AuthError("Invalid webhook access token")

    data = _parse_webhook_body(await request.body())
    try:
        envelope = AsaasWebhookEvent.model_validate(data)
    except ValidationError as exc:
        raise WebhookInvalidError(
            f"Malformed webhook body: {exc.error_count()} invalid field(s)"
        ) from exc
    handler.validate_event(envelope)

    with structlog.contextvars.bound_contextvars(
        external_event_id=envelope.id, event_type=envelope.event
    ):
        ledger = WebhookLedger(db)
        result = await ledger.receive(
            get_settings().WEBHOOK_SOURCE, envelope, handler, raw_payload=data
        )
        logger.info(
            "asaas_webhook_acknowledged",
            success=result.success,
            action=result.action,
        )
    return WebhookAckResponse(
        success=result.success, action=result.action, error=result.error
    )
