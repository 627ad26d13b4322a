"""
Billing access projection and enforcement.

`project_access` is a pure function of the current record and is recomputed
on every read, so there is no cache to invalidate when a webhook lands.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Awaitable, Callable, Mapping, Optional, Sequence
from uuid import UUID

import structlog
from pydantic import BaseModel

from tenant_billing.modules.billing.domain.billing.billing_plan import (
    TenantBillingRecord,
)
from tenant_billing.modules.billing.domain.billing.billing_status import (
    DENIED_ACCESS_STATUSES,
    BillingStatus,
    has_any_access,
    has_full_access,
    has_limited_access,
)
from tenant_billing.modules.billing.domain.billing.errors import (
    BillingStatusInvalidError,
)
from tenant_billing.modules.billing.domain.billing.store import TenantBillingStore

logger = structlog.get_logger()

FULL_ACCESS_REQUIRED = (BillingStatus.ACTIVE, BillingStatus.TRIAL)
ANY_ACCESS_REQUIRED = (
    BillingStatus.ACTIVE,
    BillingStatus.TRIAL,
    BillingStatus.OVERDUE,
    BillingStatus.PENDING_PAYMENT,
)


class AccessLevel(str, Enum):
    FULL = "full"
    LIMITED = "limited"
    NONE = "none"


class AccessContext(BaseModel):
    """Read-only authorization signals derived from billing status."""

    tenant_id: UUID
    billing_status: BillingStatus
    access_level: AccessLevel
    subscription_active: bool
    in_trial: bool
    is_overdue: bool
    # True for both suspended and canceled.
    is_suspended: bool
    days_overdue: Optional[int] = None


def access_level_for(status: BillingStatus) -> AccessLevel:
    if has_full_access(status):
        return AccessLevel.FULL
    if has_limited_access(status):
        return AccessLevel.LIMITED
    return AccessLevel.NONE


def project_access(record: TenantBillingRecord) -> AccessContext:
    status = record.billing_status
    metadata = record.subscription_metadata
    return AccessContext(
        tenant_id=record.tenant_id,
        billing_status=status,
        access_level=access_level_for(status),
        subscription_active=has_full_access(status),
        in_trial=status == BillingStatus.TRIAL,
        is_overdue=status == BillingStatus.OVERDUE,
        is_suspended=status in DENIED_ACCESS_STATUSES,
        days_overdue=metadata.days_overdue if metadata else None,
    )


class BillingEnforcer:
    """
    Answers billing questions for the authorization layer.

    With `throw_on_denial` (the default) the `require_*` checks raise
    `BillingStatusInvalidError`; otherwise they return False.
    """

    def __init__(self, store: TenantBillingStore, throw_on_denial: bool = True):
        self.store = store
        self.throw_on_denial = throw_on_denial

    def _deny(
        self,
        tenant_id: UUID,
        current_status: BillingStatus,
        message: str,
        required_status: Sequence[BillingStatus],
    ) -> bool:
        logger.info(
            "billing_access_denied",
            tenant_id=str(tenant_id),
            billing_status=BillingStatus(current_status).value,
        )
        if self.throw_on_denial:
            raise BillingStatusInvalidError(current_status, message, required_status)
        return False

    async def get_billing_context(self, tenant_id: UUID) -> Optional[AccessContext]:
        record = await self.store.get(tenant_id)
        return project_access(record) if record is not None else None

    async def get_billing_status(self, tenant_id: UUID) -> Optional[BillingStatus]:
        record = await self.store.get(tenant_id)
        return record.billing_status if record is not None else None

    async def require_active(self, tenant_id: UUID) -> bool:
        record = await self.store.get(tenant_id)
        if record is None:
            # Unknown tenants are treated as canceled.
            return self._deny(
                tenant_id, BillingStatus.CANCELED, "Tenant not found", FULL_ACCESS_REQUIRED
            )
        if not has_full_access(record.billing_status):
            return self._deny(
                tenant_id,
                record.billing_status,
                f"Tenant billing status is '{record.billing_status.value}', "
                "but 'active' or 'trial' is required",
                FULL_ACCESS_REQUIRED,
            )
        return True

    async def require_any_access(self, tenant_id: UUID) -> bool:
        record = await self.store.get(tenant_id)
        if record is None:
            return self._deny(
                tenant_id, BillingStatus.CANCELED, "Tenant not found", ANY_ACCESS_REQUIRED
            )
        if not has_any_access(record.billing_status):
            return self._deny(
                tenant_id,
                record.billing_status,
                "Tenant access is denied due to billing status "
                f"'{record.billing_status.value}'",
                ANY_ACCESS_REQUIRED,
            )
        return True

    async def in_trial(self, tenant_id: UUID) -> bool:
        record = await self.store.get(tenant_id)
        return record is not None and record.billing_status == BillingStatus.TRIAL

    async def has_limited_access_only(self, tenant_id: UUID) -> bool:
        record = await self.store.get(tenant_id)
        return record is not None and has_limited_access(record.billing_status)

    async def is_suspended_or_canceled(self, tenant_id: UUID) -> bool:
        record = await self.store.get(tenant_id)
        if record is None:
            return True
        return record.billing_status in DENIED_ACCESS_STATUSES


# ABAC policy factories. A policy receives the caller's claims and answers
# whether their tenant's billing allows the action.

BillingPolicy = Callable[[Mapping[str, Any]], Awaitable[bool]]


def _tenant_id_from_claims(claims: Mapping[str, Any]) -> Optional[UUID]:
    raw = claims.get("tenant_id")
    if not raw:
        return None
    try:
        return raw if isinstance(raw, UUID) else UUID(str(raw))
    except ValueError:
        return None


def _status_policy(
    store: TenantBillingStore, predicate: Callable[[BillingStatus], bool]
) -> BillingPolicy:
    async def policy(claims: Mapping[str, Any]) -> bool:
        tenant_id = _tenant_id_from_claims(claims)
        if tenant_id is None:
            return False
        record = await store.get(tenant_id)
        return record is not None and predicate(record.billing_status)

    return policy


def active_billing_policy(store: TenantBillingStore) -> BillingPolicy:
    return _status_policy(store, has_full_access)


def any_access_billing_policy(store: TenantBillingStore) -> BillingPolicy:
    return _status_policy(store, has_any_access)


def trial_billing_policy(store: TenantBillingStore) -> BillingPolicy:
    return _status_policy(store, lambda status: status == BillingStatus.TRIAL)
