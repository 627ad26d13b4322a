"""
Tenant billing store adapter.

The reconciliation engine only needs per-tenant get/update with
read-after-write consistency; no multi-record transactions are assumed.
"""

from __future__ import annotations

from typing import Any, Optional, Protocol, runtime_checkable
from uuid import UUID

import structlog
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from tenant_billing.models.billing import TenantBilling
from tenant_billing.modules.billing.domain.billing.billing_plan import (
    SubscriptionMetadata,
    TenantBillingRecord,
)
from tenant_billing.modules.billing.domain.billing.billing_status import BillingStatus
from tenant_billing.shared.core.exceptions import (
    ResourceNotFoundError,
    StoreAdapterError,
)

logger = structlog.get_logger()

UPDATABLE_FIELDS = frozenset(
    {
        "external_customer_id",
        "external_subscription_id",
        "billing_status",
        "subscription_metadata",
    }
)


@runtime_checkable
class TenantBillingStore(Protocol):
    async def get(self, tenant_id: UUID) -> Optional[TenantBillingRecord]: ...

    async def update(self, tenant_id: UUID, **changes: Any) -> None: ...

    async def get_by_customer_id(
        self, customer_id: str
    ) -> Optional[TenantBillingRecord]: ...

    async def get_by_subscription_id(
        self, subscription_id: str
    ) -> Optional[TenantBillingRecord]: ...


def serialize_changes(changes: dict[str, Any]) -> dict[str, Any]:
    """Convert domain values to column values, rejecting unknown fields."""
    unknown = set(changes) - UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"Unsupported tenant billing fields: {sorted(unknown)}")

    values: dict[str, Any] = {}
    for key, value in changes.items():
        if key == "billing_status" and value is not None:
            value = BillingStatus(value).value
        elif key == "subscription_metadata" and isinstance(
            value, SubscriptionMetadata
        ):
            value = value.model_dump(mode="json")
        values[key] = value
    return values


def to_record(row: TenantBilling) -> TenantBillingRecord:
    metadata = row.subscription_metadata
    return TenantBillingRecord(
        tenant_id=row.tenant_id,
        external_customer_id=row.external_customer_id,
        external_subscription_id=row.external_subscription_id,
        billing_status=BillingStatus(row.billing_status),
        subscription_metadata=(
            SubscriptionMetadata.model_validate(metadata) if metadata else None
        ),
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


class SqlAlchemyTenantBillingStore:
    """`TenantBillingStore` backed by the `tenant_billing` table."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, tenant_id: UUID) -> Optional[TenantBillingRecord]:
        try:
            row = await self.db.get(TenantBilling, tenant_id, populate_existing=True)
        except SQLAlchemyError as exc:
            logger.error("tenant_billing_read_failed", tenant_id=str(tenant_id), error=str(exc))
            raise StoreAdapterError(
                "Failed to read tenant billing record",
                details={"tenant_id": str(tenant_id)},
            ) from exc
        return to_record(row) if row is not None else None

    async def _get_by(self, column: Any, value: str) -> Optional[TenantBillingRecord]:
        try:
            result = await self.db.execute(
                select(TenantBilling).where(column == value).limit(1)
            )
            row = result.scalar_one_or_none()
        except SQLAlchemyError as exc:
            logger.error("tenant_billing_lookup_failed", error=str(exc))
            raise StoreAdapterError("Failed to look up tenant billing record") from exc
        return to_record(row) if row is not None else None

    async def get_by_customer_id(
        self, customer_id: str
    ) -> Optional[TenantBillingRecord]:
        return await self._get_by(TenantBilling.external_customer_id, customer_id)

    async def get_by_subscription_id(
        self, subscription_id: str
    ) -> Optional[TenantBillingRecord]:
        return await self._get_by(
            TenantBilling.external_subscription_id, subscription_id
        )

    async def update(self, tenant_id: UUID, **changes: Any) -> None:
        values = serialize_changes(changes)
        try:
            row = await self.db.get(TenantBilling, tenant_id)
            if row is None:
                raise ResourceNotFoundError(
                    f"No billing record for tenant {tenant_id}",
                    details={"tenant_id": str(tenant_id)},
                )
            for key, value in values.items():
                setattr(row, key, value)
            await self.db.commit()
        except SQLAlchemyError as exc:
            await self.db.rollback()
            logger.error(
                "tenant_billing_update_failed",
                tenant_id=str(tenant_id),
                fields=sorted(values),
                error=str(exc),
            )
            raise StoreAdapterError(
                "Failed to update tenant billing record",
                details={"tenant_id": str(tenant_id)},
            ) from exc

        logger.debug(
            "tenant_billing_updated", tenant_id=str(tenant_id), fields=sorted(values)
        )

    async def create(
        self,
        tenant_id: UUID,
        billing_status: BillingStatus = BillingStatus.TRIAL,
        **changes: Any,
    ) -> TenantBillingRecord:
        """Insert the billing row for a newly provisioned tenant."""
        values = serialize_changes(changes)
        row = TenantBilling(
            tenant_id=tenant_id,
            billing_status=BillingStatus(billing_status).value,
            **values,
        )
        self.db.add(row)
        try:
            await self.db.commit()
        except SQLAlchemyError as exc:
            await self.db.rollback()
            logger.error(
                "tenant_billing_create_failed", tenant_id=str(tenant_id), error=str(exc)
            )
            raise StoreAdapterError(
                "Failed to create tenant billing record",
                details={"tenant_id": str(tenant_id)},
            ) from exc
        await self.db.refresh(row)
        return to_record(row)
