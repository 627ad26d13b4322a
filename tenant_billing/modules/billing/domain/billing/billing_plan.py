"""
Billing plan catalog and tenant billing record types.

Plans are read-only input; `TenantBillingRecord` is the domain view of the
`tenant_billing` row that the reconciliation engine mutates.
"""

from __future__ import annotations

from datetime import date, datetime, timedelta
from enum import Enum
from typing import Any, Optional
from uuid import UUID

import structlog
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tenant_billing.models.billing import BillingPlanRecord
from tenant_billing.modules.billing.domain.billing.billing_status import BillingStatus

logger = structlog.get_logger()


class BillingCycle(str, Enum):
    WEEKLY = "WEEKLY"
    BIWEEKLY = "BIWEEKLY"
    MONTHLY = "MONTHLY"
    QUARTERLY = "QUARTERLY"
    SEMIANNUALLY = "SEMIANNUALLY"
    YEARLY = "YEARLY"


# Approximate; used for projecting the next billing date locally.
BILLING_CYCLE_DAYS: dict[BillingCycle, int] = {
    BillingCycle.WEEKLY: 7,
    BillingCycle.BIWEEKLY: 14,
    BillingCycle.MONTHLY: 30,
    BillingCycle.QUARTERLY: 90,
    BillingCycle.SEMIANNUALLY: 180,
    BillingCycle.YEARLY: 365,
}


def get_billing_cycle_days(cycle: BillingCycle) -> int:
    return BILLING_CYCLE_DAYS[BillingCycle(cycle)]


class BillingPlan(BaseModel):
    """Immutable catalog entry."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    description: Optional[str] = None
    price_in_cents: int = Field(ge=0)
    currency: str = "BRL"
    cycle: BillingCycle = BillingCycle.MONTHLY
    trial_days: int = Field(default=0, ge=0)
    features: tuple[str, ...] = ()
    metadata: dict[str, Any] = Field(default_factory=dict)
    active: bool = True

    @property
    def price(self) -> float:
        """Price in currency units, as the processor expects it."""
        return self.price_in_cents / 100

    @classmethod
    def from_record(cls, record: BillingPlanRecord) -> "BillingPlan":
        return cls(
            id=record.id,
            name=record.name,
            description=record.description,
            price_in_cents=record.price_in_cents,
            currency=record.currency or "BRL",
            cycle=BillingCycle(record.cycle or BillingCycle.MONTHLY.value),
            trial_days=record.trial_days or 0,
            features=tuple(record.features or ()),
            metadata=dict(record.plan_metadata or {}),
            active=bool(record.is_active),
        )


class SubscriptionMetadata(BaseModel):
    """Snapshot of the tenant's plan and billing dates."""

    plan_id: str
    plan_name: str
    price_in_cents: int
    currency: str = "BRL"
    cycle: BillingCycle = BillingCycle.MONTHLY
    trial_end_date: Optional[date] = None
    next_billing_date: Optional[date] = None
    last_payment_date: Optional[date] = None
    days_overdue: Optional[int] = None
    custom: dict[str, Any] = Field(default_factory=dict)


class TenantBillingRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    tenant_id: UUID
    external_customer_id: Optional[str] = None
    external_subscription_id: Optional[str] = None
    billing_status: BillingStatus = BillingStatus.TRIAL
    subscription_metadata: Optional[SubscriptionMetadata] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


def create_default_subscription_metadata(
    plan: BillingPlan,
    trial_end_date: Optional[date] = None,
    next_billing_date: Optional[date] = None,
) -> SubscriptionMetadata:
    """Metadata for a freshly initialized subscription on `plan`."""
    return SubscriptionMetadata(
        plan_id=plan.id,
        plan_name=plan.name,
        price_in_cents=plan.price_in_cents,
        currency=plan.currency,
        cycle=plan.cycle,
        trial_end_date=trial_end_date,
        next_billing_date=next_billing_date,
    )


def project_next_billing_date(start: date, cycle: BillingCycle) -> date:
    return start + timedelta(days=get_billing_cycle_days(cycle))


class BillingPlanCatalog:
    """Read-only access to the `billing_plans` table."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def list_active(self, public_only: bool = True) -> list[BillingPlan]:
        query = select(BillingPlanRecord).where(BillingPlanRecord.is_active.is_(True))
        if public_only:
            query = query.where(BillingPlanRecord.is_public.is_(True))
        query = query.order_by(BillingPlanRecord.sort_order, BillingPlanRecord.id)

        result = await self.db.execute(query)
        return [BillingPlan.from_record(row) for row in result.scalars().all()]

    async def get(self, plan_id: str) -> Optional[BillingPlan]:
        record = await self.db.get(BillingPlanRecord, plan_id)
        if record is None:
            logger.info("billing_plan_not_found", plan_id=plan_id)
            return None
        return BillingPlan.from_record(record)
