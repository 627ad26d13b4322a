from datetime import datetime, timezone
from typing import Any, Dict, Optional
from uuid import UUID

from sqlalchemy import Boolean, DateTime, Integer, String, Text, Uuid as PG_UUID
from sqlalchemy.orm import Mapped, mapped_column

from tenant_billing.shared.db.base import Base, JSONVariant


class TenantBilling(Base):
    """
    Billing read-model for one tenant.

    Holds the processor identifiers, the current billing status and the
    subscription metadata snapshot. Rows are never deleted, only transitioned.
    """

    __tablename__ = "tenant_billing"
    __table_args__ = {"extend_existing": True}

    tenant_id: Mapped[UUID] = mapped_column(PG_UUID(), primary_key=True)

    # ASAAS identifiers
    external_customer_id: Mapped[Optional[str]] = mapped_column(
        String(255), index=True
    )
    external_subscription_id: Mapped[Optional[str]] = mapped_column(
        String(255), index=True
    )

    billing_status: Mapped[str] = mapped_column(
        String(32), nullable=False, default="trial", index=True
    )
    subscription_metadata: Mapped[Optional[Dict[str, Any]]] = mapped_column(
        JSONVariant, nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )


class BillingPlanRecord(Base):
    """
    Plan catalog entry. Read-only input to reconciliation.
    """

    __tablename__ = "billing_plans"
    __table_args__ = {"extend_existing": True}

    id: Mapped[str] = mapped_column(String(50), primary_key=True)  # e.g. 'starter'
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)

    # Smallest currency unit to avoid float drift
    price_in_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="BRL")
    cycle: Mapped[str] = mapped_column(String(20), default="MONTHLY")
    trial_days: Mapped[int] = mapped_column(Integer, default=0)

    features: Mapped[list[str]] = mapped_column(JSONVariant, default=list)
    plan_metadata: Mapped[Dict[str, Any]] = mapped_column(
        "metadata", JSONVariant, default=dict
    )

    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    is_public: Mapped[bool] = mapped_column(Boolean, default=True)
    sort_order: Mapped[int] = mapped_column(Integer, default=0)
