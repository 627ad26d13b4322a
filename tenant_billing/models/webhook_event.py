from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional
from uuid import UUID, uuid4

from sqlalchemy import (
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid as PG_UUID,
)
from sqlalchemy.orm import Mapped, mapped_column

from tenant_billing.shared.db.base import Base, JSONVariant


class WebhookEventStatus(str, Enum):
    """Ledger lifecycle of an inbound webhook."""

    PENDING = "pending"
    PROCESSING = "processing"
    PROCESSED = "processed"
    FAILED = "failed"
    IGNORED = "ignored"


TERMINAL_WEBHOOK_STATUSES = frozenset(
    {WebhookEventStatus.PROCESSED.value, WebhookEventStatus.IGNORED.value}
)


class WebhookEvent(Base):
    """
    Deduplication ledger entry for one inbound webhook delivery.

    `(source, external_event_id)` is unique so a redelivery maps onto the
    row created by the first delivery. Rows without an external id cannot be
    deduplicated and rely on handler idempotence.
    """

    __tablename__ = "webhook_events"
    __table_args__ = (
        UniqueConstraint(
            "source", "external_event_id", name="uq_webhook_events_source_external_id"
        ),
        Index("ix_webhook_events_retry", "status", "attempts", "created_at"),
        {"extend_existing": True},
    )

    id: Mapped[UUID] = mapped_column(PG_UUID(), primary_key=True, default=uuid4)

    source: Mapped[str] = mapped_column(String(50), nullable=False, default="asaas")
    external_event_id: Mapped[Optional[str]] = mapped_column(String(255))

    event_type: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    payload: Mapped[Dict[str, Any]] = mapped_column(JSONVariant, nullable=False)

    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=WebhookEventStatus.PENDING.value
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=3)

    locked_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    error_message: Mapped[Optional[str]] = mapped_column(Text)
    result: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSONVariant)

    # Populated once the dispatcher resolves the owning tenant.
    tenant_id: Mapped[Optional[UUID]] = mapped_column(PG_UUID(), index=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_WEBHOOK_STATUSES

    def __repr__(self) -> str:
        return (
            f"<WebhookEvent(id={self.id}, source={self.source}, "
            f"event_type={self.event_type}, status={self.status}, attempts={self.attempts})>"
        )
