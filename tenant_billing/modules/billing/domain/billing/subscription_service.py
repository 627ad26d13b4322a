"""
Subscription reconciliation.

Single-event handlers and the full `sync` routine. Every status change goes
through the state machine, and the status and metadata changes of one
operation are written with a single store update.
"""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable, Optional
from uuid import UUID

import structlog
from pydantic import BaseModel

from tenant_billing.modules.billing.domain.billing.asaas_client import AsaasClient
from tenant_billing.modules.billing.domain.billing.asaas_dtos import (
    AsaasSubscription,
    CreateSubscriptionRequest,
)
from tenant_billing.modules.billing.domain.billing.asaas_events import (
    AsaasSubscriptionStatus,
)
from tenant_billing.modules.billing.domain.billing.billing_plan import (
    BillingPlan,
    SubscriptionMetadata,
    TenantBillingRecord,
    create_default_subscription_metadata,
)
from tenant_billing.modules.billing.domain.billing.billing_status import (
    BillingStatus,
    ensure_transition,
)
from tenant_billing.modules.billing.domain.billing.errors import (
    BillingStatusInvalidError,
    InvalidBillingTransitionError,
    SubscriptionCancellationError,
    SubscriptionCreationError,
)
from tenant_billing.modules.billing.domain.billing.store import TenantBillingStore
from tenant_billing.shared.core.config import get_settings
from tenant_billing.shared.core.logging import audit_log
from tenant_billing.shared.core.ops_metrics import (
    BILLING_STATUS_TRANSITIONS,
    BILLING_TRANSITIONS_REJECTED,
)

logger = structlog.get_logger()

SECONDS_PER_DAY = 86400


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def calculate_days_overdue(due_date: date, now: datetime) -> int:
    """Whole days elapsed since `due_date` (midnight UTC), never negative."""
    due = datetime(due_date.year, due_date.month, due_date.day, tzinfo=timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    elapsed = (now - due).total_seconds()
    return max(0, int(elapsed // SECONDS_PER_DAY))


class InitializeSubscriptionResult(BaseModel):
    subscription_id: str
    billing_status: BillingStatus
    metadata: SubscriptionMetadata


class SubscriptionService:
    """Applies processor facts to tenant billing records."""

    def __init__(
        self,
        asaas_client: AsaasClient,
        store: TenantBillingStore,
        suspension_threshold_days: Optional[int] = None,
        preserve_trial_on_remote_active: Optional[bool] = None,
        default_billing_type: Optional[str] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        settings = get_settings()
        self.asaas_client = asaas_client
        self.store = store
        self.suspension_threshold_days = (
            suspension_threshold_days
            if suspension_threshold_days is not None
            else settings.BILLING_SUSPENSION_THRESHOLD_DAYS
        )
        self.preserve_trial_on_remote_active = (
            preserve_trial_on_remote_active
            if preserve_trial_on_remote_active is not None
            else settings.BILLING_SYNC_PRESERVE_TRIAL_ON_REMOTE_ACTIVE
        )
        self.default_billing_type = (
            default_billing_type or settings.BILLING_DEFAULT_BILLING_TYPE
        )
        self.clock = clock

    async def _require_record(self, tenant_id: UUID) -> TenantBillingRecord:
        record = await self.store.get(tenant_id)
        if record is None:
            raise BillingStatusInvalidError(BillingStatus.CANCELED, "Tenant not found")
        return record

    async def _apply(
        self,
        record: TenantBillingRecord,
        target_status: Optional[BillingStatus] = None,
        metadata: Optional[SubscriptionMetadata] = None,
    ) -> TenantBillingRecord:
        """
        Validate `target_status` against the current status and persist it
        together with `metadata` in one update. Equal statuses are a no-op.
        """
        changes: dict[str, Any] = {}
        from_status = record.billing_status

        if target_status is not None:
            try:
                if ensure_transition(from_status, target_status):
                    changes["billing_status"] = BillingStatus(target_status)
            except InvalidBillingTransitionError:
                BILLING_TRANSITIONS_REJECTED.labels(
                    from_status=from_status.value,
                    to_status=BillingStatus(target_status).value,
                ).inc()
                logger.warning(
                    "billing_transition_rejected",
                    tenant_id=str(record.tenant_id),
                    from_status=from_status.value,
                    to_status=BillingStatus(target_status).value,
                )
                raise

        if metadata is not None:
            changes["subscription_metadata"] = metadata

        if not changes:
            return record

        await self.store.update(record.tenant_id, **changes)

        if "billing_status" in changes:
            to_status = changes["billing_status"]
            BILLING_STATUS_TRANSITIONS.labels(
                from_status=from_status.value, to_status=to_status.value
            ).inc()
            audit_log(
                "billing_status_changed",
                str(record.tenant_id),
                {"from_status": from_status.value, "to_status": to_status.value},
            )
        return record.model_copy(update=changes)

    # Remote snapshot reconciliation

    def map_remote_status(
        self, subscription: AsaasSubscription, current_status: BillingStatus
    ) -> BillingStatus:
        """Candidate local status for a remote subscription snapshot."""
        if subscription.deleted:
            return BillingStatus.CANCELED

        status = subscription.status
        if status == AsaasSubscriptionStatus.ACTIVE.value:
            # Remote ACTIVE means "not expired", not "paid"; only payment
            # events move a tenant out of trial/pending.
            if self.preserve_trial_on_remote_active and current_status in (
                BillingStatus.TRIAL,
                BillingStatus.PENDING_PAYMENT,
            ):
                return current_status
            return BillingStatus.ACTIVE
        if status == AsaasSubscriptionStatus.INACTIVE.value:
            return BillingStatus.SUSPENDED
        if status == AsaasSubscriptionStatus.EXPIRED.value:
            return BillingStatus.CANCELED
        return current_status

    async def sync_subscription_status(self, tenant_id: UUID) -> TenantBillingRecord:
        """
        Reconcile the local record against a freshly fetched remote snapshot.

        Raises:
            BillingStatusInvalidError: unknown tenant.
            InvalidBillingTransitionError: the mapped status is not reachable
                from the local one.
            AsaasApiError: the snapshot could not be fetched.
        """
        logger.info("subscription_sync_started", tenant_id=str(tenant_id))
        record = await self._require_record(tenant_id)

        if not record.external_subscription_id:
            logger.info(
                "subscription_sync_skipped",
                tenant_id=str(tenant_id),
                reason="no_subscription",
            )
            return record

        subscription = await self.asaas_client.get_subscription(
            record.external_subscription_id
        )
        candidate = self.map_remote_status(subscription, record.billing_status)

        metadata = None
        if record.subscription_metadata and subscription.next_due_date:
            metadata = record.subscription_metadata.model_copy(
                update={"next_billing_date": subscription.next_due_date}
            )

        updated = await self._apply(
            record,
            target_status=candidate if candidate != record.billing_status else None,
            metadata=metadata,
        )
        logger.info(
            "subscription_sync_completed",
            tenant_id=str(tenant_id),
            remote_status=subscription.status,
            remote_deleted=subscription.deleted,
            status=updated.billing_status.value,
        )
        return updated

    # Event handlers

    async def handle_payment_confirmed(
        self, tenant_id: UUID, payment_date: Optional[date] = None
    ) -> TenantBillingRecord:
        logger.info("payment_confirmed_handling_started", tenant_id=str(tenant_id))
        record = await self._require_record(tenant_id)

        metadata = None
        if record.subscription_metadata:
            metadata = record.subscription_metadata.model_copy(
                update={
                    "last_payment_date": payment_date or self.clock().date(),
                    "days_overdue": None,
                }
            )

        updated = await self._apply(
            record, target_status=BillingStatus.ACTIVE, metadata=metadata
        )
        logger.info(
            "payment_confirmed_handled",
            tenant_id=str(tenant_id),
            status=updated.billing_status.value,
        )
        return updated

    async def handle_payment_overdue(
        self, tenant_id: UUID, days_overdue: int
    ) -> TenantBillingRecord:
        """
        Move the tenant to `overdue` or `suspended` and store the overdue count.

        The count lives in the subscription metadata, so a tenant provisioned
        without a plan snapshot only gets the status change. `days_overdue`
        is written even when the transition is refused.
        """
        logger.info(
            "payment_overdue_handling_started",
            tenant_id=str(tenant_id),
            days_overdue=days_overdue,
        )
        record = await self._require_record(tenant_id)

        target = (
            BillingStatus.SUSPENDED
            if days_overdue >= self.suspension_threshold_days
            else BillingStatus.OVERDUE
        )

        metadata = None
        if record.subscription_metadata:
            metadata = record.subscription_metadata.model_copy(
                update={"days_overdue": days_overdue}
            )

        try:
            updated = await self._apply(
                record,
                target_status=target if record.billing_status != target else None,
                metadata=metadata,
            )
        except InvalidBillingTransitionError:
            # The overdue count is a fact even when the status cannot move.
            if metadata is not None:
                await self._apply(record, metadata=metadata)
            raise

        logger.info(
            "payment_overdue_handled",
            tenant_id=str(tenant_id),
            status=updated.billing_status.value,
            days_overdue=days_overdue,
        )
        return updated

    async def handle_subscription_canceled(
        self, tenant_id: UUID
    ) -> TenantBillingRecord:
        """
        Apply a remote cancellation locally. A redelivery for a tenant that is
        already canceled (or otherwise cannot transition) falls back to sync.
        """
        record = await self._require_record(tenant_id)
        if record.billing_status == BillingStatus.CANCELED:
            logger.info(
                "subscription_already_canceled_syncing", tenant_id=str(tenant_id)
            )
            return await self._sync_after_cancel(tenant_id)
        try:
            return await self._apply(record, target_status=BillingStatus.CANCELED)
        except InvalidBillingTransitionError:
            logger.info("subscription_cancel_fallback_sync", tenant_id=str(tenant_id))
            return await self._sync_after_cancel(tenant_id)

    async def _sync_after_cancel(self, tenant_id: UUID) -> TenantBillingRecord:
        """
        Sync fallback for a cancellation event. A canceled tenant is terminal,
        so a remote snapshot that maps elsewhere leaves the record untouched.
        """
        try:
            return await self.sync_subscription_status(tenant_id)
        except InvalidBillingTransitionError as exc:
            if exc.from_status != BillingStatus.CANCELED:
                raise
            logger.info(
                "subscription_cancel_sync_kept_canceled",
                tenant_id=str(tenant_id),
                remote_candidate=exc.to_status.value,
            )
            return await self._require_record(tenant_id)

    # Lifecycle operations

    async def initialize_subscription(
        self,
        tenant_id: UUID,
        customer_id: str,
        plan: BillingPlan,
        billing_type: Optional[str] = None,
        external_reference: Optional[str] = None,
        start_with_trial: bool = False,
    ) -> InitializeSubscriptionResult:
        """
        Create the remote subscription and bind it to the tenant.

        This replaces any previous subscription binding; it is how a canceled
        tenant comes back, since `canceled` has no outbound transitions.
        """
        logger.info(
            "subscription_initialize_started",
            tenant_id=str(tenant_id),
            plan_id=plan.id,
        )
        with_trial = start_with_trial and plan.trial_days > 0
        today = self.clock().date()
        next_due_date = today + timedelta(days=plan.trial_days if with_trial else 0)

        try:
            subscription = await self.asaas_client.create_subscription(
                CreateSubscriptionRequest(
                    customer=customer_id,
                    billing_type=billing_type or self.default_billing_type,
                    value=plan.price,
                    next_due_date=next_due_date,
                    cycle=plan.cycle,
                    description=f"Subscription: {plan.name}",
                    external_reference=external_reference or str(tenant_id),
                )
            )
            billing_status = (
                BillingStatus.TRIAL if with_trial else BillingStatus.PENDING_PAYMENT
            )
            metadata = create_default_subscription_metadata(
                plan,
                trial_end_date=next_due_date if with_trial else None,
                next_billing_date=next_due_date,
            )
            await self.store.update(
                tenant_id,
                external_subscription_id=subscription.id,
                billing_status=billing_status,
                subscription_metadata=metadata,
            )
        except SubscriptionCreationError:
            raise
        except Exception as exc:
            logger.error(
                "subscription_initialize_failed",
                tenant_id=str(tenant_id),
                error=str(exc),
            )
            raise SubscriptionCreationError(
                tenant_id,
                customer_id,
                f"Failed to initialize subscription: {exc}",
            ) from exc

        audit_log(
            "subscription_initialized",
            str(tenant_id),
            {"subscription_id": subscription.id, "billing_status": billing_status.value},
        )
        return InitializeSubscriptionResult(
            subscription_id=subscription.id,
            billing_status=billing_status,
            metadata=metadata,
        )

    async def cancel_subscription(self, tenant_id: UUID) -> TenantBillingRecord:
        """Cancel remotely, then mark the tenant `canceled`."""
        logger.info("subscription_cancel_started", tenant_id=str(tenant_id))
        record = await self.store.get(tenant_id)
        if record is None:
            raise SubscriptionCancellationError(tenant_id, "Tenant not found")
        if not record.external_subscription_id:
            raise SubscriptionCancellationError(
                tenant_id, "Tenant has no active subscription"
            )

        # Validate before touching the processor; canceling twice is refused.
        try:
            if record.billing_status == BillingStatus.CANCELED:
                raise InvalidBillingTransitionError(
                    BillingStatus.CANCELED, BillingStatus.CANCELED
                )
            ensure_transition(record.billing_status, BillingStatus.CANCELED)
        except InvalidBillingTransitionError:
            BILLING_TRANSITIONS_REJECTED.labels(
                from_status=record.billing_status.value,
                to_status=BillingStatus.CANCELED.value,
            ).inc()
            raise

        try:
            await self.asaas_client.cancel_subscription(record.external_subscription_id)
        except Exception as exc:
            logger.error(
                "subscription_cancel_failed", tenant_id=str(tenant_id), error=str(exc)
            )
            raise SubscriptionCancellationError(
                tenant_id,
                f"Failed to cancel subscription: {exc}",
                subscription_id=record.external_subscription_id,
            ) from exc

        updated = await self._apply(record, target_status=BillingStatus.CANCELED)
        logger.info(
            "subscription_cancel_completed",
            tenant_id=str(tenant_id),
            subscription_id=record.external_subscription_id,
        )
        return updated
