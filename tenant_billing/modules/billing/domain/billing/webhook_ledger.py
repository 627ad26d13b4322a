"""
Webhook Ledger - durable, deduplicated processing of ASAAS webhooks.

Every delivery is stored before it is processed:
- `(source, external_event_id)` is unique, so a redelivery maps onto the
  original row and never re-applies side effects
- a conditional `pending -> processing` UPDATE is the single-writer lock
- failures return the row to `pending` until `max_attempts`, then `failed`

Usage:
    ledger = WebhookLedger(db)
    event, created = await ledger.ingest("asaas", "evt_1", "PAYMENT_CONFIRMED", body)
    result = await ledger.process_event(event, handler)

    # Called by an external scheduler
    summary = await ledger.process_pending(handler)
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Tuple
from uuid import UUID

import structlog
from pydantic import ValidationError
from sqlalchemy import and_, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from tenant_billing.models.webhook_event import WebhookEvent, WebhookEventStatus
from tenant_billing.modules.billing.domain.billing.asaas_events import (
    AsaasWebhookEvent,
)
from tenant_billing.modules.billing.domain.billing.errors import WebhookStateError
from tenant_billing.modules.billing.domain.billing.webhook_handler import (
    WebhookHandler,
    WebhookProcessingResult,
)
from tenant_billing.shared.core.config import get_settings
from tenant_billing.shared.core.exceptions import ResourceNotFoundError
from tenant_billing.shared.core.ops_metrics import (
    WEBHOOK_EVENTS_DEDUPLICATED,
    WEBHOOK_EVENTS_RECEIVED,
    WEBHOOK_PROCESSING_OUTCOMES,
)

logger = structlog.get_logger()

ACTION_DUPLICATE = "duplicate"
ACTION_ALREADY_PROCESSING = "already_processing"
ACTION_PREVIOUSLY_FAILED = "previously_failed"

MAX_ERROR_MESSAGE_CHARS = 2000


class WebhookLedger:
    """Ingestion, claim and retry bookkeeping over the `webhook_events` table."""

    def __init__(
        self,
        db: AsyncSession,
        max_attempts: Optional[int] = None,
        stale_lock_minutes: Optional[int] = None,
    ):
        settings = get_settings()
        self.db = db
        self.max_attempts = max_attempts or settings.WEBHOOK_MAX_ATTEMPTS
        self.stale_lock_minutes = (
            stale_lock_minutes or settings.WEBHOOK_STALE_LOCK_MINUTES
        )

    def _stale_before(self, now: datetime) -> datetime:
        return now - timedelta(minutes=self.stale_lock_minutes)

    async def get(self, event_id: UUID) -> Optional[WebhookEvent]:
        return await self.db.get(WebhookEvent, event_id, populate_existing=True)

    async def _find_existing(
        self, source: str, external_event_id: str
    ) -> Optional[WebhookEvent]:
        result = await self.db.execute(
            select(WebhookEvent).where(
                WebhookEvent.source == source,
                WebhookEvent.external_event_id == external_event_id,
            )
        )
        return result.scalar_one_or_none()

    async def ingest(
        self,
        source: str,
        external_event_id: Optional[str],
        event_type: str,
        payload: Dict[str, Any],
    ) -> Tuple[WebhookEvent, bool]:
        """
        Store a delivery, or return the row a previous delivery created.

        Returns:
            (event, created). Without `external_event_id` every delivery
            creates a new row.
        """
        WEBHOOK_EVENTS_RECEIVED.labels(source=source, event_type=event_type).inc()

        if external_event_id:
            existing = await self._find_existing(source, external_event_id)
            if existing is not None:
                self._log_duplicate(existing)
                return existing, False

        event = WebhookEvent(
            source=source,
            external_event_id=external_event_id,
            event_type=event_type,
            payload=payload,
            status=WebhookEventStatus.PENDING.value,
            attempts=0,
            max_attempts=self.max_attempts,
        )
        self.db.add(event)
        try:
            await self.db.commit()
            await self.db.refresh(event)
        except IntegrityError:
            # Lost an insert race against a concurrent delivery.
            await self.db.rollback()
            if not external_event_id:
                raise
            existing = await self._find_existing(source, external_event_id)
            if existing is None:
                raise
            self._log_duplicate(existing)
            return existing, False

        logger.info(
            "webhook_event_stored",
            webhook_event_id=str(event.id),
            source=source,
            event_type=event_type,
            external_event_id=external_event_id,
        )
        return event, True

    def _log_duplicate(self, existing: WebhookEvent) -> None:
        WEBHOOK_EVENTS_DEDUPLICATED.labels(
            source=existing.source, status=existing.status
        ).inc()
        logger.info(
            "webhook_duplicate_received",
            webhook_event_id=str(existing.id),
            source=existing.source,
            external_event_id=existing.external_event_id,
            status=existing.status,
        )

    async def claim(self, event_id: UUID) -> bool:
        """
        Compare-and-set `pending -> processing`, counting the attempt.

        A `processing` row whose lock is older than the stale timeout is also
        claimable (its worker died). Returns False when another worker holds
        the row or it is no longer eligible.
        """
        now = datetime.now(timezone.utc)
        result = await self.db.execute(
            update(WebhookEvent)
            .where(
                WebhookEvent.id == event_id,
                WebhookEvent.attempts < WebhookEvent.max_attempts,
                or_(
                    WebhookEvent.status == WebhookEventStatus.PENDING.value,
                    and_(
                        WebhookEvent.status == WebhookEventStatus.PROCESSING.value,
                        WebhookEvent.locked_at < self._stale_before(now),
                    ),
                ),
            )
            .values(
                status=WebhookEventStatus.PROCESSING.value,
                attempts=WebhookEvent.attempts + 1,
                locked_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        claimed = result.rowcount == 1
        if not claimed:
            logger.info("webhook_claim_lost", webhook_event_id=str(event_id))
        return claimed

    async def mark_processed(
        self, event: WebhookEvent, result: WebhookProcessingResult
    ) -> WebhookEvent:
        return await self._finish(event, WebhookEventStatus.PROCESSED, result)

    async def mark_ignored(
        self, event: WebhookEvent, result: WebhookProcessingResult
    ) -> WebhookEvent:
        return await self._finish(event, WebhookEventStatus.IGNORED, result)

    async def _finish(
        self,
        event: WebhookEvent,
        status: WebhookEventStatus,
        result: WebhookProcessingResult,
    ) -> WebhookEvent:
        event.status = status.value
        event.result = result.model_dump(mode="json")
        event.processed_at = datetime.now(timezone.utc)
        event.locked_at = None
        event.error_message = None
        if result.tenant_id:
            event.tenant_id = result.tenant_id
        await self.db.commit()
        self._record_outcome(event)
        return event

    async def mark_attempt_failed(
        self,
        event: WebhookEvent,
        error: str,
        retryable: bool = True,
        result: Optional[WebhookProcessingResult] = None,
    ) -> WebhookEvent:
        """Back to `pending` while attempts remain, else terminal `failed`."""
        exhausted = event.attempts >= event.max_attempts
        event.status = (
            WebhookEventStatus.PENDING.value
            if retryable and not exhausted
            else WebhookEventStatus.FAILED.value
        )
        event.error_message = (error or "unknown error")[:MAX_ERROR_MESSAGE_CHARS]
        event.locked_at = None
        if result is not None:
            event.result = result.model_dump(mode="json")
            if result.tenant_id:
                event.tenant_id = result.tenant_id
        await self.db.commit()
        self._record_outcome(event)

        log = logger.error if event.status == WebhookEventStatus.FAILED.value else logger.warning
        log(
            "webhook_processing_attempt_failed",
            webhook_event_id=str(event.id),
            event_type=event.event_type,
            attempts=event.attempts,
            max_attempts=event.max_attempts,
            status=event.status,
            retryable=retryable,
            error=event.error_message,
        )
        return event

    def _record_outcome(self, event: WebhookEvent) -> None:
        WEBHOOK_PROCESSING_OUTCOMES.labels(
            source=event.source, event_type=event.event_type, status=event.status
        ).inc()

    def _short_circuit(self, event: WebhookEvent) -> WebhookProcessingResult:
        """Result for a delivery that maps onto a row this worker cannot claim."""
        if event.is_terminal:
            return WebhookProcessingResult(
                success=True,
                event_type=event.event_type,
                tenant_id=event.tenant_id,
                action=ACTION_DUPLICATE,
            )
        if event.status == WebhookEventStatus.FAILED.value:
            return WebhookProcessingResult(
                success=False,
                event_type=event.event_type,
                tenant_id=event.tenant_id,
                action=ACTION_PREVIOUSLY_FAILED,
                error=event.error_message,
                retryable=False,
            )
        return WebhookProcessingResult(
            success=True,
            event_type=event.event_type,
            tenant_id=event.tenant_id,
            action=ACTION_ALREADY_PROCESSING,
        )

    async def process_event(
        self, event: WebhookEvent, handler: WebhookHandler
    ) -> WebhookProcessingResult:
        """
        Run one processing attempt for `event`.

        Once claimed, the attempt always runs to a recorded outcome; there is
        no mid-flight cancellation.
        """
        event_id = event.id
        if event.is_terminal or event.status == WebhookEventStatus.FAILED.value:
            return self._short_circuit(event)

        if not await self.claim(event_id):
            current = await self.get(event_id)
            return self._short_circuit(current or event)

        claimed = await self.get(event_id)
        if claimed is None:
            raise ResourceNotFoundError(f"Webhook event {event_id} disappeared")

        with structlog.contextvars.bound_contextvars(
            webhook_event_id=str(event_id), event_type=claimed.event_type
        ):
            logger.info(
                "webhook_processing_started",
                attempt=claimed.attempts,
                max_attempts=claimed.max_attempts,
            )
            try:
                envelope = AsaasWebhookEvent.model_validate(claimed.payload)
            except ValidationError as exc:
                result = WebhookProcessingResult(
                    success=False,
                    event_type=claimed.event_type,
                    error=f"Stored payload is invalid: {exc.error_count()} error(s)",
                    retryable=False,
                )
            else:
                try:
                    result = await handler.dispatch(envelope)
                except Exception as exc:  # noqa: BLE001 - ledger bookkeeping must run
                    logger.exception("webhook_dispatch_crashed", error=str(exc))
                    result = WebhookProcessingResult(
                        success=False, event_type=claimed.event_type, error=str(exc)
                    )

            # A handler-side rollback expires loaded rows; reload before writing.
            claimed = await self.get(event_id)
            if claimed is None:
                raise ResourceNotFoundError(f"Webhook event {event_id} disappeared")

            if not result.success:
                await self.mark_attempt_failed(
                    claimed,
                    result.error or "processing failed",
                    retryable=result.retryable,
                    result=result,
                )
            elif result.is_no_op:
                await self.mark_ignored(claimed, result)
            else:
                await self.mark_processed(claimed, result)

            logger.info(
                "webhook_processing_completed",
                status=claimed.status,
                action=result.action,
                success=result.success,
            )
        return result

    async def receive(
        self,
        source: str,
        envelope: AsaasWebhookEvent,
        handler: WebhookHandler,
        raw_payload: Optional[Dict[str, Any]] = None,
    ) -> WebhookProcessingResult:
        """Ingest one inbound delivery and attempt it immediately."""
        event, _created = await self.ingest(
            source=source,
            external_event_id=envelope.id,
            event_type=envelope.event,
            payload=raw_payload
            if raw_payload is not None
            else envelope.model_dump(mode="json", exclude_none=True),
        )
        return await self.process_event(event, handler)

    async def _expire_exhausted_locks(self, now: datetime) -> int:
        """Fail `processing` rows whose worker died on the final attempt."""
        result = await self.db.execute(
            update(WebhookEvent)
            .where(
                WebhookEvent.status == WebhookEventStatus.PROCESSING.value,
                WebhookEvent.locked_at < self._stale_before(now),
                WebhookEvent.attempts >= WebhookEvent.max_attempts,
            )
            .values(
                status=WebhookEventStatus.FAILED.value,
                error_message="Processing lock expired on final attempt",
                locked_at=None,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        if result.rowcount:
            logger.error("webhook_stale_locks_failed", count=result.rowcount)
        return result.rowcount or 0

    async def list_retry_eligible(self, limit: Optional[int] = None) -> list[WebhookEvent]:
        """
        Rows a retry sweep may claim: `pending` with attempts left, plus
        `processing` rows whose lock went stale. Oldest first.
        """
        limit = limit or get_settings().WEBHOOK_RETRY_BATCH_SIZE
        now = datetime.now(timezone.utc)
        result = await self.db.execute(
            select(WebhookEvent)
            .where(
                WebhookEvent.attempts < WebhookEvent.max_attempts,
                or_(
                    WebhookEvent.status == WebhookEventStatus.PENDING.value,
                    and_(
                        WebhookEvent.status == WebhookEventStatus.PROCESSING.value,
                        WebhookEvent.locked_at < self._stale_before(now),
                    ),
                ),
            )
            .order_by(WebhookEvent.created_at)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def process_pending(
        self, handler: WebhookHandler, limit: Optional[int] = None
    ) -> Dict[str, Any]:
        """One retry sweep. Scheduling is left to the caller."""
        now = datetime.now(timezone.utc)
        summary: Dict[str, Any] = {
            "processed": 0,
            "succeeded": 0,
            "retrying": 0,
            "failed": 0,
            "skipped": 0,
            "expired": await self._expire_exhausted_locks(now),
        }

        events = await self.list_retry_eligible(limit)
        logger.info("webhook_retry_sweep_started", eligible=len(events))

        for event in events:
            event_id = event.id
            result = await self.process_event(event, handler)
            if result.action in (ACTION_ALREADY_PROCESSING, ACTION_DUPLICATE):
                summary["skipped"] += 1
                continue

            summary["processed"] += 1
            current = await self.get(event_id)
            status = current.status if current is not None else None
            if status in (
                WebhookEventStatus.PROCESSED.value,
                WebhookEventStatus.IGNORED.value,
            ):
                summary["succeeded"] += 1
            elif status == WebhookEventStatus.PENDING.value:
                summary["retrying"] += 1
            else:
                summary["failed"] += 1

        logger.info("webhook_retry_sweep_completed", **summary)
        return summary

    async def reset(self, event_id: UUID) -> WebhookEvent:
        """Return a `failed` row to `pending` with a fresh attempt budget."""
        event = await self.get(event_id)
        if event is None:
            raise ResourceNotFoundError(
                f"Webhook event {event_id} not found",
                details={"event_id": str(event_id)},
            )
        if event.status != WebhookEventStatus.FAILED.value:
            raise WebhookStateError(
                event_id,
                event.status,
                f"Only failed webhook events can be reset (status is {event.status})",
            )

        event.status = WebhookEventStatus.PENDING.value
        event.attempts = 0
        event.locked_at = None
        await self.db.commit()
        logger.warning(
            "webhook_event_reset",
            webhook_event_id=str(event_id),
            event_type=event.event_type,
            previous_error=event.error_message,
        )
        return event
