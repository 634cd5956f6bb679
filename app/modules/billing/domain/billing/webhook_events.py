"""
Webhook event ledger.

Every verified Stripe event is stored before it is processed so duplicate
deliveries are detected and failed events can be replayed from the stored
payload without waiting for Stripe to redeliver.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional
from uuid import UUID

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.webhook_event import WebhookEvent
from app.modules.billing.domain.billing.webhook_retry import (
    WebhookHandlerFn,
    WebhookProcessingResult,
    log_failed_webhook,
    process_webhook_with_retry,
)

logger = structlog.get_logger()

DEFAULT_MAX_PROCESSING_ATTEMPTS = 3


class WebhookEventService:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, event_row_id: UUID) -> Optional[WebhookEvent]:
        return await self.db.get(WebhookEvent, event_row_id)

    async def get_by_stripe_id(self, stripe_event_id: str) -> Optional[WebhookEvent]:
        result = await self.db.execute(
            select(WebhookEvent).where(WebhookEvent.stripe_event_id == stripe_event_id)
        )
        return result.scalar_one_or_none()

    async def record_received(self, event: dict[str, Any]) -> WebhookEvent:
        """Store an inbound event, returning the existing row for redeliveries."""
        stripe_event_id = str(event.get("id") or "")
        if not stripe_event_id:
            raise ValueError("Stripe event has no id")

        existing = await self.get_by_stripe_id(stripe_event_id)
        if existing is not None:
            logger.info(
                "webhook_event_redelivered",
                stripe_event_id=stripe_event_id,
                processed=existing.processed,
                attempts=existing.processing_attempts,
            )
            return existing

        row = WebhookEvent(
            stripe_event_id=stripe_event_id,
            event_type=str(event.get("type") or "unknown"),
            processed=False,
            processing_attempts=0,
            event_data=event,
        )
        self.db.add(row)
        try:
            await self.db.commit()
        except IntegrityError:
            # Concurrent delivery of the same event won the insert
            await self.db.rollback()
            existing = await self.get_by_stripe_id(stripe_event_id)
            if existing is None:
                raise
            return existing

        logger.info(
            "webhook_event_recorded",
            stripe_event_id=stripe_event_id,
            event_type=row.event_type,
        )
        return row

    async def record_attempt(
        self, row: WebhookEvent, result: WebhookProcessingResult
    ) -> WebhookEvent:
        # Handler failures roll the session back, which expires the row.
        await self.db.refresh(row)
        # One delivery or replay counts once, however many in-process tries it took
        row.processing_attempts = (row.processing_attempts or 0) + 1
        row.processed = result.success
        row.error_message = None if result.success else result.error
        row.last_processing_attempt = datetime.now(timezone.utc)
        await self.db.commit()
        return row

    async def list_events(
        self,
        processed: Optional[bool] = None,
        event_type: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[WebhookEvent]:
        stmt = select(WebhookEvent)
        if processed is not None:
            stmt = stmt.where(WebhookEvent.processed.is_(processed))
        if event_type:
            stmt = stmt.where(WebhookEvent.event_type == event_type)
        stmt = stmt.order_by(WebhookEvent.created_at.desc()).limit(limit).offset(offset)
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def get_failed_events(
        self, max_attempts: int = DEFAULT_MAX_PROCESSING_ATTEMPTS
    ) -> list[WebhookEvent]:
        """Unprocessed events still under the replay budget, oldest first."""
        result = await self.db.execute(
            select(WebhookEvent)
            .where(
                WebhookEvent.processed.is_(False),
                WebhookEvent.processing_attempts < max_attempts,
            )
            .order_by(WebhookEvent.created_at.asc())
        )
        return list(result.scalars().all())

    async def reprocess(
        self,
        row: WebhookEvent,
        handler: WebhookHandlerFn,
        config: Optional[dict[str, Any]] = None,
    ) -> WebhookProcessingResult:
        """Replay a stored event through the retry pipeline."""
        event = dict(row.event_data or {})
        stripe_event_id = row.stripe_event_id
        result = await process_webhook_with_retry(event, handler, config)
        await self.record_attempt(row, result)

        if result.success:
            logger.info("webhook_event_reprocessed", stripe_event_id=stripe_event_id)
        else:
            await log_failed_webhook(
                event, result.error or "unknown error", row.processing_attempts, self.db
            )
        return result

    async def retry_failed_events(
        self,
        handler: WebhookHandlerFn,
        max_attempts: int = DEFAULT_MAX_PROCESSING_ATTEMPTS,
        config: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        """Sweep every replayable failed event once."""
        # A failed replay rolls back and expires every loaded row; reload by id.
        row_ids = [row.id for row in await self.get_failed_events(max_attempts)]
        succeeded = 0
        failed_ids: list[str] = []

        for row_id in row_ids:
            row = await self.get(row_id)
            if row is None:
                continue
            stripe_event_id = row.stripe_event_id
            result = await self.reprocess(row, handler, config)
            if result.success:
                succeeded += 1
            else:
                failed_ids.append(stripe_event_id)

        summary = {
            "total": len(row_ids),
            "succeeded": succeeded,
            "failed": len(failed_ids),
            "failed_event_ids": failed_ids,
        }
        logger.info("webhook_failed_events_swept", **summary)
        return summary
