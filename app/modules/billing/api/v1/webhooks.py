"""
Stripe webhook endpoint.

Verifies the payload, records it in the event ledger, reconciles it with
bounded retries and answers with the status Stripe uses to decide on
redelivery.
"""

from typing import Annotated, Any

import structlog
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from app.modules.billing.domain.billing.stripe_client import (
    StripeClient,
    get_stripe_client,
)
from app.modules.billing.domain.billing.webhook_events import WebhookEventService
from app.modules.billing.domain.billing.webhook_handler import StripeWebhookHandler
from app.modules.billing.domain.billing.webhook_retry import (
    create_webhook_response,
    log_failed_webhook,
    process_webhook_with_retry,
    verify_webhook_signature,
)
from app.shared.core.exceptions import WebhookSignatureError
from app.shared.core.ops_metrics import WEBHOOK_EVENTS_TOTAL
from app.shared.db.session import get_db

logger = structlog.get_logger()
router = APIRouter(tags=["Webhooks"])


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    client: Annotated[StripeClient, Depends(get_stripe_client)],
    db: AsyncSession = Depends(get_db),
) -> Any:
    payload = await request.body()

    try:
        event = verify_webhook_signature(payload, request.headers.get("stripe-signature"))
    except WebhookSignatureError as e:
        WEBHOOK_EVENTS_TOTAL.labels(event_type="unknown", outcome="rejected").inc()
        return JSONResponse(
            status_code=400,
            content={"error": "Invalid signature", "message": e.message},
        )

    event_id = event.get("id")
    event_type = event.get("type")
    structlog.contextvars.bind_contextvars(stripe_event_id=event_id)

    try:
        ledger = WebhookEventService(db)
        row = await ledger.record_received(event)
        if row.processed:
            logger.info("stripe_webhook_duplicate_ignored", event_type=event_type)
            WEBHOOK_EVENTS_TOTAL.labels(event_type=str(event_type), outcome="duplicate").inc()
            return JSONResponse(status_code=200, content={"received": True, "duplicate": True})

        handler = StripeWebhookHandler(db, client)
        result = await process_webhook_with_retry(event, handler.handle)
        row = await ledger.record_attempt(row, result)

        if not result.success:
            await log_failed_webhook(
                event, result.error or "unknown error", row.processing_attempts, db
            )

        return create_webhook_response(result)
    except Exception as e:
        logger.exception(
            "stripe_webhook_internal_error",
            event_type=event_type,
            error=str(e),
            error_type=type(e).__name__,
        )
        return JSONResponse(status_code=500, content={"error": "Internal server error"})
    finally:
        structlog.contextvars.unbind_contextvars("stripe_event_id")
