"""
Webhook Retry Handling - Revenue Protection

Stripe redelivers any webhook we do not acknowledge with a 2xx. This module
decides, per event, whether to absorb a failure locally (bounded retries
with exponential backoff) and then what to tell Stripe:

- success                      -> 200, Stripe stops
- transient failure            -> 500 + Retry-After, Stripe redelivers
- permanent failure            -> 400, Stripe gives up

Usage:
    event = verify_webhook_signature(payload, request.headers.get("stripe-signature"))
    result = await process_webhook_with_retry(event, handler.handle)
    return create_webhook_response(result)
"""

from __future__ import annotations

import asyncio
import json
import math
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

import stripe
import structlog
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.system_alert import AlertSeverity, SystemAlert
from app.shared.core.config import get_settings
from app.shared.core.exceptions import WebhookSignatureError
from app.shared.core.ops_metrics import WEBHOOK_EVENTS_TOTAL, WEBHOOK_PROCESSING_ATTEMPTS
from app.shared.core.retry import (
    RETRY_CONFIGS,
    calculate_retry_delay,
    is_retryable_error,
)

logger = structlog.get_logger()

WebhookHandlerFn = Callable[[dict[str, Any]], Awaitable[Any]]

RETRYABLE_WEBHOOK_EVENTS = frozenset(
    {
        "customer.subscription.created",
        "customer.subscription.updated",
        "customer.subscription.deleted",
        "invoice.payment_succeeded",
        "invoice.payment_failed",
        "payment_intent.succeeded",
        "payment_intent.payment_failed",
    }
)

# Dead-lettered events at or above this many attempts are escalated
CRITICAL_ATTEMPT_THRESHOLD = 3


@dataclass
class WebhookProcessingResult:
    success: bool
    error: Optional[str] = None
    should_retry: bool = False
    retry_after: Optional[float] = None
    attempts: int = 0


def webhook_retry_config() -> dict[str, Any]:
    """Webhook policy derived from settings (first delivery + WEBHOOK_MAX_RETRIES)."""
    settings = get_settings()
    config = dict(RETRY_CONFIGS["webhook"])
    config.update(
        max_attempts=settings.WEBHOOK_MAX_RETRIES + 1,
        min_wait=settings.WEBHOOK_RETRY_BASE_DELAY_SECONDS,
        max_wait=settings.WEBHOOK_RETRY_MAX_DELAY_SECONDS,
        multiplier=settings.WEBHOOK_RETRY_MULTIPLIER,
    )
    return config


def is_retryable_webhook_event(event_type: Optional[str]) -> bool:
    return event_type in RETRYABLE_WEBHOOK_EVENTS


def verify_webhook_signature(payload: bytes, signature: Optional[str]) -> dict[str, Any]:
    """Authenticate a raw Stripe payload and return the decoded event."""
    if not signature:
        raise WebhookSignatureError("Missing stripe-signature header")

    settings = get_settings()
    secret = settings.STRIPE_WEBHOOK_SECRET
    if not secret:
        logger.error("stripe_webhook_secret_not_configured")
        raise WebhookSignatureError("Webhook secret not configured")

    try:
        text = payload.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise WebhookSignatureError("Webhook payload is not valid UTF-8") from exc

    try:
        stripe.WebhookSignature.verify_header(
            text, signature, secret, tolerance=settings.STRIPE_WEBHOOK_TOLERANCE_SECONDS
        )
    except stripe.SignatureVerificationError as exc:
        logger.warning(
            "stripe_webhook_invalid_signature",
            provided_sig=signature[:12] + "...",
            error=str(exc),
        )
        raise WebhookSignatureError(f"Webhook signature verification failed: {exc}") from exc

    try:
        event = json.loads(text)
    except json.JSONDecodeError as exc:
        logger.error("stripe_webhook_invalid_json", payload_len=len(payload))
        raise WebhookSignatureError("Invalid JSON payload") from exc

    if not isinstance(event, dict) or not event.get("type"):
        raise WebhookSignatureError("Webhook payload is not a Stripe event")
    return event


async def process_webhook_with_retry(
    event: dict[str, Any],
    handler: WebhookHandlerFn,
    config: Optional[dict[str, Any]] = None,
) -> WebhookProcessingResult:
    """
    Run `handler(event)` with bounded in-process retries.

    Stops early for events Stripe should not redeliver and for permanent
    errors. On failure the result carries whether Stripe should retry and
    the delay to advertise.
    """
    config = config or webhook_retry_config()
    max_attempts = int(config["max_attempts"])
    event_type = event.get("type")
    event_id = event.get("id")
    retryable_event = is_retryable_webhook_event(event_type)

    last_error: Optional[Exception] = None
    attempts = 0

    for attempt in range(max_attempts):
        attempts = attempt + 1
        try:
            await handler(event)
        except Exception as e:
            last_error = e
            retryable_error = is_retryable_error(e)
            logger.warning(
                "webhook_processing_attempt_failed",
                event_id=event_id,
                event_type=event_type,
                attempt=attempts,
                max_attempts=max_attempts,
                retryable_event=retryable_event,
                retryable_error=retryable_error,
                error=str(e),
                error_type=type(e).__name__,
            )
            if attempt >= max_attempts - 1 or not retryable_event or not retryable_error:
                break
            await asyncio.sleep(calculate_retry_delay(attempt, config))
            continue

        if attempt > 0:
            logger.info(
                "webhook_processed_after_retry",
                event_id=event_id,
                event_type=event_type,
                attempts=attempts,
            )
        WEBHOOK_EVENTS_TOTAL.labels(event_type=str(event_type), outcome="processed").inc()
        WEBHOOK_PROCESSING_ATTEMPTS.observe(attempts)
        return WebhookProcessingResult(success=True, attempts=attempts)

    assert last_error is not None
    should_retry = retryable_event and is_retryable_error(last_error)
    WEBHOOK_EVENTS_TOTAL.labels(
        event_type=str(event_type), outcome="retry" if should_retry else "failed"
    ).inc()
    WEBHOOK_PROCESSING_ATTEMPTS.observe(attempts)
    return WebhookProcessingResult(
        success=False,
        error=str(last_error) or type(last_error).__name__,
        should_retry=should_retry,
        retry_after=calculate_retry_delay(0, config),
        attempts=attempts,
    )


def create_webhook_response(result: WebhookProcessingResult) -> JSONResponse:
    """Translate a processing result into the status Stripe acts on."""
    if result.success:
        return JSONResponse(status_code=200, content={"received": True})

    if result.should_retry:
        retry_after = result.retry_after or 0
        return JSONResponse(
            status_code=500,
            content={
                "error": "Temporary processing error",
                "message": "Webhook will be retried",
            },
            headers={"Retry-After": str(int(math.ceil(retry_after)))},
        )

    return JSONResponse(
        status_code=400,
        content={"error": "Webhook processing failed", "message": result.error},
    )


async def log_failed_webhook(
    event: dict[str, Any],
    error: str,
    attempts: int,
    db: Optional[AsyncSession] = None,
) -> None:
    """
    Dead-letter a webhook that could not be processed.

    With a session, also opens a system alert so the failure surfaces on the
    admin dashboard.
    """
    critical = attempts >= CRITICAL_ATTEMPT_THRESHOLD
    log = logger.critical if critical else logger.error
    log(
        "webhook_dead_lettered",
        event_id=event.get("id"),
        event_type=event.get("type"),
        attempts=attempts,
        error=error,
    )

    if db is None:
        return

    db.add(
        SystemAlert(
            alert_type="webhook_processing_failed",
            severity=(AlertSeverity.CRITICAL if critical else AlertSeverity.HIGH).value,
            title=f"Webhook processing failed: {event.get('type')}",
            message=error,
            alert_metadata={
                "event_id": event.get("id"),
                "event_type": event.get("type"),
                "attempts": attempts,
            },
        )
    )
    await db.commit()
