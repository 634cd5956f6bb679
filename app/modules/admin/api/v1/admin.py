"""
Admin API Endpoints

Provides:
- GET /admin/webhook-events - Browse the Stripe event ledger
- POST /admin/webhook-events/{id}/retry - Replay one stored event
- POST /admin/webhook-events/retry-failed - Replay every replayable failure
- GET /admin/system-health - Health status and dashboard counters
- GET|POST /admin/system-alerts, POST /admin/system-alerts/{id}/resolve
"""

from datetime import datetime
from typing import Annotated, Any, Dict, List, Optional
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, Query, Request
from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.system_alert import AlertSeverity
from app.modules.admin.domain.monitoring import SystemMonitor
from app.modules.billing.domain.billing.stripe_client import (
    StripeClient,
    get_stripe_client,
)
from app.modules.billing.domain.billing.webhook_events import WebhookEventService
from app.modules.billing.domain.billing.webhook_handler import StripeWebhookHandler
from app.shared.core.auth import CurrentUser, requires_role
from app.shared.core.config import get_settings
from app.shared.core.exceptions import ResourceNotFoundError
from app.shared.core.logging import audit_log
from app.shared.core.rate_limit import standard_limit
from app.shared.db.session import get_db

logger = structlog.get_logger()
router = APIRouter(tags=["Admin"])

AdminDep = Annotated[CurrentUser, Depends(requires_role("admin"))]


class WebhookEventItem(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    stripe_event_id: str
    event_type: str
    processed: bool
    processing_attempts: int
    last_processing_attempt: Optional[datetime] = None
    error_message: Optional[str] = None
    created_at: datetime


class WebhookRetryResponse(BaseModel):
    success: bool
    attempts: int
    error: Optional[str] = None


class SystemAlertItem(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    alert_type: str
    severity: str
    title: str
    message: str
    # Column is "metadata"; the ORM attribute is alert_metadata
    alert_metadata: Dict[str, Any] = Field(
        default_factory=dict,
        validation_alias=AliasChoices("alert_metadata", "metadata"),
        serialization_alias="metadata",
    )
    resolved: bool
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    created_at: datetime


class CreateAlertRequest(BaseModel):
    alert_type: str = Field(min_length=1, max_length=100)
    severity: AlertSeverity
    title: str = Field(min_length=1, max_length=255)
    message: str = Field(min_length=1)
    metadata: Dict[str, Any] = Field(default_factory=dict)


@router.get("/webhook-events", response_model=List[WebhookEventItem])
@standard_limit
async def list_webhook_events(
    request: Request,
    user: AdminDep,
    db: AsyncSession = Depends(get_db),
    processed: Optional[bool] = Query(None),
    event_type: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
) -> List[WebhookEventItem]:
    rows = await WebhookEventService(db).list_events(
        processed=processed, event_type=event_type, limit=limit, offset=offset
    )
    return [WebhookEventItem.model_validate(row) for row in rows]


@router.post("/webhook-events/retry-failed")
async def retry_failed_webhook_events(
    user: AdminDep,
    client: Annotated[StripeClient, Depends(get_stripe_client)],
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    """Replay every unprocessed event still under the dead-letter threshold."""
    handler = StripeWebhookHandler(db, client)
    summary = await WebhookEventService(db).retry_failed_events(
        handler.handle, max_attempts=get_settings().WEBHOOK_DEAD_LETTER_THRESHOLD
    )
    audit_log("webhook_events_bulk_retried", str(user.id), summary)
    return summary


@router.post("/webhook-events/{event_id}/retry", response_model=WebhookRetryResponse)
async def retry_webhook_event(
    event_id: UUID,
    user: AdminDep,
    client: Annotated[StripeClient, Depends(get_stripe_client)],
    db: AsyncSession = Depends(get_db),
) -> WebhookRetryResponse:
    ledger = WebhookEventService(db)
    row = await ledger.get(event_id)
    if row is None:
        raise ResourceNotFoundError(f"Webhook event {event_id} not found")

    stripe_event_id = row.stripe_event_id
    result = await ledger.reprocess(row, StripeWebhookHandler(db, client).handle)
    audit_log(
        "webhook_event_retried",
        str(user.id),
        {"stripe_event_id": stripe_event_id, "success": result.success},
    )
    return WebhookRetryResponse(success=result.success, attempts=result.attempts, error=result.error)


@router.get("/system-health")
@standard_limit
async def get_system_health(
    request: Request,
    user: AdminDep,
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    monitor = SystemMonitor(db)
    return {
        "health": await monitor.check_system_health(),
        "dashboard": await monitor.get_dashboard_data(),
    }


@router.get("/system-alerts", response_model=List[SystemAlertItem], response_model_by_alias=True)
@standard_limit
async def list_system_alerts(
    request: Request,
    user: AdminDep,
    db: AsyncSession = Depends(get_db),
    resolved: Optional[bool] = Query(None),
    severity: Optional[AlertSeverity] = Query(None),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
) -> List[SystemAlertItem]:
    alerts = await SystemMonitor(db).get_alerts(
        resolved=resolved,
        severity=severity.value if severity else None,
        limit=limit,
        offset=offset,
    )
    return [SystemAlertItem.model_validate(alert) for alert in alerts]


@router.post(
    "/system-alerts",
    response_model=SystemAlertItem,
    response_model_by_alias=True,
    status_code=201,
)
async def create_system_alert(
    alert_req: CreateAlertRequest,
    user: AdminDep,
    db: AsyncSession = Depends(get_db),
) -> SystemAlertItem:
    alert = await SystemMonitor(db).create_alert(
        alert_type=alert_req.alert_type,
        severity=alert_req.severity,
        title=alert_req.title,
        message=alert_req.message,
        metadata=alert_req.metadata,
    )
    return SystemAlertItem.model_validate(alert)


@router.post(
    "/system-alerts/{alert_id}/resolve",
    response_model=SystemAlertItem,
    response_model_by_alias=True,
)
async def resolve_system_alert(
    alert_id: UUID,
    user: AdminDep,
    db: AsyncSession = Depends(get_db),
) -> SystemAlertItem:
    alert = await SystemMonitor(db).resolve_alert(alert_id, resolved_by=user.email)
    return SystemAlertItem.model_validate(alert)


@router.post("/system-alerts/auto-resolve")
async def auto_resolve_alerts(
    user: AdminDep,
    db: AsyncSession = Depends(get_db),
    max_age_hours: int = Query(24, ge=1),
) -> Dict[str, int]:
    resolved = await SystemMonitor(db).auto_resolve_stale_alerts(max_age_hours)
    return {"resolved": resolved}
