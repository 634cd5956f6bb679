"""
System Monitoring

Operator alerts and billing pipeline health: dead-lettered webhooks surface
here as alerts, and the dashboard summarises today's webhook throughput.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Literal, Optional
from uuid import UUID

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.system_alert import AlertSeverity, SystemAlert
from app.models.webhook_event import WebhookEvent
from app.shared.core.config import get_settings
from app.shared.core.exceptions import ResourceNotFoundError
from app.shared.db.recovery import check_database_health

logger = structlog.get_logger()

HealthStatus = Literal["healthy", "warning", "critical"]

# Unresolved alerts considered by the health check, newest first
RECENT_ALERT_WINDOW = 10

STALE_SEVERITIES = (AlertSeverity.LOW.value, AlertSeverity.MEDIUM.value)


class SystemMonitor:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def create_alert(
        self,
        alert_type: str,
        severity: AlertSeverity | str,
        title: str,
        message: str,
        metadata: Optional[dict[str, Any]] = None,
    ) -> SystemAlert:
        severity_value = AlertSeverity(severity).value
        alert = SystemAlert(
            alert_type=alert_type,
            severity=severity_value,
            title=title,
            message=message,
            alert_metadata=metadata or {},
            resolved=False,
        )
        self.db.add(alert)
        await self.db.commit()
        logger.warning(
            "system_alert_created",
            alert_id=str(alert.id),
            alert_type=alert_type,
            severity=severity_value,
        )
        return alert

    async def get_alerts(
        self,
        resolved: Optional[bool] = None,
        severity: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[SystemAlert]:
        stmt = select(SystemAlert)
        if resolved is not None:
            stmt = stmt.where(SystemAlert.resolved.is_(resolved))
        if severity:
            stmt = stmt.where(SystemAlert.severity == severity)
        stmt = stmt.order_by(SystemAlert.created_at.desc()).limit(limit).offset(offset)
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def resolve_alert(self, alert_id: UUID, resolved_by: str) -> SystemAlert:
        alert = await self.db.get(SystemAlert, alert_id)
        if alert is None:
            raise ResourceNotFoundError(f"System alert {alert_id} not found")

        alert.resolved = True
        alert.resolved_by = resolved_by
        alert.resolved_at = datetime.now(timezone.utc)
        await self.db.commit()
        logger.info("system_alert_resolved", alert_id=str(alert_id), resolved_by=resolved_by)
        return alert

    async def auto_resolve_stale_alerts(self, max_age_hours: int = 24) -> int:
        """Close low/medium alerts older than `max_age_hours`."""
        cutoff = datetime.now(timezone.utc) - timedelta(hours=max_age_hours)
        result = await self.db.execute(
            update(SystemAlert)
            .where(
                SystemAlert.resolved.is_(False),
                SystemAlert.severity.in_(STALE_SEVERITIES),
                SystemAlert.created_at < cutoff,
            )
            .values(
                resolved=True,
                resolved_by="system",
                resolved_at=datetime.now(timezone.utc),
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        count = int(result.rowcount or 0)
        if count:
            logger.info("system_alerts_auto_resolved", count=count, max_age_hours=max_age_hours)
        return count

    async def _count_failed_webhooks(self) -> int:
        settings = get_settings()
        result = await self.db.execute(
            select(func.count())
            .select_from(WebhookEvent)
            .where(
                WebhookEvent.processed.is_(False),
                WebhookEvent.processing_attempts < settings.WEBHOOK_DEAD_LETTER_THRESHOLD,
            )
        )
        return int(result.scalar_one() or 0)

    async def check_system_health(self) -> dict[str, Any]:
        settings = get_settings()
        recent = await self.get_alerts(resolved=False, limit=RECENT_ALERT_WINDOW)
        critical = [a for a in recent if a.severity == AlertSeverity.CRITICAL.value]
        high = [a for a in recent if a.severity == AlertSeverity.HIGH.value]
        failed_webhooks = await self._count_failed_webhooks()
        database = await check_database_health(self.db)

        issues: list[str] = []
        status: HealthStatus = "healthy"
        if critical or not database["healthy"]:
            status = "critical"
            if critical:
                issues.append(f"{len(critical)} critical alerts")
            if not database["healthy"]:
                issues.append("Database unreachable")
        elif high or failed_webhooks > settings.WEBHOOK_FAILED_EVENTS_WARNING_THRESHOLD:
            status = "warning"
            if high:
                issues.append(f"{len(high)} high priority alerts")
            if failed_webhooks > settings.WEBHOOK_FAILED_EVENTS_WARNING_THRESHOLD:
                issues.append(f"{failed_webhooks} failed webhook events")

        return {
            "status": status,
            "issues": issues,
            "failed_webhooks": failed_webhooks,
            "database": database,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    async def get_dashboard_data(self) -> dict[str, Any]:
        alert_counts = await self.db.execute(
            select(SystemAlert.resolved, SystemAlert.severity, func.count())
            .group_by(SystemAlert.resolved, SystemAlert.severity)
        )
        total = unresolved = critical = high = 0
        for resolved, severity, count in alert_counts.all():
            total += count
            if not resolved:
                unresolved += count
                if severity == AlertSeverity.CRITICAL.value:
                    critical += count
                elif severity == AlertSeverity.HIGH.value:
                    high += count

        start_of_day = datetime.now(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)
        webhook_counts = await self.db.execute(
            select(WebhookEvent.processed, func.count())
            .where(WebhookEvent.created_at >= start_of_day)
            .group_by(WebhookEvent.processed)
        )
        by_state = {bool(processed): int(count) for processed, count in webhook_counts.all()}
        succeeded = by_state.get(True, 0)
        total_today = succeeded + by_state.get(False, 0)

        health = await self.check_system_health()
        return {
            "alerts": {
                "total": total,
                "unresolved": unresolved,
                "critical": critical,
                "high": high,
            },
            "webhooks": {
                "total_today": total_today,
                "failed_today": total_today - succeeded,
                "success_rate": round(succeeded / total_today * 100, 2) if total_today else 100.0,
            },
            "system_health": {
                "status": health["status"],
                "issues": health["issues"],
            },
        }
