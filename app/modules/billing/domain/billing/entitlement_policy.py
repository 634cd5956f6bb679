"""Centralized billing entitlement synchronization policy."""

from __future__ import annotations

from typing import Optional
from uuid import UUID

import structlog
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.profile import Profile
from app.shared.core.pricing import PricingTier

logger = structlog.get_logger()


def normalize_pricing_tier_value(tier: str | PricingTier) -> str:
    """Normalize incoming tier values to canonical pricing tier enum values."""
    if isinstance(tier, PricingTier):
        return tier.value

    candidate = str(tier).strip().lower()
    try:
        return PricingTier(candidate).value
    except ValueError as exc:
        raise ValueError(f"Unsupported pricing tier value: {tier!r}") from exc


async def sync_profile_tier(
    *,
    db: AsyncSession,
    user_id: UUID,
    tier: str | PricingTier,
    status: str,
    source: str,
    stripe_customer_id: Optional[str] = None,
) -> None:
    """Apply profile entitlement sync from billing outcomes in one validated path.

    Does not commit; callers own the transaction.
    """
    normalized_tier = normalize_pricing_tier_value(tier)
    values: dict[str, str] = {
        "subscription_tier": normalized_tier,
        "subscription_status": status,
    }
    if stripe_customer_id:
        values["stripe_customer_id"] = stripe_customer_id

    result = await db.execute(
        update(Profile).where(Profile.id == user_id).values(**values)
    )

    rowcount = getattr(result, "rowcount", None)
    if isinstance(rowcount, int) and rowcount != 1:
        raise RuntimeError(
            "Profile entitlement sync failed due to missing or duplicated profile row "
            f"(user_id={user_id}, updated_rows={rowcount})"
        )

    logger.info(
        "billing_entitlement_synced",
        user_id=str(user_id),
        tier=normalized_tier,
        status=status,
        source=source,
    )


async def sync_profile_status(
    *, db: AsyncSession, user_id: UUID, status: str, source: str
) -> None:
    """Update only the subscription status, leaving the tier untouched."""
    result = await db.execute(
        update(Profile).where(Profile.id == user_id).values(subscription_status=status)
    )
    rowcount = getattr(result, "rowcount", None)
    if isinstance(rowcount, int) and rowcount != 1:
        raise RuntimeError(
            f"Profile status sync failed (user_id={user_id}, updated_rows={rowcount})"
        )
    logger.info(
        "billing_status_synced", user_id=str(user_id), status=status, source=source
    )
