"""Tier configuration checks and per-user usage enforcement."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Literal, Optional
from uuid import UUID

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.experience import Experience
from app.models.profile import Profile
from app.models.subscription import Subscription, SubscriptionStatus
from app.models.usage import UsageTracking
from app.shared.core.pricing import (
    TIER_CONFIG,
    TIER_HIERARCHY,
    UNLIMITED,
    PricingTier,
    get_tier,
    normalize_tier,
)

logger = structlog.get_logger()

UserAction = Literal["create_experience", "upload_image", "export_data"]

EXPORT_FEATURE = "export"

_ACTION_LIMITS: dict[str, str] = {
    "create_experience": "experiences",
    "upload_image": "storage",
    "export_data": "exports",
}


@dataclass
class ValidationResult:
    is_valid: bool
    tier: Optional[dict[str, Any]] = None
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


@dataclass
class UsageValidation:
    can_perform_action: bool
    current_usage: int
    limit: int
    remaining: int
    requires_upgrade: bool
    suggested_tier: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def validate_subscription_tier(tier_id: str) -> ValidationResult:
    tier = get_tier(tier_id)
    if tier is None:
        return ValidationResult(is_valid=False, errors=[f"Invalid tier ID: {tier_id}"])

    result = ValidationResult(is_valid=True, tier=tier)
    if tier["price_monthly"] < 0:
        result.errors.append("Monthly price cannot be negative")
    if tier["price_yearly"] < 0:
        result.errors.append("Yearly price cannot be negative")
    for limit_name in ("experiences", "storage", "exports"):
        if tier["limits"].get(limit_name, 0) < UNLIMITED:
            result.errors.append(
                f"{limit_name.title()} limit must be -1 (unlimited) or positive number"
            )
    if not tier.get("features"):
        result.warnings.append("No features defined for tier")
    if not tier.get("stripe_product_id"):
        result.warnings.append("No Stripe product ID configured")

    result.is_valid = not result.errors
    return result


def validate_all_tiers() -> dict[str, ValidationResult]:
    return {tier.value: validate_subscription_tier(tier.value) for tier in TIER_CONFIG}


def _start_of_month() -> date:
    return datetime.now(timezone.utc).date().replace(day=1)


def suggest_tier(current: PricingTier, limit_type: str, required_usage: int) -> Optional[str]:
    """First tier above `current` whose limit fits `required_usage`."""
    start = TIER_HIERARCHY.index(current) + 1
    for candidate in TIER_HIERARCHY[start:]:
        limit = TIER_CONFIG[candidate]["limits"].get(limit_type, 0)
        if limit == UNLIMITED or required_usage <= limit:
            return candidate.value
    return None


async def _count_experiences(db: AsyncSession, user_id: UUID) -> int:
    result = await db.execute(
        select(func.count()).select_from(Experience).where(Experience.user_id == user_id)
    )
    return int(result.scalar_one() or 0)


async def _exports_this_month(db: AsyncSession, user_id: UUID) -> int:
    result = await db.execute(
        select(func.coalesce(func.sum(UsageTracking.usage_count), 0)).where(
            UsageTracking.user_id == user_id,
            UsageTracking.feature == EXPORT_FEATURE,
            UsageTracking.date >= _start_of_month(),
        )
    )
    return int(result.scalar_one() or 0)


async def validate_user_action(
    db: AsyncSession,
    user_id: UUID,
    action: UserAction,
    additional_usage: int = 1,
) -> UsageValidation:
    """Can the user perform `action` without exceeding their tier limits?"""
    if action not in _ACTION_LIMITS:
        raise ValueError(f"Unknown action: {action}")

    profile = await db.get(Profile, user_id)
    if profile is None:
        return UsageValidation(
            can_perform_action=False,
            current_usage=0,
            limit=0,
            remaining=0,
            requires_upgrade=True,
            suggested_tier=PricingTier.EXPLORER.value,
        )

    tier = normalize_tier(profile.subscription_tier)
    limit_type = _ACTION_LIMITS[action]
    limit = int(TIER_CONFIG[tier]["limits"].get(limit_type, 0))

    if action == "create_experience":
        current_usage = await _count_experiences(db, user_id)
    elif action == "upload_image":
        current_usage = int(profile.storage_used or 0)
    else:
        current_usage = await _exports_this_month(db, user_id)

    if limit == UNLIMITED:
        return UsageValidation(
            can_perform_action=True,
            current_usage=current_usage,
            limit=UNLIMITED,
            remaining=UNLIMITED,
            requires_upgrade=False,
        )

    can_perform = current_usage + additional_usage <= limit
    return UsageValidation(
        can_perform_action=can_perform,
        current_usage=current_usage,
        limit=limit,
        remaining=max(0, limit - current_usage),
        requires_upgrade=not can_perform,
        suggested_tier=(
            None if can_perform else suggest_tier(tier, limit_type, current_usage + additional_usage)
        ),
    )


async def track_usage(
    db: AsyncSession, user_id: UUID, feature: str, usage_count: int = 1
) -> UsageTracking:
    """Add to today's counter for `feature` (one row per user, feature and day)."""
    today = datetime.now(timezone.utc).date()
    result = await db.execute(
        select(UsageTracking).where(
            UsageTracking.user_id == user_id,
            UsageTracking.feature == feature,
            UsageTracking.date == today,
        )
    )
    row = result.scalar_one_or_none()
    if row is None:
        row = UsageTracking(user_id=user_id, feature=feature, usage_count=usage_count, date=today)
        db.add(row)
    else:
        row.usage_count = (row.usage_count or 0) + usage_count
    await db.commit()
    logger.debug("usage_tracked", user_id=str(user_id), feature=feature, count=usage_count)
    return row


async def get_user_usage_stats(db: AsyncSession, user_id: UUID) -> dict[str, Any]:
    profile = await db.get(Profile, user_id)
    tier = normalize_tier(profile.subscription_tier) if profile else None
    return {
        "experiences": await _count_experiences(db, user_id),
        "storage": int(profile.storage_used or 0) if profile else 0,
        "exports_this_month": await _exports_this_month(db, user_id),
        "tier": tier.value if tier else None,
        "limits": dict(TIER_CONFIG[tier]["limits"]) if tier else None,
    }


async def is_subscription_active(db: AsyncSession, user_id: UUID) -> bool:
    result = await db.execute(
        select(Subscription)
        .where(
            Subscription.user_id == user_id,
            Subscription.status == SubscriptionStatus.ACTIVE.value,
        )
        .order_by(Subscription.created_at.desc())
    )
    subscription = result.scalars().first()
    if subscription is None:
        return False

    end = subscription.current_period_end
    if end is None:
        return True
    if end.tzinfo is None:
        end = end.replace(tzinfo=timezone.utc)
    return end > datetime.now(timezone.utc)
