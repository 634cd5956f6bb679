from dataclasses import dataclass
from enum import Enum
from functools import lru_cache
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Optional, Union

from fastapi import Depends, HTTPException, status

import structlog

if TYPE_CHECKING:
    from app.shared.core.auth import CurrentUser

logger = structlog.get_logger()

__all__ = [
    "PricingTier",
    "FeatureFlag",
    "TIER_CONFIG",
    "TIER_HIERARCHY",
    "FEATURE_REQUIREMENTS",
    "FeatureAccess",
    "normalize_tier",
    "get_tier_config",
    "get_tier",
    "format_price",
    "can_access_tier",
    "is_feature_enabled",
    "get_tier_limit",
    "check_usage_limit",
    "check_feature_access",
    "check_usage_limits",
    "get_upgrade_message",
    "tier_from_amount",
    "requires_tier",
    "requires_feature",
]

UNLIMITED = -1


class PricingTier(str, Enum):
    """Available subscription tiers."""

    FREE = "free"
    EXPLORER = "explorer"
    TRAVELER = "traveler"
    ENTERPRISE = "enterprise"


class FeatureFlag(str, Enum):
    """Feature flags for tier gating."""

    UNLIMITED_EXPERIENCES = "unlimited_experiences"
    ADVANCED_ANALYTICS = "advanced_analytics"
    EXPORT_DATA = "export_data"
    PRIORITY_SUPPORT = "priority_support"
    CUSTOM_THEMES = "custom_themes"
    API_ACCESS = "api_access"
    BULK_OPERATIONS = "bulk_operations"
    ADVANCED_SEARCH = "advanced_search"
    COLLABORATION = "collaboration"
    WHITE_LABEL = "white_label"


TIER_HIERARCHY: list[PricingTier] = [
    PricingTier.FREE,
    PricingTier.EXPLORER,
    PricingTier.TRAVELER,
    PricingTier.ENTERPRISE,
]

# Tiers that unlock each feature, lowest first.
FEATURE_REQUIREMENTS: dict[FeatureFlag, list[PricingTier]] = {
    FeatureFlag.UNLIMITED_EXPERIENCES: [PricingTier.TRAVELER, PricingTier.ENTERPRISE],
    FeatureFlag.ADVANCED_ANALYTICS: [PricingTier.TRAVELER, PricingTier.ENTERPRISE],
    FeatureFlag.EXPORT_DATA: [
        PricingTier.EXPLORER,
        PricingTier.TRAVELER,
        PricingTier.ENTERPRISE,
    ],
    FeatureFlag.PRIORITY_SUPPORT: [PricingTier.TRAVELER, PricingTier.ENTERPRISE],
    FeatureFlag.CUSTOM_THEMES: [PricingTier.TRAVELER, PricingTier.ENTERPRISE],
    FeatureFlag.API_ACCESS: [PricingTier.ENTERPRISE],
    FeatureFlag.BULK_OPERATIONS: [PricingTier.TRAVELER, PricingTier.ENTERPRISE],
    FeatureFlag.ADVANCED_SEARCH: [
        PricingTier.EXPLORER,
        PricingTier.TRAVELER,
        PricingTier.ENTERPRISE,
    ],
    FeatureFlag.COLLABORATION: [PricingTier.TRAVELER, PricingTier.ENTERPRISE],
    FeatureFlag.WHITE_LABEL: [PricingTier.ENTERPRISE],
}

FEATURE_DISPLAY_NAMES: dict[FeatureFlag, str] = {
    FeatureFlag.UNLIMITED_EXPERIENCES: "unlimited experiences",
    FeatureFlag.ADVANCED_ANALYTICS: "advanced analytics",
    FeatureFlag.EXPORT_DATA: "data export",
    FeatureFlag.PRIORITY_SUPPORT: "priority support",
    FeatureFlag.CUSTOM_THEMES: "custom themes",
    FeatureFlag.API_ACCESS: "API access",
    FeatureFlag.BULK_OPERATIONS: "bulk operations",
    FeatureFlag.ADVANCED_SEARCH: "advanced search",
    FeatureFlag.COLLABORATION: "collaboration features",
    FeatureFlag.WHITE_LABEL: "white label features",
}


# Tier configuration - prices in USD cents, storage in bytes, -1 = unlimited
TIER_CONFIG: dict[PricingTier, dict[str, Any]] = {
    PricingTier.FREE: {
        "name": "Free",
        "price_monthly": 0,
        "price_yearly": 0,
        "features": [
            "Basic experience sharing",
            "5 experiences",
            "Community support",
        ],
        "limits": {
            "experiences": 5,
            "storage": 52428800,  # 50MB
            "exports": 1,
        },
        "stripe_product_id": "prod_free",
    },
    PricingTier.EXPLORER: {
        "name": "Explorer",
        "price_monthly": 999,
        "price_yearly": 9990,  # 2 months free
        "features": [
            "Advanced features",
            "50 experiences",
            "Email support",
            "Export capabilities",
        ],
        "limits": {
            "experiences": 50,
            "storage": 524288000,  # 500MB
            "exports": 10,
        },
        "stripe_product_id": "prod_explorer",
    },
    PricingTier.TRAVELER: {
        "name": "Traveler",
        "price_monthly": 1999,
        "price_yearly": 19990,
        "features": [
            "Premium features",
            "Unlimited experiences",
            "Priority support",
            "Advanced analytics",
        ],
        "limits": {
            "experiences": UNLIMITED,
            "storage": 5368709120,  # 5GB
            "exports": UNLIMITED,
        },
        "stripe_product_id": "prod_traveler",
    },
    PricingTier.ENTERPRISE: {
        "name": "Enterprise",
        "price_monthly": 4999,
        "price_yearly": 49990,
        "features": [
            "All features",
            "Custom limits",
            "Dedicated support",
            "API access",
            "White-label options",
        ],
        "limits": {
            "experiences": UNLIMITED,
            "storage": UNLIMITED,
            "exports": UNLIMITED,
        },
        "stripe_product_id": "prod_enterprise",
    },
}


@dataclass(frozen=True)
class FeatureAccess:
    has_access: bool
    reason: Optional[str] = None
    upgrade_required: Optional[PricingTier] = None


def normalize_tier(tier: PricingTier | str | None) -> PricingTier:
    """Map arbitrary tier values to a supported PricingTier."""
    if isinstance(tier, PricingTier):
        return tier
    if isinstance(tier, str):
        candidate = tier.strip().lower()
        try:
            return PricingTier(candidate)
        except ValueError:
            return PricingTier.FREE
    return PricingTier.FREE


def get_tier(tier: PricingTier | str | None) -> Optional[dict[str, Any]]:
    """Strict lookup: None for unknown tier ids."""
    if tier is None:
        return None
    try:
        resolved = tier if isinstance(tier, PricingTier) else PricingTier(str(tier).strip().lower())
    except ValueError:
        return None
    return TIER_CONFIG[resolved]


def get_tier_config(tier: PricingTier | str | None) -> dict[str, Any]:
    """Get configuration for a tier, falling back to free."""
    return TIER_CONFIG[normalize_tier(tier)]


def format_price(price_in_cents: int) -> str:
    """999 -> '$9.99'"""
    return f"${price_in_cents / 100:,.2f}"


def can_access_tier(user_tier: PricingTier | str | None, required_tier: PricingTier | str) -> bool:
    """True when user_tier sits at or above required_tier in the hierarchy."""
    user_level = TIER_HIERARCHY.index(normalize_tier(user_tier))
    required_level = TIER_HIERARCHY.index(normalize_tier(required_tier))
    return user_level >= required_level


def _coerce_feature(feature: str | FeatureFlag) -> Optional[FeatureFlag]:
    if isinstance(feature, FeatureFlag):
        return feature
    try:
        return FeatureFlag(feature)
    except ValueError:
        return None


def is_feature_enabled(tier: PricingTier | str | None, feature: str | FeatureFlag) -> bool:
    """Check if a feature is enabled for a tier."""
    flag = _coerce_feature(feature)
    if flag is None:
        return False
    return normalize_tier(tier) in FEATURE_REQUIREMENTS[flag]


def get_tier_limit(tier: PricingTier | str | None, limit_name: str) -> int:
    """Get a limit value for a tier (-1 = unlimited, 0 for unknown limits)."""
    limits: dict[str, int] = get_tier_config(tier).get("limits", {})
    return int(limits.get(limit_name, 0))


def check_usage_limit(
    tier: PricingTier | str | None, limit_type: str, current_usage: int
) -> dict[str, Any]:
    """
    Compare usage against a tier limit.

    Unknown tiers get nothing (allowed=False); unlimited limits report -1
    for both limit and remaining.
    """
    config = get_tier(tier)
    if config is None:
        return {"allowed": False, "limit": 0, "remaining": 0}

    limit = int(config["limits"].get(limit_type, 0))
    if limit == UNLIMITED:
        return {"allowed": True, "limit": UNLIMITED, "remaining": UNLIMITED}

    return {
        "allowed": current_usage < limit,
        "limit": limit,
        "remaining": max(0, limit - current_usage),
    }


def _profile_is_admin(profile: Any) -> bool:
    if getattr(profile, "is_admin", False):
        return True
    role = getattr(profile, "role", None)
    role_value = getattr(role, "value", role)
    return str(role_value or "").lower() in {"admin", "owner"}


def _profile_tier(profile: Any) -> PricingTier:
    raw = getattr(profile, "subscription_tier", None) or getattr(profile, "tier", None)
    return normalize_tier(raw)


def check_feature_access(profile: Any, feature: str | FeatureFlag) -> FeatureAccess:
    """
    Resolve whether a profile may use a feature.

    Admins always pass. Anonymous callers are pointed at the explorer plan.
    """
    if profile is None:
        return FeatureAccess(
            has_access=False,
            reason="Authentication required",
            upgrade_required=PricingTier.EXPLORER,
        )

    if _profile_is_admin(profile):
        return FeatureAccess(has_access=True)

    flag = _coerce_feature(feature)
    if flag is None:
        return FeatureAccess(has_access=False, reason=f"Unknown feature: {feature}")

    allowed = FEATURE_REQUIREMENTS[flag]
    if _profile_tier(profile) in allowed:
        return FeatureAccess(has_access=True)

    required = allowed[0]
    return FeatureAccess(
        has_access=False,
        reason=f"This feature requires {TIER_CONFIG[required]['name']} plan.",
        upgrade_required=required,
    )


def check_usage_limits(profile: Any, limit_type: str, current_usage: int) -> dict[str, Any]:
    """Per-profile view of a single limit: current, limit and can_add."""
    if profile is None:
        return {"current": 0, "limit": 0, "can_add": False}

    limit = get_tier_limit(_profile_tier(profile), limit_type)
    return {
        "current": current_usage,
        "limit": limit,
        "can_add": limit == UNLIMITED or current_usage < limit,
    }


def get_upgrade_message(
    feature: str | FeatureFlag, required_tier: PricingTier | str | None = None
) -> str:
    flag = _coerce_feature(feature)
    if flag is None:
        raise ValueError(f"Unknown feature: {feature}")
    tier = normalize_tier(required_tier) if required_tier else FEATURE_REQUIREMENTS[flag][0]
    return f"Upgrade to {TIER_CONFIG[tier]['name']} to unlock {FEATURE_DISPLAY_NAMES[flag]}."


def tier_from_amount(unit_amount: Optional[int]) -> PricingTier:
    """Infer a tier from a monthly price in cents."""
    if not unit_amount or unit_amount <= 0:
        return PricingTier.FREE
    if unit_amount <= TIER_CONFIG[PricingTier.EXPLORER]["price_monthly"]:
        return PricingTier.EXPLORER
    if unit_amount <= TIER_CONFIG[PricingTier.TRAVELER]["price_monthly"]:
        return PricingTier.TRAVELER
    return PricingTier.ENTERPRISE


@lru_cache(maxsize=64)
def requires_tier(
    required_tier: Union[PricingTier, str],
) -> Callable[..., Awaitable["CurrentUser"]]:
    """
    Dependency requiring a minimum tier for an endpoint.

    Usage:
        @router.get("/analytics")
        async def analytics(user: CurrentUser = Depends(requires_tier("traveler"))):
            ...
    """
    from app.shared.core.auth import CurrentUser, get_current_user

    minimum = normalize_tier(required_tier)

    async def tier_checker(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
        if _profile_is_admin(user) or can_access_tier(user.tier, minimum):
            return user
        logger.info(
            "tier_gate_denied",
            user_id=str(user.id),
            tier=user.tier.value,
            required_tier=minimum.value,
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"This feature requires {TIER_CONFIG[minimum]['name']} plan.",
        )

    return tier_checker


@lru_cache(maxsize=64)
def requires_feature(
    feature_name: Union[str, FeatureFlag],
) -> Callable[..., Awaitable["CurrentUser"]]:
    """Dependency to check if a feature is enabled for the user's tier."""
    from app.shared.core.auth import CurrentUser, get_current_user

    async def feature_checker(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
        access = check_feature_access(user, feature_name)
        if not access.has_access:
            detail = access.reason or "Upgrade required"
            if access.upgrade_required is not None:
                detail = get_upgrade_message(feature_name, access.upgrade_required)
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=detail)
        return user

    return feature_checker
