"""Checkout, portal and read-side billing queries."""

from __future__ import annotations

from typing import Any, Optional
from uuid import UUID

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.payment import PaymentHistory
from app.models.profile import Profile
from app.models.subscription import Subscription
from app.modules.billing.domain.billing.stripe_client import StripeClient
from app.modules.billing.domain.billing.subscription_workflow import tier_price
from app.shared.core.config import get_settings
from app.shared.core.exceptions import BillingError, ResourceNotFoundError
from app.shared.core.logging import audit_log
from app.shared.core.pricing import TIER_CONFIG, PricingTier, get_tier

logger = structlog.get_logger()

_INTERVAL_ALIASES = {"month": "month", "monthly": "month", "year": "year", "yearly": "year"}


def normalize_interval(interval: str) -> str:
    try:
        return _INTERVAL_ALIASES[str(interval).strip().lower()]
    except KeyError as exc:
        raise BillingError(f"Invalid billing interval: {interval}", code="invalid_interval") from exc


class BillingService:
    def __init__(self, db: AsyncSession, client: Optional[StripeClient] = None):
        self.db = db
        self.client = client

    def _stripe(self) -> StripeClient:
        if self.client is None:
            self.client = StripeClient()
        return self.client

    @staticmethod
    def get_public_config() -> dict[str, Any]:
        """Tier catalogue and whether Stripe is configured (no secrets)."""
        settings = get_settings()
        return {
            "success": True,
            "tiers": [
                {
                    "id": tier.value,
                    "name": config["name"],
                    "price_monthly": config["price_monthly"],
                    "price_yearly": config["price_yearly"],
                    "features": list(config["features"]),
                    "limits": dict(config["limits"]),
                }
                for tier, config in TIER_CONFIG.items()
            ],
            "publishable_key": settings.STRIPE_PUBLISHABLE_KEY,
            "publishable_key_status": "configured" if settings.STRIPE_PUBLISHABLE_KEY else "missing",
        }

    async def _get_profile(self, user_id: UUID) -> Profile:
        profile = await self.db.get(Profile, user_id)
        if profile is None:
            raise ResourceNotFoundError("User not found")
        return profile

    async def ensure_customer(self, profile: Profile) -> str:
        """Return the profile's Stripe customer id, creating the customer on first use."""
        if profile.stripe_customer_id:
            return profile.stripe_customer_id

        customer = await self._stripe().create_customer(
            email=profile.email,
            name=profile.full_name,
            metadata={"user_id": str(profile.id)},
        )
        profile.stripe_customer_id = customer["id"]
        await self.db.commit()
        logger.info("stripe_customer_created", user_id=str(profile.id), customer_id=customer["id"])
        return customer["id"]

    async def create_checkout_session(
        self, user_id: UUID, tier: str, interval: str = "month"
    ) -> dict[str, Any]:
        config = get_tier(tier)
        if config is None:
            raise BillingError(f"Invalid tier ID: {tier}", code="invalid_tier")
        resolved = PricingTier(str(tier).strip().lower())
        if resolved is PricingTier.FREE:
            raise BillingError("The free tier does not require checkout", code="invalid_tier")
        interval = normalize_interval(interval)

        profile = await self._get_profile(user_id)
        customer_id = await self.ensure_customer(profile)
        frontend = get_settings().FRONTEND_URL.rstrip("/")
        metadata = {"user_id": str(user_id), "tier": resolved.value, "interval": interval}

        session = await self._stripe().create_checkout_session(
            customer_id=customer_id,
            unit_amount=tier_price(resolved, interval),
            interval=interval,
            product_name=f"{config['name']} Plan",
            success_url=f"{frontend}/dashboard?session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=f"{frontend}/dashboard",
            metadata=metadata,
            client_reference_id=str(user_id),
        )
        audit_log("checkout_session_created", str(user_id), {"tier": resolved.value, "interval": interval})
        return {"session_id": session["id"], "url": session.get("url")}

    async def create_portal_session(self, user_id: UUID) -> dict[str, Any]:
        profile = await self._get_profile(user_id)
        if not profile.stripe_customer_id:
            raise BillingError("No billing account found", code="no_customer")
        frontend = get_settings().FRONTEND_URL.rstrip("/")
        session = await self._stripe().create_portal_session(
            profile.stripe_customer_id, return_url=f"{frontend}/dashboard/billing"
        )
        return {"url": session["url"]}

    async def get_payment_history(
        self, user_id: UUID, limit: int = 20, offset: int = 0
    ) -> list[PaymentHistory]:
        result = await self.db.execute(
            select(PaymentHistory)
            .where(PaymentHistory.user_id == user_id)
            .order_by(PaymentHistory.created_at.desc())
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all())

    async def get_subscription(self, user_id: UUID) -> Optional[Subscription]:
        """Most recent subscription row for the user, whatever its status."""
        result = await self.db.execute(
            select(Subscription)
            .where(Subscription.user_id == user_id)
            .order_by(Subscription.created_at.desc())
        )
        return result.scalars().first()
