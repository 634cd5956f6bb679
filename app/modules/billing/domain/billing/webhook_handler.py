"""Stripe webhook reconciliation: mirrors billing events into subscriptions, payments and profiles."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional
from uuid import UUID

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.payment import PaymentHistory
from app.models.profile import Profile
from app.models.subscription import Subscription, SubscriptionStatus
from app.modules.billing.domain.billing.entitlement_policy import (
    sync_profile_status,
    sync_profile_tier,
)
from app.modules.billing.domain.billing.stripe_client import StripeClient
from app.shared.core.logging import audit_log
from app.shared.core.pricing import PricingTier, get_tier, tier_from_amount

logger = structlog.get_logger()

LOG_ONLY_EVENTS = frozenset(
    {
        "customer.subscription.trial_will_end",
        "invoice.upcoming",
        "payment_method.attached",
        "setup_intent.succeeded",
    }
)


def _ts(value: Any) -> Optional[datetime]:
    if value in (None, ""):
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _first_item(subscription: dict[str, Any]) -> dict[str, Any]:
    items = (subscription.get("items") or {}).get("data") or []
    return items[0] if items else {}


def _interval(subscription: dict[str, Any]) -> str:
    price = _first_item(subscription).get("price") or {}
    recurring = price.get("recurring") or {}
    plan = subscription.get("plan") or {}
    return str(recurring.get("interval") or plan.get("interval") or "month")


def _period(subscription: dict[str, Any], key: str) -> Optional[datetime]:
    # Newer API versions moved the billing period onto subscription items
    return _ts(subscription.get(key) or _first_item(subscription).get(key))


def _invoice_subscription_id(invoice: dict[str, Any]) -> Optional[str]:
    subscription = invoice.get("subscription")
    if isinstance(subscription, dict):
        return subscription.get("id")
    if subscription:
        return str(subscription)
    details = (invoice.get("parent") or {}).get("subscription_details") or {}
    return details.get("subscription")


def _customer_id(obj: dict[str, Any]) -> Optional[str]:
    customer = obj.get("customer")
    if isinstance(customer, dict):
        return customer.get("id")
    return customer


def tier_from_subscription(subscription: dict[str, Any]) -> PricingTier:
    """
    Resolve the tier a Stripe subscription grants.

    metadata.tier wins when it names a known tier; otherwise the first
    item's price decides (yearly prices compared at their monthly rate).
    """
    metadata_tier = (subscription.get("metadata") or {}).get("tier")
    if get_tier(metadata_tier) is not None:
        return PricingTier(str(metadata_tier).strip().lower())

    price = _first_item(subscription).get("price") or subscription.get("plan") or {}
    unit_amount = price.get("unit_amount", price.get("amount"))
    if unit_amount is not None and _interval(subscription) == "year":
        unit_amount = int(unit_amount) // 10
    return tier_from_amount(unit_amount)


class StripeWebhookHandler:
    """Applies verified Stripe events to local billing state."""

    def __init__(self, db: AsyncSession, client: Optional[StripeClient] = None):
        self.db = db
        self.client = client

    async def handle(self, event: dict[str, Any]) -> None:
        event_type = str(event.get("type") or "")
        obj = (event.get("data") or {}).get("object") or {}

        handlers: dict[str, Callable[[dict[str, Any]], Awaitable[None]]] = {
            "customer.subscription.created": self._handle_subscription_created,
            "customer.subscription.updated": self._handle_subscription_updated,
            "customer.subscription.deleted": self._handle_subscription_deleted,
            "invoice.payment_succeeded": self._handle_invoice_payment_succeeded,
            "invoice.payment_failed": self._handle_invoice_payment_failed,
            "invoice.payment_action_required": self._handle_invoice_action_required,
            "payment_intent.succeeded": self._handle_payment_intent_succeeded,
            "payment_intent.payment_failed": self._handle_payment_intent_failed,
        }

        handler = handlers.get(event_type)
        if handler is None:
            if event_type in LOG_ONLY_EVENTS:
                logger.info("stripe_webhook_event_logged", event_id=event.get("id"), event_type=event_type)
            else:
                logger.info("stripe_webhook_event_unhandled", event_id=event.get("id"), event_type=event_type)
            return

        logger.info("stripe_webhook_processing", event_id=event.get("id"), event_type=event_type)
        try:
            await handler(obj)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

    # Lookups

    async def _resolve_profile(self, customer_id: Optional[str]) -> Optional[Profile]:
        """Profile by Stripe customer id, falling back to the customer's email."""
        if not customer_id:
            return None

        result = await self.db.execute(
            select(Profile).where(Profile.stripe_customer_id == customer_id)
        )
        profile = result.scalar_one_or_none()
        if profile is not None or self.client is None:
            return profile

        customer = await self.client.retrieve_customer(customer_id)
        email = customer.get("email")
        if not email:
            return None
        result = await self.db.execute(select(Profile).where(Profile.email == email))
        return result.scalar_one_or_none()

    async def _get_subscription(self, stripe_subscription_id: Optional[str]) -> Optional[Subscription]:
        if not stripe_subscription_id:
            return None
        result = await self.db.execute(
            select(Subscription).where(
                Subscription.stripe_subscription_id == stripe_subscription_id
            )
        )
        return result.scalar_one_or_none()

    async def _owner_id(
        self, customer_id: Optional[str], subscription: Optional[Subscription] = None
    ) -> Optional[UUID]:
        if subscription is not None:
            return subscription.user_id
        profile = await self._resolve_profile(customer_id)
        return profile.id if profile is not None else None

    # Subscriptions

    async def _upsert_subscription(
        self, user_id: UUID, data: dict[str, Any], tier: PricingTier
    ) -> Subscription:
        row = await self._get_subscription(data.get("id"))
        if row is None:
            row = Subscription(
                user_id=user_id,
                stripe_subscription_id=data["id"],
                stripe_customer_id=_customer_id(data) or "",
            )
            self.db.add(row)

        row.user_id = user_id
        row.stripe_price_id = (_first_item(data).get("price") or {}).get("id")
        row.tier = tier.value
        row.status = str(data.get("status") or SubscriptionStatus.INCOMPLETE.value)
        row.interval = _interval(data)
        row.current_period_start = _period(data, "current_period_start")
        row.current_period_end = _period(data, "current_period_end")
        row.cancel_at_period_end = bool(data.get("cancel_at_period_end"))
        row.canceled_at = _ts(data.get("canceled_at"))
        return row

    async def _handle_subscription_created(self, data: dict[str, Any]) -> None:
        customer_id = _customer_id(data)
        profile = await self._resolve_profile(customer_id)
        if profile is None:
            logger.warning(
                "stripe_webhook_profile_not_found",
                customer_id=customer_id,
                subscription_id=data.get("id"),
            )
            return

        tier = tier_from_subscription(data)
        status = str(data.get("status") or SubscriptionStatus.INCOMPLETE.value)
        await self._upsert_subscription(profile.id, data, tier)
        await sync_profile_tier(
            db=self.db,
            user_id=profile.id,
            tier=tier,
            status=status,
            source="stripe_webhook:subscription_created",
            stripe_customer_id=customer_id,
        )
        audit_log(
            "subscription_created",
            str(profile.id),
            {"subscription_id": data.get("id"), "tier": tier.value, "status": status},
        )

    async def _handle_subscription_updated(self, data: dict[str, Any]) -> None:
        existing = await self._get_subscription(data.get("id"))
        user_id = await self._owner_id(_customer_id(data), existing)
        if user_id is None:
            logger.warning(
                "stripe_webhook_profile_not_found",
                customer_id=_customer_id(data),
                subscription_id=data.get("id"),
            )
            return

        status = str(data.get("status") or SubscriptionStatus.ACTIVE.value)
        tier = tier_from_subscription(data)
        await self._upsert_subscription(user_id, data, tier)
        profile_tier = PricingTier.FREE if status == SubscriptionStatus.CANCELED.value else tier
        await sync_profile_tier(
            db=self.db,
            user_id=user_id,
            tier=profile_tier,
            status=status,
            source="stripe_webhook:subscription_updated",
        )
        audit_log(
            "subscription_updated",
            str(user_id),
            {
                "subscription_id": data.get("id"),
                "tier": profile_tier.value,
                "status": status,
                "cancel_at_period_end": bool(data.get("cancel_at_period_end")),
            },
        )

    async def _handle_subscription_deleted(self, data: dict[str, Any]) -> None:
        existing = await self._get_subscription(data.get("id"))
        user_id = await self._owner_id(_customer_id(data), existing)
        if user_id is None:
            logger.warning(
                "stripe_webhook_profile_not_found",
                customer_id=_customer_id(data),
                subscription_id=data.get("id"),
            )
            return

        if existing is not None:
            existing.status = SubscriptionStatus.CANCELED.value
            existing.canceled_at = _ts(data.get("canceled_at")) or datetime.now(timezone.utc)
            existing.cancel_at_period_end = False

        await sync_profile_tier(
            db=self.db,
            user_id=user_id,
            tier=PricingTier.FREE,
            status=SubscriptionStatus.CANCELED.value,
            source="stripe_webhook:subscription_deleted",
        )
        audit_log("subscription_canceled", str(user_id), {"subscription_id": data.get("id")})

    # Invoices

    async def _set_subscription_status(
        self, data: dict[str, Any], status: SubscriptionStatus, source: str
    ) -> Optional[UUID]:
        existing = await self._get_subscription(_invoice_subscription_id(data))
        user_id = await self._owner_id(_customer_id(data), existing)
        if user_id is None:
            return None
        if existing is not None:
            existing.status = status.value
        await sync_profile_status(db=self.db, user_id=user_id, status=status.value, source=source)
        return user_id

    async def _record_payment(
        self,
        user_id: UUID,
        *,
        amount: int,
        currency: str,
        status: str,
        description: Optional[str],
        payment_intent_id: Optional[str] = None,
        invoice_id: Optional[str] = None,
    ) -> PaymentHistory:
        row = PaymentHistory(
            user_id=user_id,
            stripe_payment_intent_id=payment_intent_id,
            stripe_invoice_id=invoice_id,
            amount=int(amount or 0),
            currency=str(currency or "usd").lower(),
            status=status,
            description=description,
        )
        self.db.add(row)
        return row

    async def _handle_invoice_payment_succeeded(self, data: dict[str, Any]) -> None:
        existing = await self._get_subscription(_invoice_subscription_id(data))
        user_id = await self._owner_id(_customer_id(data), existing)
        if user_id is None:
            logger.warning("stripe_webhook_profile_not_found", invoice_id=data.get("id"))
            return

        await self._record_payment(
            user_id,
            amount=data.get("amount_paid") or 0,
            currency=data.get("currency") or "usd",
            status="succeeded",
            description=data.get("description") or f"Invoice {data.get('number') or data.get('id')}",
            payment_intent_id=data.get("payment_intent"),
            invoice_id=data.get("id"),
        )
        if existing is not None and existing.status == SubscriptionStatus.PAST_DUE.value:
            existing.status = SubscriptionStatus.ACTIVE.value
            await sync_profile_status(
                db=self.db,
                user_id=user_id,
                status=SubscriptionStatus.ACTIVE.value,
                source="stripe_webhook:invoice_paid",
            )
        audit_log(
            "payment_succeeded",
            str(user_id),
            {"invoice_id": data.get("id"), "amount": data.get("amount_paid")},
        )

    async def _handle_invoice_payment_failed(self, data: dict[str, Any]) -> None:
        user_id = await self._set_subscription_status(
            data, SubscriptionStatus.PAST_DUE, "stripe_webhook:invoice_payment_failed"
        )
        if user_id is None:
            logger.warning("stripe_webhook_profile_not_found", invoice_id=data.get("id"))
            return

        await self._record_payment(
            user_id,
            amount=data.get("amount_due") or 0,
            currency=data.get("currency") or "usd",
            status="failed",
            description=f"Payment failed for invoice {data.get('number') or data.get('id')}",
            payment_intent_id=data.get("payment_intent"),
            invoice_id=data.get("id"),
        )
        audit_log(
            "payment_failed",
            str(user_id),
            {"invoice_id": data.get("id"), "amount": data.get("amount_due")},
        )

    async def _handle_invoice_action_required(self, data: dict[str, Any]) -> None:
        user_id = await self._set_subscription_status(
            data, SubscriptionStatus.INCOMPLETE, "stripe_webhook:invoice_action_required"
        )
        if user_id is None:
            logger.warning("stripe_webhook_profile_not_found", invoice_id=data.get("id"))

    # Payment intents

    async def _handle_payment_intent(self, data: dict[str, Any], status: str) -> None:
        user_id = await self._owner_id(_customer_id(data))
        if user_id is None:
            logger.warning(
                "stripe_webhook_profile_not_found", payment_intent_id=data.get("id")
            )
            return

        amount = data.get("amount_received") if status == "succeeded" else None
        await self._record_payment(
            user_id,
            amount=amount or data.get("amount") or 0,
            currency=data.get("currency") or "usd",
            status=status,
            description=data.get("description"),
            payment_intent_id=data.get("id"),
            invoice_id=data.get("invoice"),
        )

    async def _handle_payment_intent_succeeded(self, data: dict[str, Any]) -> None:
        await self._handle_payment_intent(data, "succeeded")

    async def _handle_payment_intent_failed(self, data: dict[str, Any]) -> None:
        await self._handle_payment_intent(data, "failed")
