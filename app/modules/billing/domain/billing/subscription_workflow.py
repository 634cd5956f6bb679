"""
Subscription lifecycle workflows: plan changes, cancellation and payment recovery.

Stripe calls run under PaymentRetryManager. Local state is written after
Stripe accepts the change; webhooks later confirm the same state.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional, TypeVar
from uuid import UUID

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.payment import PaymentHistory
from app.models.subscription import ACTIVE_STATUSES, Subscription, SubscriptionStatus
from app.modules.billing.domain.billing.entitlement_policy import sync_profile_tier
from app.modules.billing.domain.billing.payment_errors import (
    PaymentRetryManager,
    handle_stripe_error,
)
from app.modules.billing.domain.billing.stripe_client import StripeClient
from app.shared.core.logging import audit_log
from app.shared.core.pricing import TIER_HIERARCHY, PricingTier, get_tier

logger = structlog.get_logger()
T = TypeVar("T")

VALID_INTERVALS = ("month", "year")


@dataclass
class WorkflowResult:
    success: bool
    data: dict[str, Any] = field(default_factory=dict)
    error: Optional[dict[str, Any]] = None


def _failure(code: str, message: str, action: str = "contact_support") -> WorkflowResult:
    return WorkflowResult(
        success=False,
        error={
            "code": code,
            "message": message,
            "user_message": message,
            "action": action,
            "retryable": False,
        },
    )


def _ts(value: Any) -> Optional[datetime]:
    if value in (None, ""):
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _first_item(stripe_sub: dict[str, Any]) -> dict[str, Any]:
    items = (stripe_sub.get("items") or {}).get("data") or []
    return items[0] if items else {}


def _period(stripe_sub: dict[str, Any], key: str) -> Optional[int]:
    return stripe_sub.get(key) or _first_item(stripe_sub).get(key)


def _is_proration(line: dict[str, Any]) -> bool:
    if "proration" in line:
        return bool(line["proration"])
    details = (line.get("parent") or {}).get("subscription_item_details") or {}
    return bool(details.get("proration"))


def tier_price(tier: PricingTier, interval: str) -> int:
    config = get_tier(tier) or {}
    key = "price_yearly" if interval == "year" else "price_monthly"
    return int(config.get(key, 0))


class SubscriptionWorkflow:
    def __init__(
        self,
        db: AsyncSession,
        client: StripeClient,
        retry_manager: Optional[PaymentRetryManager] = None,
    ):
        self.db = db
        self.client = client
        self.retry_manager = retry_manager or PaymentRetryManager()

    async def _stripe(self, context: str, operation: Callable[[], Awaitable[T]]) -> T:
        return await self.retry_manager.execute_with_retry(operation, context=context)

    def _stripe_failure(self, context: str, user_id: UUID, exc: Exception) -> WorkflowResult:
        details = handle_stripe_error(exc)
        logger.error(
            "subscription_workflow_failed",
            context=context,
            user_id=str(user_id),
            code=details.code,
            error=details.message,
        )
        return WorkflowResult(success=False, error=details.to_dict())

    async def get_active_subscription(self, user_id: UUID) -> Optional[Subscription]:
        result = await self.db.execute(
            select(Subscription)
            .where(
                Subscription.user_id == user_id,
                Subscription.status.in_(ACTIVE_STATUSES | {SubscriptionStatus.PAST_DUE.value}),
            )
            .order_by(Subscription.created_at.desc())
        )
        return result.scalars().first()

    async def _create_plan_price(self, tier: PricingTier, interval: str) -> dict[str, Any]:
        config = get_tier(tier) or {}
        return await self.client.create_price(
            unit_amount=tier_price(tier, interval),
            interval=interval,
            product_name=f"{config.get('name', tier.value.title())} Plan",
            metadata={"tier": tier.value, "interval": interval},
        )

    @staticmethod
    def _resolve(tier: str, interval: str) -> Optional[PricingTier]:
        if interval not in VALID_INTERVALS or get_tier(tier) is None:
            return None
        return PricingTier(str(tier).strip().lower())

    async def upgrade(self, user_id: UUID, tier: str, interval: str = "month") -> WorkflowResult:
        """Swap the subscription onto the new tier's price with prorations."""
        new_tier = self._resolve(tier, interval)
        if new_tier is None:
            return _failure("INVALID_TIER", f"Invalid tier or interval: {tier}/{interval}")

        sub = await self.get_active_subscription(user_id)
        if sub is None:
            return _failure("NO_SUBSCRIPTION", "No active subscription found")
        subscription_id = sub.stripe_subscription_id
        price_id: Optional[str] = None

        async def _change() -> dict[str, Any]:
            nonlocal price_id
            stripe_sub = await self.client.retrieve_subscription(subscription_id)
            # Retries reuse the price so a failed update leaves no orphans
            if price_id is None:
                price_id = (await self._create_plan_price(new_tier, interval))["id"]
            return await self.client.update_subscription(
                subscription_id,
                items=[{"id": _first_item(stripe_sub).get("id"), "price": price_id}],
                metadata={"tier": new_tier.value, "interval": interval},
                proration_behavior="create_prorations",
            )

        try:
            updated = await self._stripe("subscription_upgrade", _change)
        except Exception as e:
            return self._stripe_failure("subscription_upgrade", user_id, e)

        sub.tier = new_tier.value
        sub.interval = interval
        sub.stripe_price_id = (_first_item(updated).get("price") or {}).get("id")
        sub.current_period_start = _ts(_period(updated, "current_period_start")) or sub.current_period_start
        sub.current_period_end = _ts(_period(updated, "current_period_end")) or sub.current_period_end
        await sync_profile_tier(
            db=self.db,
            user_id=user_id,
            tier=new_tier,
            status=sub.status,
            source="subscription_workflow:upgrade",
        )
        await self.db.commit()
        audit_log(
            "subscription_tier_changed",
            str(user_id),
            {"subscription_id": subscription_id, "tier": new_tier.value, "interval": interval},
        )
        return WorkflowResult(
            success=True,
            data={
                "subscription_id": subscription_id,
                "tier": new_tier.value,
                "interval": interval,
                "current_period_end": _iso(sub.current_period_end),
            },
        )

    async def downgrade(
        self, user_id: UUID, tier: str, interval: str = "month", immediate: bool = False
    ) -> WorkflowResult:
        """Move to a lower tier now, or at the end of the current period."""
        if immediate:
            return await self.upgrade(user_id, tier, interval)

        new_tier = self._resolve(tier, interval)
        if new_tier is None:
            return _failure("INVALID_TIER", f"Invalid tier or interval: {tier}/{interval}")

        sub = await self.get_active_subscription(user_id)
        if sub is None:
            return _failure("NO_SUBSCRIPTION", "No active subscription found")
        subscription_id = sub.stripe_subscription_id
        price_id: Optional[str] = None

        async def _schedule() -> tuple[dict[str, Any], dict[str, Any]]:
            nonlocal price_id
            stripe_sub = await self.client.retrieve_subscription(subscription_id)
            if price_id is None:
                price_id = (await self._create_plan_price(new_tier, interval))["id"]
            current_price = (_first_item(stripe_sub).get("price") or {}).get("id")
            schedule = await self.client.create_subscription_schedule(
                subscription_id,
                phases=[
                    {
                        "items": [{"price": current_price, "quantity": 1}],
                        "start_date": _period(stripe_sub, "current_period_start"),
                        "end_date": _period(stripe_sub, "current_period_end"),
                    },
                    {
                        "items": [{"price": price_id, "quantity": 1}],
                        "iterations": 1,
                        "metadata": {"tier": new_tier.value, "interval": interval},
                    },
                ],
            )
            return stripe_sub, schedule

        try:
            stripe_sub, schedule = await self._stripe("subscription_downgrade", _schedule)
        except Exception as e:
            return self._stripe_failure("subscription_downgrade", user_id, e)

        effective = _ts(_period(stripe_sub, "current_period_end")) or sub.current_period_end
        audit_log(
            "subscription_downgrade_scheduled",
            str(user_id),
            {
                "subscription_id": subscription_id,
                "schedule_id": schedule.get("id"),
                "tier": new_tier.value,
                "effective_date": _iso(effective),
            },
        )
        return WorkflowResult(
            success=True,
            data={
                "schedule_id": schedule.get("id"),
                "tier": new_tier.value,
                "interval": interval,
                "effective_date": _iso(effective),
            },
        )

    async def cancel(self, user_id: UUID, at_period_end: bool = True) -> WorkflowResult:
        sub = await self.get_active_subscription(user_id)
        if sub is None:
            return _failure("NO_SUBSCRIPTION", "No active subscription found")
        subscription_id = sub.stripe_subscription_id

        async def _cancel() -> dict[str, Any]:
            if at_period_end:
                return await self.client.update_subscription(
                    subscription_id, cancel_at_period_end=True
                )
            return await self.client.cancel_subscription(subscription_id)

        try:
            await self._stripe("subscription_cancel", _cancel)
        except Exception as e:
            return self._stripe_failure("subscription_cancel", user_id, e)

        if at_period_end:
            sub.cancel_at_period_end = True
        else:
            sub.status = SubscriptionStatus.CANCELED.value
            sub.canceled_at = datetime.now(timezone.utc)
            sub.cancel_at_period_end = False
            await sync_profile_tier(
                db=self.db,
                user_id=user_id,
                tier=PricingTier.FREE,
                status=SubscriptionStatus.CANCELED.value,
                source="subscription_workflow:cancel",
            )
        await self.db.commit()
        audit_log(
            "subscription_cancel_requested",
            str(user_id),
            {"subscription_id": subscription_id, "at_period_end": at_period_end},
        )
        return WorkflowResult(
            success=True,
            data={
                "subscription_id": subscription_id,
                "cancel_at_period_end": at_period_end,
                "status": sub.status,
                "current_period_end": _iso(sub.current_period_end),
            },
        )

    async def reactivate(self, user_id: UUID) -> WorkflowResult:
        """Undo a pending period-end cancellation."""
        sub = await self.get_active_subscription(user_id)
        if sub is None:
            return _failure("NO_SUBSCRIPTION", "No active subscription found")
        subscription_id = sub.stripe_subscription_id

        async def _reactivate() -> dict[str, Any]:
            return await self.client.update_subscription(
                subscription_id, cancel_at_period_end=False
            )

        try:
            await self._stripe("subscription_reactivate", _reactivate)
        except Exception as e:
            return self._stripe_failure("subscription_reactivate", user_id, e)

        sub.cancel_at_period_end = False
        sub.status = SubscriptionStatus.ACTIVE.value
        await sync_profile_tier(
            db=self.db,
            user_id=user_id,
            tier=sub.tier,
            status=SubscriptionStatus.ACTIVE.value,
            source="subscription_workflow:reactivate",
        )
        await self.db.commit()
        audit_log("subscription_reactivated", str(user_id), {"subscription_id": subscription_id})
        return WorkflowResult(
            success=True,
            data={"subscription_id": subscription_id, "status": sub.status, "tier": sub.tier},
        )

    async def handle_payment_failure(self, user_id: UUID, invoice_id: str) -> WorkflowResult:
        """Retry payment of an open invoice and record the outcome."""

        async def _collect() -> tuple[dict[str, Any], bool]:
            invoice = await self.client.retrieve_invoice(invoice_id)
            if invoice.get("status") == "paid":
                return invoice, False
            return await self.client.pay_invoice(invoice_id), True

        try:
            invoice, charged = await self._stripe("invoice_payment_retry", _collect)
        except Exception as e:
            details = handle_stripe_error(e)
            self.db.add(
                PaymentHistory(
                    user_id=user_id,
                    stripe_invoice_id=invoice_id,
                    amount=0,
                    currency="usd",
                    status="failed",
                    description=f"Payment retry failed: {details.message}",
                )
            )
            await self.db.commit()
            return self._stripe_failure("invoice_payment_retry", user_id, e)

        if not charged:
            return WorkflowResult(success=True, data={"message": "Invoice already paid"})

        self.db.add(
            PaymentHistory(
                user_id=user_id,
                stripe_payment_intent_id=invoice.get("payment_intent"),
                stripe_invoice_id=invoice_id,
                amount=int(invoice.get("amount_paid") or 0),
                currency=str(invoice.get("currency") or "usd"),
                status="succeeded",
                description="Payment retry successful",
            )
        )
        await self.db.commit()
        audit_log("invoice_payment_recovered", str(user_id), {"invoice_id": invoice_id})
        return WorkflowResult(
            success=True,
            data={"invoice_id": invoice_id, "status": invoice.get("status"), "amount_paid": invoice.get("amount_paid")},
        )

    async def get_change_preview(
        self, user_id: UUID, tier: str, interval: str = "month"
    ) -> WorkflowResult:
        """Price a plan change without applying it."""
        sub = await self.get_active_subscription(user_id)
        if sub is None:
            return _failure("NO_SUBSCRIPTION", "No active subscription found")
        new_tier = self._resolve(tier, interval)
        if new_tier is None:
            return _failure("INVALID_TIER", f"Invalid tier or interval: {tier}/{interval}")

        current_tier = PricingTier(sub.tier) if get_tier(sub.tier) else PricingTier.FREE
        subscription_id = sub.stripe_subscription_id
        temp_price_id: Optional[str] = None

        async def _preview() -> dict[str, Any]:
            nonlocal temp_price_id
            stripe_sub = await self.client.retrieve_subscription(subscription_id)
            if temp_price_id is None:
                price = await self._create_plan_price(new_tier, interval)
                temp_price_id = price["id"]
            return await self.client.upcoming_invoice(
                customer=sub.stripe_customer_id,
                subscription=subscription_id,
                subscription_items=[{"id": _first_item(stripe_sub).get("id"), "price": temp_price_id}],
                subscription_proration_behavior="create_prorations",
            )

        try:
            upcoming = await self._stripe("subscription_change_preview", _preview)
        except Exception as e:
            return self._stripe_failure("subscription_change_preview", user_id, e)
        finally:
            if temp_price_id is not None:
                await self._deactivate_temp_price(temp_price_id)

        lines = (upcoming.get("lines") or {}).get("data") or []
        proration_amount = sum(int(line.get("amount") or 0) for line in lines if _is_proration(line))
        next_billing = _ts(upcoming.get("next_payment_attempt") or upcoming.get("period_end"))

        return WorkflowResult(
            success=True,
            data={
                "current_tier": current_tier.value,
                "new_tier": new_tier.value,
                "is_upgrade": TIER_HIERARCHY.index(new_tier) > TIER_HIERARCHY.index(current_tier),
                "proration_amount": proration_amount,
                "immediate_charge": max(proration_amount, 0),
                "credit_amount": abs(min(proration_amount, 0)),
                "next_billing_date": _iso(next_billing),
                "new_monthly_price": tier_price(new_tier, "month"),
                "new_billing_amount": int(upcoming.get("amount_due") or 0),
                "interval": interval,
            },
        )

    async def _deactivate_temp_price(self, price_id: str) -> None:
        try:
            await self.client.deactivate_price(price_id)
        except Exception as e:
            logger.warning("preview_price_deactivation_failed", price_id=price_id, error=str(e))
