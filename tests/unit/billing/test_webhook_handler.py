"""
Tests for StripeWebhookHandler: each Stripe event type is mirrored into
subscriptions, payment history and the profile entitlement.
"""
from datetime import datetime, timezone
from unittest.mock import AsyncMock, patch

import httpx
import pytest
import respx
from sqlalchemy import select

from app.models.payment import PaymentHistory
from app.models.subscription import Subscription
from app.modules.billing.domain.billing.webhook_handler import (
    StripeWebhookHandler,
    tier_from_subscription,
)
from app.shared.core.pricing import PricingTier
from tests.utils import STRIPE_API, stripe_event, stripe_subscription


def _aware(value: datetime) -> datetime:
    # SQLite drops tzinfo on round-trip
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


async def _subscription(db, stripe_subscription_id="sub_123"):
    result = await db.execute(
        select(Subscription).where(Subscription.stripe_subscription_id == stripe_subscription_id)
    )
    return result.scalar_one_or_none()


async def _payments(db):
    return list((await db.execute(select(PaymentHistory))).scalars().all())


class TestTierFromSubscription:
    def test_metadata_wins(self):
        assert tier_from_subscription(stripe_subscription(tier="traveler", unit_amount=999)) is PricingTier.TRAVELER

    def test_unknown_metadata_falls_back_to_price(self):
        assert tier_from_subscription(stripe_subscription(tier="platinum", unit_amount=1999)) is PricingTier.TRAVELER

    def test_yearly_price_compared_monthly(self):
        sub = stripe_subscription(unit_amount=9990, interval="year")
        assert tier_from_subscription(sub) is PricingTier.EXPLORER

    def test_legacy_plan_object(self):
        sub = {"id": "sub_1", "plan": {"amount": 4999, "interval": "month"}}
        assert tier_from_subscription(sub) is PricingTier.ENTERPRISE

    def test_no_price_is_free(self):
        assert tier_from_subscription({"id": "sub_1"}) is PricingTier.FREE


class TestSubscriptionEvents:
    @pytest.mark.asyncio
    async def test_created_upserts_subscription_and_tier(self, db, profile_factory):
        profile = await profile_factory("free", stripe_customer_id="cus_123")
        handler = StripeWebhookHandler(db)

        await handler.handle(stripe_event("customer.subscription.created", stripe_subscription()))

        sub = await _subscription(db)
        assert sub is not None
        assert sub.user_id == profile.id
        assert sub.tier == "explorer"
        assert sub.status == "active"
        assert sub.interval == "month"
        assert sub.stripe_price_id == "price_123"
        assert _aware(sub.current_period_end) == datetime.fromtimestamp(1_762_592_000, tz=timezone.utc)

        await db.refresh(profile)
        assert profile.subscription_tier == "explorer"
        assert profile.subscription_status == "active"

    @pytest.mark.asyncio
    @respx.mock
    async def test_created_resolves_profile_by_customer_email(self, db, profile_factory, stripe_client):
        profile = await profile_factory("free", email="nomad@example.com")
        respx.get(f"{STRIPE_API}/customers/cus_new").mock(
            return_value=httpx.Response(200, json={"id": "cus_new", "email": "nomad@example.com"})
        )
        handler = StripeWebhookHandler(db, stripe_client)

        await handler.handle(
            stripe_event("customer.subscription.created", stripe_subscription(customer_id="cus_new", unit_amount=1999))
        )

        await db.refresh(profile)
        assert profile.stripe_customer_id == "cus_new"
        assert profile.subscription_tier == "traveler"

    @pytest.mark.asyncio
    async def test_created_for_unknown_customer_is_ignored(self, db):
        handler = StripeWebhookHandler(db)
        await handler.handle(stripe_event("customer.subscription.created", stripe_subscription(customer_id="cus_ghost")))
        assert await _subscription(db) is None

    @pytest.mark.asyncio
    async def test_updated_changes_tier_and_flags(self, db, profile_factory, subscription_factory):
        profile = await profile_factory("explorer", stripe_customer_id="cus_123")
        await subscription_factory(profile.id, tier="explorer")
        handler = StripeWebhookHandler(db)

        await handler.handle(
            stripe_event(
                "customer.subscription.updated",
                stripe_subscription(unit_amount=1999, cancel_at_period_end=True),
            )
        )

        sub = await _subscription(db)
        await db.refresh(sub)
        assert sub.tier == "traveler"
        assert sub.cancel_at_period_end is True
        await db.refresh(profile)
        assert profile.subscription_tier == "traveler"

    @pytest.mark.asyncio
    async def test_updated_to_canceled_downgrades_profile(self, db, profile_factory, subscription_factory):
        profile = await profile_factory("explorer", stripe_customer_id="cus_123")
        await subscription_factory(profile.id)
        handler = StripeWebhookHandler(db)

        await handler.handle(stripe_event("customer.subscription.updated", stripe_subscription(status="canceled")))

        await db.refresh(profile)
        assert profile.subscription_tier == "free"
        assert profile.subscription_status == "canceled"

    @pytest.mark.asyncio
    async def test_deleted_cancels_and_downgrades(self, db, profile_factory, subscription_factory):
        profile = await profile_factory("traveler", stripe_customer_id="cus_123")
        await subscription_factory(profile.id, tier="traveler")
        handler = StripeWebhookHandler(db)

        await handler.handle(stripe_event("customer.subscription.deleted", stripe_subscription(status="canceled")))

        sub = await _subscription(db)
        await db.refresh(sub)
        assert sub.status == "canceled"
        assert sub.canceled_at is not None
        await db.refresh(profile)
        assert profile.subscription_tier == "free"
        assert profile.subscription_status == "canceled"


class TestInvoiceEvents:
    @pytest.mark.asyncio
    async def test_payment_failed_marks_past_due(self, db, profile_factory, subscription_factory):
        profile = await profile_factory("explorer", stripe_customer_id="cus_123")
        await subscription_factory(profile.id)
        handler = StripeWebhookHandler(db)

        invoice = {
            "id": "in_1",
            "customer": "cus_123",
            "subscription": "sub_123",
            "amount_due": 999,
            "currency": "USD",
            "number": "WAY-0001",
            "payment_intent": "pi_1",
        }
        await handler.handle(stripe_event("invoice.payment_failed", invoice))

        sub = await _subscription(db)
        await db.refresh(sub)
        assert sub.status == "past_due"
        await db.refresh(profile)
        assert profile.subscription_status == "past_due"
        assert profile.subscription_tier == "explorer"

        payments = await _payments(db)
        assert len(payments) == 1
        assert payments[0].status == "failed"
        assert payments[0].amount == 999
        assert payments[0].currency == "usd"
        assert payments[0].description == "Payment failed for invoice WAY-0001"

    @pytest.mark.asyncio
    async def test_payment_succeeded_reactivates_past_due(self, db, profile_factory, subscription_factory):
        profile = await profile_factory("explorer", status="past_due", stripe_customer_id="cus_123")
        await subscription_factory(profile.id, status="past_due")
        handler = StripeWebhookHandler(db)

        invoice = {
            "id": "in_2",
            "customer": "cus_123",
            "parent": {"subscription_details": {"subscription": "sub_123"}},
            "amount_paid": 999,
            "currency": "usd",
        }
        await handler.handle(stripe_event("invoice.payment_succeeded", invoice))

        sub = await _subscription(db)
        await db.refresh(sub)
        assert sub.status == "active"
        await db.refresh(profile)
        assert profile.subscription_status == "active"

        payments = await _payments(db)
        assert [(p.status, p.amount, p.stripe_invoice_id) for p in payments] == [("succeeded", 999, "in_2")]

    @pytest.mark.asyncio
    async def test_action_required_marks_incomplete(self, db, profile_factory, subscription_factory):
        profile = await profile_factory("explorer", stripe_customer_id="cus_123")
        await subscription_factory(profile.id)
        handler = StripeWebhookHandler(db)

        await handler.handle(
            stripe_event("invoice.payment_action_required", {"id": "in_3", "customer": "cus_123", "subscription": "sub_123"})
        )

        await db.refresh(profile)
        assert profile.subscription_status == "incomplete"


class TestPaymentIntentEvents:
    @pytest.mark.asyncio
    async def test_succeeded_records_amount_received(self, db, profile_factory):
        await profile_factory("explorer", stripe_customer_id="cus_123")
        handler = StripeWebhookHandler(db)

        await handler.handle(
            stripe_event(
                "payment_intent.succeeded",
                {"id": "pi_9", "customer": "cus_123", "amount": 1000, "amount_received": 999, "currency": "usd"},
            )
        )

        payments = await _payments(db)
        assert [(p.status, p.amount, p.stripe_payment_intent_id) for p in payments] == [("succeeded", 999, "pi_9")]

    @pytest.mark.asyncio
    async def test_failed_records_requested_amount(self, db, profile_factory):
        await profile_factory("explorer", stripe_customer_id="cus_123")
        handler = StripeWebhookHandler(db)

        await handler.handle(
            stripe_event("payment_intent.payment_failed", {"id": "pi_8", "customer": "cus_123", "amount": 1999})
        )

        payments = await _payments(db)
        assert [(p.status, p.amount) for p in payments] == [("failed", 1999)]


class TestDispatch:
    @pytest.mark.asyncio
    async def test_unhandled_and_log_only_events_are_noops(self, db):
        handler = StripeWebhookHandler(db)
        await handler.handle(stripe_event("invoice.upcoming", {"id": "in_4"}))
        await handler.handle(stripe_event("charge.refund.updated", {"id": "re_1"}))
        assert await _payments(db) == []

    @pytest.mark.asyncio
    async def test_failure_rolls_back_partial_writes(self, db, profile_factory):
        await profile_factory("free", stripe_customer_id="cus_123")
        handler = StripeWebhookHandler(db)

        with patch(
            "app.modules.billing.domain.billing.webhook_handler.sync_profile_tier",
            new=AsyncMock(side_effect=ConnectionError("connection reset")),
        ):
            with pytest.raises(ConnectionError):
                await handler.handle(stripe_event("customer.subscription.created", stripe_subscription()))

        assert await _subscription(db) is None
