"""
API tests for /api/v1/billing: public config, checkout, subscription
management, payment retry and tier entitlements.
"""
from uuid import uuid4

import httpx
import pytest
import pytest_asyncio
import respx

from app.models.payment import PaymentHistory
from tests.utils import STRIPE_API, auth_headers, stripe_subscription

BASE = "/api/v1/billing"


@pytest_asyncio.fixture
async def traveller(profile_factory):
    return await profile_factory("explorer", stripe_customer_id="cus_123")


@pytest.fixture
def headers(traveller):
    return auth_headers(traveller.id, traveller.email)


@pytest.mark.asyncio
async def test_config_is_public(ac):
    response = await ac.get(f"{BASE}/config")

    assert response.status_code == 200
    body = response.json()
    assert [t["id"] for t in body["tiers"]] == ["free", "explorer", "traveler", "enterprise"]
    assert body["publishable_key_status"] == "configured"


@pytest.mark.asyncio
async def test_protected_routes_require_token(ac):
    response = await ac.get(f"{BASE}/features")
    assert response.status_code == 401
    assert response.json()["code"] == "HTTP_ERROR"


@pytest.mark.asyncio
async def test_token_for_unknown_profile_is_forbidden(ac):
    response = await ac.get(f"{BASE}/features", headers=auth_headers(uuid4(), "ghost@example.com"))
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_features_for_current_tier(ac, headers):
    response = await ac.get(f"{BASE}/features", headers=headers)

    assert response.status_code == 200
    body = response.json()
    assert body["tier"] == "explorer"
    assert set(body["enabled_flags"]) == {"export_data", "advanced_search"}
    assert body["limits"] == {"experiences": 50, "storage": 524288000, "exports": 10}


@pytest.mark.asyncio
async def test_usage_and_usage_check(ac, headers):
    usage = await ac.get(f"{BASE}/usage", headers=headers)
    assert usage.status_code == 200
    assert usage.json()["experiences"] == 0
    assert usage.json()["tier"] == "explorer"

    check = await ac.get(
        f"{BASE}/usage/check", params={"action": "export_data", "amount": 11}, headers=headers
    )
    assert check.status_code == 200
    assert check.json()["can_perform_action"] is False
    assert check.json()["suggested_tier"] == "traveler"

    invalid = await ac.get(f"{BASE}/usage/check", params={"action": "teleport"}, headers=headers)
    assert invalid.status_code == 422
    assert invalid.json()["code"] == "VALIDATION_ERROR"


class TestCheckoutAndPortal:
    @pytest.mark.asyncio
    @respx.mock
    async def test_checkout(self, ac, headers):
        respx.post(f"{STRIPE_API}/checkout/sessions").mock(
            return_value=httpx.Response(200, json={"id": "cs_1", "url": "https://checkout.stripe.com/c/cs_1"})
        )

        response = await ac.post(
            f"{BASE}/checkout", json={"tier": "traveler", "interval": "monthly"}, headers=headers
        )

        assert response.status_code == 200
        assert response.json() == {"session_id": "cs_1", "url": "https://checkout.stripe.com/c/cs_1"}

    @pytest.mark.asyncio
    async def test_checkout_for_free_tier_is_rejected(self, ac, headers):
        response = await ac.post(f"{BASE}/checkout", json={"tier": "free"}, headers=headers)

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "invalid_tier"

    @pytest.mark.asyncio
    async def test_checkout_with_bad_interval(self, ac, headers):
        response = await ac.post(
            f"{BASE}/checkout", json={"tier": "traveler", "interval": "weekly"}, headers=headers
        )
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "invalid_interval"

    @pytest.mark.asyncio
    @respx.mock
    async def test_portal(self, ac, headers):
        respx.post(f"{STRIPE_API}/billing_portal/sessions").mock(
            return_value=httpx.Response(200, json={"url": "https://billing.stripe.com/p/1"})
        )

        response = await ac.post(f"{BASE}/portal", headers=headers)

        assert response.status_code == 200
        assert response.json() == {"url": "https://billing.stripe.com/p/1"}


class TestSubscription:
    @pytest.mark.asyncio
    async def test_get_without_subscription(self, ac, headers):
        response = await ac.get(f"{BASE}/subscription", headers=headers)

        assert response.status_code == 200
        assert response.json() == {"subscription": None, "tier": "explorer", "status": "active"}

    @pytest.mark.asyncio
    async def test_get_with_subscription(self, ac, headers, traveller, subscription_factory):
        await subscription_factory(traveller.id)

        response = await ac.get(f"{BASE}/subscription", headers=headers)

        sub = response.json()["subscription"]
        assert sub["stripe_subscription_id"] == "sub_123"
        assert sub["tier"] == "explorer"
        assert sub["cancel_at_period_end"] is False

    @pytest.mark.asyncio
    @respx.mock
    async def test_upgrade(self, ac, db, headers, traveller, subscription_factory):
        await subscription_factory(traveller.id)
        respx.get(f"{STRIPE_API}/subscriptions/sub_123").mock(
            return_value=httpx.Response(200, json=stripe_subscription())
        )
        respx.post(f"{STRIPE_API}/prices").mock(return_value=httpx.Response(200, json={"id": "price_t"}))
        respx.post(f"{STRIPE_API}/subscriptions/sub_123").mock(
            return_value=httpx.Response(200, json=stripe_subscription(unit_amount=1999))
        )

        response = await ac.put(f"{BASE}/subscription", json={"tier": "traveler"}, headers=headers)

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["message"] == "Successfully upgraded to Traveler plan"
        assert body["data"]["tier"] == "traveler"
        await db.refresh(traveller)
        assert traveller.subscription_tier == "traveler"

    @pytest.mark.asyncio
    async def test_change_without_subscription(self, ac, headers):
        response = await ac.put(f"{BASE}/subscription", json={"tier": "traveler"}, headers=headers)

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "NO_SUBSCRIPTION"

    @pytest.mark.asyncio
    @respx.mock
    async def test_downgrade_is_scheduled(self, ac, headers, traveller, subscription_factory):
        await subscription_factory(traveller.id)
        respx.get(f"{STRIPE_API}/subscriptions/sub_123").mock(
            return_value=httpx.Response(200, json=stripe_subscription())
        )
        respx.post(f"{STRIPE_API}/prices").mock(return_value=httpx.Response(200, json={"id": "price_f"}))
        respx.post(f"{STRIPE_API}/subscription_schedules").mock(
            return_value=httpx.Response(200, json={"id": "sub_sched_1"})
        )
        respx.post(f"{STRIPE_API}/subscription_schedules/sub_sched_1").mock(
            return_value=httpx.Response(200, json={"id": "sub_sched_1"})
        )

        response = await ac.put(f"{BASE}/subscription", json={"tier": "free"}, headers=headers)

        assert response.status_code == 200
        assert response.json()["message"] == "Downgrade to Free plan scheduled"
        assert response.json()["data"]["schedule_id"] == "sub_sched_1"

    @pytest.mark.asyncio
    @respx.mock
    async def test_cancel_at_period_end(self, ac, headers, traveller, subscription_factory):
        await subscription_factory(traveller.id)
        respx.post(f"{STRIPE_API}/subscriptions/sub_123").mock(
            return_value=httpx.Response(200, json=stripe_subscription(cancel_at_period_end=True))
        )

        response = await ac.delete(f"{BASE}/subscription", headers=headers)

        assert response.status_code == 200
        assert response.json()["data"]["cancel_at_period_end"] is True

    @pytest.mark.asyncio
    @respx.mock
    async def test_upgrade_preview(self, ac, headers, traveller, subscription_factory):
        await subscription_factory(traveller.id)
        respx.get(f"{STRIPE_API}/subscriptions/sub_123").mock(
            return_value=httpx.Response(200, json=stripe_subscription())
        )
        respx.post(f"{STRIPE_API}/prices").mock(return_value=httpx.Response(200, json={"id": "price_tmp"}))
        respx.get(f"{STRIPE_API}/invoices/upcoming").mock(
            return_value=httpx.Response(
                200, json={"amount_due": 1000, "lines": {"data": [{"amount": 1000, "proration": True}]}}
            )
        )
        deactivate = respx.post(f"{STRIPE_API}/prices/price_tmp").mock(
            return_value=httpx.Response(200, json={"id": "price_tmp"})
        )

        response = await ac.get(
            f"{BASE}/upgrade/preview", params={"tier": "traveler", "interval": "monthly"}, headers=headers
        )

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["immediate_charge"] == 1000
        assert data["is_upgrade"] is True
        assert deactivate.call_count == 1


class TestPayments:
    @pytest.mark.asyncio
    async def test_payment_history(self, ac, db, headers, traveller):
        db.add(PaymentHistory(user_id=traveller.id, amount=999, currency="usd", status="succeeded"))
        await db.commit()

        response = await ac.get(f"{BASE}/payment-history", headers=headers)

        assert response.status_code == 200
        payments = response.json()["payments"]
        assert [(p["amount"], p["status"]) for p in payments] == [(999, "succeeded")]

    @pytest.mark.asyncio
    @respx.mock
    async def test_payment_retry_declined(self, ac, headers):
        respx.get(f"{STRIPE_API}/invoices/in_1").mock(
            return_value=httpx.Response(200, json={"id": "in_1", "status": "open"})
        )
        respx.post(f"{STRIPE_API}/invoices/in_1/pay").mock(
            return_value=httpx.Response(
                402,
                json={"error": {"type": "card_error", "code": "card_declined", "message": "Your card was declined."}},
            )
        )

        response = await ac.post(f"{BASE}/payment-retry", json={"invoice_id": "in_1"}, headers=headers)

        assert response.status_code == 402
        error = response.json()["error"]
        assert error["code"] == "CARD_DECLINED"
        assert error["details"] == {"action": "update_payment_method"}
