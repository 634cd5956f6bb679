from urllib.parse import parse_qsl
from uuid import uuid4

import httpx
import pytest
import respx

from app.models.payment import PaymentHistory
from app.modules.billing.domain.billing.billing_service import BillingService, normalize_interval
from app.shared.core.exceptions import BillingError, ResourceNotFoundError
from tests.utils import STRIPE_API


def _form(route):
    return dict(parse_qsl(route.calls.last.request.content.decode()))


@pytest.mark.parametrize(
    "raw,expected",
    [("month", "month"), ("Monthly", "month"), (" yearly ", "year"), ("year", "year")],
)
def test_normalize_interval(raw, expected):
    assert normalize_interval(raw) == expected


def test_normalize_interval_rejects_unknown():
    with pytest.raises(BillingError) as exc_info:
        normalize_interval("weekly")
    assert exc_info.value.code == "invalid_interval"


def test_public_config_exposes_catalogue_without_secrets():
    config = BillingService.get_public_config()

    assert config["success"] is True
    assert [t["id"] for t in config["tiers"]] == ["free", "explorer", "traveler", "enterprise"]
    explorer = config["tiers"][1]
    assert explorer["price_monthly"] == 999
    assert explorer["limits"]["experiences"] == 50
    assert config["publishable_key"] == "pk_test_wayfarer"
    assert config["publishable_key_status"] == "configured"
    assert "sk_test" not in str(config)


class TestCheckout:
    @pytest.mark.asyncio
    @respx.mock
    async def test_creates_customer_then_session(self, db, profile_factory, stripe_client):
        profile = await profile_factory("free", email="nomad@example.com")
        customers = respx.post(f"{STRIPE_API}/customers").mock(
            return_value=httpx.Response(200, json={"id": "cus_new"})
        )
        checkout = respx.post(f"{STRIPE_API}/checkout/sessions").mock(
            return_value=httpx.Response(200, json={"id": "cs_1", "url": "https://checkout.stripe.com/c/cs_1"})
        )

        result = await BillingService(db, stripe_client).create_checkout_session(
            profile.id, "traveler", "yearly"
        )

        assert result == {"session_id": "cs_1", "url": "https://checkout.stripe.com/c/cs_1"}
        customer_form = _form(customers)
        assert customer_form["email"] == "nomad@example.com"
        assert customer_form["metadata[user_id]"] == str(profile.id)

        form = _form(checkout)
        assert form["mode"] == "subscription"
        assert form["customer"] == "cus_new"
        assert form["line_items[0][price_data][unit_amount]"] == "19990"
        assert form["line_items[0][price_data][recurring][interval]"] == "year"
        assert form["metadata[tier]"] == "traveler"
        assert form["subscription_data[metadata][interval]"] == "year"
        assert form["success_url"] == "http://localhost:3000/dashboard?session_id={CHECKOUT_SESSION_ID}"
        assert form["client_reference_id"] == str(profile.id)

        await db.refresh(profile)
        assert profile.stripe_customer_id == "cus_new"

    @pytest.mark.asyncio
    @pytest.mark.respx(assert_all_called=False)
    async def test_reuses_existing_customer(self, db, profile_factory, stripe_client, respx_mock):
        profile = await profile_factory("free", stripe_customer_id="cus_123")
        customers = respx_mock.post(f"{STRIPE_API}/customers")
        respx_mock.post(f"{STRIPE_API}/checkout/sessions").mock(
            return_value=httpx.Response(200, json={"id": "cs_2"})
        )

        result = await BillingService(db, stripe_client).create_checkout_session(profile.id, "explorer")

        assert result == {"session_id": "cs_2", "url": None}
        assert customers.call_count == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("tier", ["free", "platinum"])
    async def test_rejects_non_purchasable_tiers(self, db, profile_factory, stripe_client, tier):
        profile = await profile_factory("free")
        with pytest.raises(BillingError) as exc_info:
            await BillingService(db, stripe_client).create_checkout_session(profile.id, tier)
        assert exc_info.value.code == "invalid_tier"

    @pytest.mark.asyncio
    async def test_unknown_user(self, db, stripe_client):
        with pytest.raises(ResourceNotFoundError):
            await BillingService(db, stripe_client).create_checkout_session(uuid4(), "explorer")


class TestPortal:
    @pytest.mark.asyncio
    @respx.mock
    async def test_portal_session(self, db, profile_factory, stripe_client):
        profile = await profile_factory("explorer", stripe_customer_id="cus_123")
        portal = respx.post(f"{STRIPE_API}/billing_portal/sessions").mock(
            return_value=httpx.Response(200, json={"id": "bps_1", "url": "https://billing.stripe.com/p/1"})
        )

        result = await BillingService(db, stripe_client).create_portal_session(profile.id)

        assert result == {"url": "https://billing.stripe.com/p/1"}
        assert _form(portal) == {
            "customer": "cus_123",
            "return_url": "http://localhost:3000/dashboard/billing",
        }

    @pytest.mark.asyncio
    async def test_requires_billing_account(self, db, profile_factory, stripe_client):
        profile = await profile_factory("free")
        with pytest.raises(BillingError) as exc_info:
            await BillingService(db, stripe_client).create_portal_session(profile.id)
        assert exc_info.value.code == "no_customer"


class TestReads:
    @pytest.mark.asyncio
    async def test_payment_history_is_scoped_and_paged(self, db, profile_factory):
        mine = await profile_factory("explorer")
        other = await profile_factory("explorer")
        for i in range(3):
            db.add(PaymentHistory(user_id=mine.id, amount=999 + i, currency="usd", status="succeeded"))
        db.add(PaymentHistory(user_id=other.id, amount=1, currency="usd", status="failed"))
        await db.commit()

        service = BillingService(db)
        history = await service.get_payment_history(mine.id)
        assert sorted(p.amount for p in history) == [999, 1000, 1001]
        assert len(await service.get_payment_history(mine.id, limit=2)) == 2
        assert len(await service.get_payment_history(mine.id, limit=2, offset=2)) == 1

    @pytest.mark.asyncio
    async def test_get_subscription(self, db, profile_factory, subscription_factory):
        profile = await profile_factory("explorer")
        service = BillingService(db)
        assert await service.get_subscription(profile.id) is None

        await subscription_factory(profile.id, status="canceled")
        sub = await service.get_subscription(profile.id)
        assert sub.status == "canceled"
