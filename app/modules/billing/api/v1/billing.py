"""
Billing API Endpoints - Stripe Integration

Provides:
- GET /billing/config - Public tier catalogue
- POST /billing/checkout - Start a Stripe Checkout session
- POST /billing/portal - Open the Stripe billing portal
- GET /billing/payment-history - Past charges
- GET|PUT|DELETE /billing/subscription - Read, change or cancel the plan
- GET /billing/upgrade/preview, POST /billing/upgrade - Prorated plan changes
- GET /billing/features, GET /billing/usage - Entitlements for the current tier
"""

from typing import Annotated, Any, Dict, Optional

import structlog
from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.modules.billing.api.v1.billing_models import (
    ChangePlanRequest,
    CheckoutRequest,
    CheckoutResponse,
    FeaturesResponse,
    PaymentHistoryItem,
    PaymentHistoryResponse,
    PaymentRetryRequest,
    PortalResponse,
    SubscriptionDetails,
    SubscriptionResponse,
    UsageCheckResponse,
    UsageResponse,
    WorkflowResponse,
)
from app.modules.billing.domain.billing.billing_service import (
    BillingService,
    normalize_interval,
)
from app.modules.billing.domain.billing.stripe_client import (
    StripeClient,
    get_stripe_client,
)
from app.modules.billing.domain.billing.subscription_validation import (
    UserAction,
    get_user_usage_stats,
    validate_user_action,
)
from app.modules.billing.domain.billing.subscription_workflow import (
    SubscriptionWorkflow,
    WorkflowResult,
)
from app.shared.core.auth import CurrentUser, requires_role
from app.shared.core.exceptions import WayfarerException
from app.shared.core.pricing import (
    TIER_HIERARCHY,
    FeatureFlag,
    get_tier_config,
    is_feature_enabled,
    normalize_tier,
)
from app.shared.core.rate_limit import auth_limit, standard_limit
from app.shared.db.session import get_db

logger = structlog.get_logger()
router = APIRouter(tags=["Billing"])

UserDep = Annotated[CurrentUser, Depends(requires_role("user"))]
StripeDep = Annotated[StripeClient, Depends(get_stripe_client)]

_WORKFLOW_STATUS = {
    "NO_SUBSCRIPTION": 404,
    "INVALID_TIER": 400,
}
_ACTION_STATUS = {
    "update_payment_method": 402,
    "retry": 503,
    "contact_support": 502,
}


def _unwrap(result: WorkflowResult, message: Optional[str] = None) -> WorkflowResponse:
    """Turn a failed workflow into the standard error envelope."""
    if result.success:
        return WorkflowResponse(success=True, data=result.data, message=message)

    error = result.error or {}
    code = str(error.get("code") or "billing_error")
    status_code = _WORKFLOW_STATUS.get(code) or _ACTION_STATUS.get(str(error.get("action")), 400)
    raise WayfarerException(
        str(error.get("user_message") or error.get("message") or "Billing operation failed"),
        code=code,
        status_code=status_code,
        details={"action": error.get("action")},
    )


@router.get("/config")
@standard_limit
async def get_billing_config(request: Request) -> Dict[str, Any]:
    """Public tier catalogue. No authentication required."""
    return BillingService.get_public_config()


@router.post("/checkout", response_model=CheckoutResponse)
@auth_limit
async def create_checkout(
    request: Request,
    checkout_req: CheckoutRequest,
    user: UserDep,
    client: StripeDep,
    db: AsyncSession = Depends(get_db),
) -> CheckoutResponse:
    """Start a Stripe Checkout session for a paid tier."""
    billing = BillingService(db, client)
    result = await billing.create_checkout_session(
        user.id, checkout_req.tier, checkout_req.interval
    )
    return CheckoutResponse(**result)


@router.post("/portal", response_model=PortalResponse)
@auth_limit
async def create_portal(
    request: Request,
    user: UserDep,
    client: StripeDep,
    db: AsyncSession = Depends(get_db),
) -> PortalResponse:
    result = await BillingService(db, client).create_portal_session(user.id)
    return PortalResponse(**result)


@router.get("/payment-history", response_model=PaymentHistoryResponse)
@standard_limit
async def get_payment_history(
    request: Request,
    user: UserDep,
    db: AsyncSession = Depends(get_db),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
) -> PaymentHistoryResponse:
    rows = await BillingService(db).get_payment_history(user.id, limit=limit, offset=offset)
    return PaymentHistoryResponse(
        payments=[PaymentHistoryItem.model_validate(row) for row in rows]
    )


@router.get("/subscription", response_model=SubscriptionResponse)
@standard_limit
async def get_subscription(
    request: Request,
    user: UserDep,
    db: AsyncSession = Depends(get_db),
) -> SubscriptionResponse:
    """Current subscription row plus the profile entitlement."""
    sub = await BillingService(db).get_subscription(user.id)
    return SubscriptionResponse(
        subscription=SubscriptionDetails.model_validate(sub) if sub else None,
        tier=user.tier.value,
        status=user.subscription_status,
    )


@router.put("/subscription", response_model=WorkflowResponse)
@auth_limit
async def change_subscription(
    request: Request,
    change_req: ChangePlanRequest,
    user: UserDep,
    client: StripeDep,
    db: AsyncSession = Depends(get_db),
) -> WorkflowResponse:
    """Upgrade immediately, or downgrade at period end unless `immediate`."""
    interval = normalize_interval(change_req.interval)
    target = normalize_tier(change_req.tier)
    workflow = SubscriptionWorkflow(db, client)

    if TIER_HIERARCHY.index(target) > TIER_HIERARCHY.index(user.tier):
        result = await workflow.upgrade(user.id, change_req.tier, interval)
        return _unwrap(result, f"Successfully upgraded to {get_tier_config(target)['name']} plan")

    result = await workflow.downgrade(
        user.id, change_req.tier, interval, immediate=change_req.immediate
    )
    return _unwrap(result, f"Downgrade to {get_tier_config(target)['name']} plan scheduled"
                   if not change_req.immediate
                   else f"Successfully downgraded to {get_tier_config(target)['name']} plan")


@router.delete("/subscription", response_model=WorkflowResponse)
@auth_limit
async def cancel_subscription(
    request: Request,
    user: UserDep,
    client: StripeDep,
    db: AsyncSession = Depends(get_db),
    cancel_at_period_end: bool = Query(True),
) -> WorkflowResponse:
    result = await SubscriptionWorkflow(db, client).cancel(
        user.id, at_period_end=cancel_at_period_end
    )
    return _unwrap(result, "Subscription canceled")


@router.post("/subscription/reactivate", response_model=WorkflowResponse)
@auth_limit
async def reactivate_subscription(
    request: Request,
    user: UserDep,
    client: StripeDep,
    db: AsyncSession = Depends(get_db),
) -> WorkflowResponse:
    result = await SubscriptionWorkflow(db, client).reactivate(user.id)
    return _unwrap(result, "Subscription reactivated")


@router.post("/payment-retry", response_model=WorkflowResponse)
@auth_limit
async def retry_payment(
    request: Request,
    retry_req: PaymentRetryRequest,
    user: UserDep,
    client: StripeDep,
    db: AsyncSession = Depends(get_db),
) -> WorkflowResponse:
    """Retry collection of an open invoice after a failed payment."""
    result = await SubscriptionWorkflow(db, client).handle_payment_failure(
        user.id, retry_req.invoice_id
    )
    return _unwrap(result)


@router.get("/upgrade/preview", response_model=WorkflowResponse)
@standard_limit
async def preview_upgrade(
    request: Request,
    user: UserDep,
    client: StripeDep,
    tier: str = Query(...),
    interval: str = Query("month"),
    db: AsyncSession = Depends(get_db),
) -> WorkflowResponse:
    result = await SubscriptionWorkflow(db, client).get_change_preview(
        user.id, tier, normalize_interval(interval)
    )
    return _unwrap(result)


@router.post("/upgrade", response_model=WorkflowResponse)
@auth_limit
async def upgrade_subscription(
    request: Request,
    change_req: ChangePlanRequest,
    user: UserDep,
    client: StripeDep,
    db: AsyncSession = Depends(get_db),
) -> WorkflowResponse:
    target = normalize_tier(change_req.tier)
    result = await SubscriptionWorkflow(db, client).upgrade(
        user.id, change_req.tier, normalize_interval(change_req.interval)
    )
    return _unwrap(result, f"Successfully changed to {get_tier_config(target)['name']} plan")


@router.get("/features", response_model=FeaturesResponse)
@standard_limit
async def get_features(request: Request, user: UserDep) -> FeaturesResponse:
    """
    Enabled features and limits for the user's current tier.
    Central authority for frontend and backend gating.
    """
    config = get_tier_config(user.tier)
    return FeaturesResponse(
        tier=user.tier.value,
        features=list(config.get("features", [])),
        enabled_flags=[flag.value for flag in FeatureFlag if is_feature_enabled(user.tier, flag)],
        limits=dict(config.get("limits", {})),
    )


@router.get("/usage", response_model=UsageResponse)
@standard_limit
async def get_usage(
    request: Request,
    user: UserDep,
    db: AsyncSession = Depends(get_db),
) -> UsageResponse:
    stats = await get_user_usage_stats(db, user.id)
    return UsageResponse(**stats)


@router.get("/usage/check", response_model=UsageCheckResponse)
@standard_limit
async def check_usage(
    request: Request,
    user: UserDep,
    action: UserAction = Query(...),
    amount: int = Query(1, ge=1),
    db: AsyncSession = Depends(get_db),
) -> UsageCheckResponse:
    """Would `action` fit within the tier limits?"""
    validation = await validate_user_action(db, user.id, action, amount)
    return UsageCheckResponse(action=action, **validation.to_dict())
