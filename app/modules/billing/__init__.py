from app.modules.billing.api.v1.billing import router
from app.modules.billing.api.v1.billing_models import CheckoutRequest, SubscriptionResponse
from app.modules.billing.api.v1.webhooks import router as webhooks_router
from app.modules.billing.domain.billing import (
    BillingService,
    StripeWebhookHandler,
    SubscriptionWorkflow,
)

__all__ = [
    "router",
    "webhooks_router",
    "BillingService",
    "StripeWebhookHandler",
    "SubscriptionWorkflow",
    "CheckoutRequest",
    "SubscriptionResponse",
]
