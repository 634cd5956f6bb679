"""Billing Services."""

from app.modules.billing.domain.billing.billing_service import BillingService
from app.modules.billing.domain.billing.stripe_client import StripeAPIError, StripeClient
from app.modules.billing.domain.billing.subscription_workflow import (
    SubscriptionWorkflow,
    WorkflowResult,
)
from app.modules.billing.domain.billing.webhook_handler import StripeWebhookHandler
from app.shared.core.pricing import PricingTier


__all__ = [
    "BillingService",
    "StripeAPIError",
    "StripeClient",
    "StripeWebhookHandler",
    "SubscriptionWorkflow",
    "WorkflowResult",
    "PricingTier",
]
