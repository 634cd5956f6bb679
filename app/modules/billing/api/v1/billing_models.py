from datetime import datetime
from typing import Any, Dict, List, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class CheckoutRequest(BaseModel):
    tier: str  # explorer, traveler, enterprise
    interval: str = "month"  # month/monthly, year/yearly


class CheckoutResponse(BaseModel):
    session_id: str
    url: Optional[str] = None


class PortalResponse(BaseModel):
    url: str


class PaymentHistoryItem(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    stripe_payment_intent_id: Optional[str] = None
    stripe_invoice_id: Optional[str] = None
    amount: int
    currency: str
    status: str
    description: Optional[str] = None
    created_at: datetime


class PaymentHistoryResponse(BaseModel):
    success: bool = True
    payments: List[PaymentHistoryItem]


class SubscriptionDetails(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    stripe_subscription_id: str
    stripe_customer_id: str
    tier: str
    status: str
    interval: str
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    canceled_at: Optional[datetime] = None


class SubscriptionResponse(BaseModel):
    subscription: Optional[SubscriptionDetails] = None
    tier: str
    status: str


class ChangePlanRequest(BaseModel):
    tier: str
    interval: str = "month"
    immediate: bool = False


class PaymentRetryRequest(BaseModel):
    invoice_id: str = Field(min_length=1)


class WorkflowResponse(BaseModel):
    success: bool
    data: Dict[str, Any] = Field(default_factory=dict)
    message: Optional[str] = None


class FeaturesResponse(BaseModel):
    tier: str
    features: List[str]
    enabled_flags: List[str]
    limits: Dict[str, int]


class UsageResponse(BaseModel):
    tier: Optional[str]
    experiences: int
    storage: int
    exports_this_month: int
    limits: Optional[Dict[str, int]] = None


class UsageCheckResponse(BaseModel):
    action: Literal["create_experience", "upload_image", "export_data"]
    can_perform_action: bool
    current_usage: int
    limit: int
    remaining: int
    requires_upgrade: bool
    suggested_tier: Optional[str] = None
