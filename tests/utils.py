import hashlib
import hmac
import json
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Optional
from uuid import UUID, uuid4

import jwt

from app.shared.core.config import get_settings

settings = get_settings()

STRIPE_API = "https://api.stripe.com/v1"

# Zero-wait policies so retry paths run instantly
FAST_RETRY: dict[str, Any] = {
    "max_attempts": 3,
    "min_wait": 0.0,
    "max_wait": 0.0,
    "multiplier": 2.0,
    "jitter": False,
    "exceptions": (Exception,),
}


def create_test_token(user_id: UUID, email: str) -> str:
    """Generate a valid test JWT for Supabase authentication."""
    payload = {
        "sub": str(user_id),
        "email": email,
        "aud": "authenticated",  # Match Supabase default aud
        "exp": int((datetime.now(timezone.utc) + timedelta(hours=1)).timestamp()),
    }
    return jwt.encode(payload, settings.SUPABASE_JWT_SECRET, algorithm="HS256")


def auth_headers(user_id: UUID, email: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_test_token(user_id, email)}"}


def sign_stripe_payload(
    payload: str, secret: Optional[str] = None, timestamp: Optional[int] = None
) -> str:
    """Build a Stripe-Signature header value (t=...,v1=...) for a raw payload."""
    secret = secret or settings.STRIPE_WEBHOOK_SECRET or ""
    timestamp = timestamp if timestamp is not None else int(time.time())
    signed = f"{timestamp}.{payload}".encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def stripe_event(event_type: str, obj: dict[str, Any], event_id: Optional[str] = None) -> dict[str, Any]:
    return {
        "id": event_id or f"evt_{uuid4().hex[:16]}",
        "object": "event",
        "type": event_type,
        "created": int(time.time()),
        "data": {"object": obj},
    }


def stripe_subscription(
    subscription_id: str = "sub_123",
    customer_id: str = "cus_123",
    *,
    status: str = "active",
    unit_amount: int = 999,
    interval: str = "month",
    tier: Optional[str] = None,
    period_start: int = 1_760_000_000,
    period_end: int = 1_762_592_000,
    cancel_at_period_end: bool = False,
) -> dict[str, Any]:
    return {
        "id": subscription_id,
        "object": "subscription",
        "customer": customer_id,
        "status": status,
        "current_period_start": period_start,
        "current_period_end": period_end,
        "cancel_at_period_end": cancel_at_period_end,
        "canceled_at": None,
        "metadata": {"tier": tier} if tier else {},
        "items": {
            "data": [
                {
                    "id": "si_123",
                    "price": {
                        "id": "price_123",
                        "unit_amount": unit_amount,
                        "recurring": {"interval": interval},
                    },
                }
            ]
        },
    }


def dumps(event: dict[str, Any]) -> str:
    return json.dumps(event, separators=(",", ":"))
