"""Builders for Stripe-shaped payloads, signed webhook bodies and auth headers."""

import hashlib
import hmac
import json
import time
import uuid
from typing import Any

from app.auth.jwt import create_access_token
from app.billing.plans import BillingCycle, PriceCatalog, Tier
from app.models.user import User

WEBHOOK_SECRET = "whsec_test_secret"

PRO_MONTHLY = "price_pro_monthly"
PRO_YEARLY = "price_pro_yearly"
MASTER_MONTHLY = "price_master_monthly"

# Study Master yearly is left unconfigured.
TEST_CATALOG = PriceCatalog(
    prices={
        (Tier.PREMIUM, BillingCycle.MONTHLY): PRO_MONTHLY,
        (Tier.PREMIUM, BillingCycle.YEARLY): PRO_YEARLY,
        (Tier.ENTERPRISE, BillingCycle.MONTHLY): MASTER_MONTHLY,
        (Tier.ENTERPRISE, BillingCycle.YEARLY): "",
    }
)

# 2026-01-01 00:00:00 UTC
T0 = 1767225600
DAY = 86400


def bearer(user: User) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token({'sub': str(user.id)})}"}


def stripe_subscription(
    sub_id: str = "sub_test_1",
    *,
    status: str = "active",
    price_id: str | None = PRO_MONTHLY,
    customer: Any = "cus_test_1",
    metadata: dict[str, str] | None = None,
    period_start: int = T0,
    period_end: int = T0 + 30 * DAY,
    cancel_at_period_end: bool = False,
    interval: str = "month",
    product: Any = "prod_test",
    **extra: Any,
) -> dict[str, Any]:
    """A subscription object shaped like Stripe's (billing period on the item)."""
    price: dict[str, Any] | None = None
    if price_id is not None:
        price = {
            "id": price_id,
            "object": "price",
            "unit_amount": 799,
            "currency": "gbp",
            "recurring": {"interval": interval, "interval_count": 1},
            "product": product,
        }
    return {
        "id": sub_id,
        "object": "subscription",
        "customer": customer,
        "status": status,
        "metadata": metadata or {},
        "cancel_at_period_end": cancel_at_period_end,
        "created": T0,
        "items": {
            "object": "list",
            "data": [
                {
                    "id": "si_test",
                    "price": price,
                    "current_period_start": period_start,
                    "current_period_end": period_end,
                }
            ],
        },
        **extra,
    }


def stripe_event(
    event_type: str,
    obj: dict[str, Any],
    *,
    event_id: str | None = None,
    created: int = T0,
) -> dict[str, Any]:
    return {
        "id": event_id or f"evt_{uuid.uuid4().hex[:12]}",
        "object": "event",
        "type": event_type,
        "created": created,
        "data": {"object": obj},
    }


def checkout_metadata(user: User, tier: str = "premium", billing_cycle: str = "monthly") -> dict[str, str]:
    return {"userId": str(user.id), "tier": tier, "billingCycle": billing_cycle}


def encode(event: dict[str, Any]) -> bytes:
    return json.dumps(event).encode()


def sign(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    """Build a Stripe-Signature header for ``payload``."""
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload.decode()}".encode()
    digest = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"
