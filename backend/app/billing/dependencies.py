"""Plan gating helpers for feature code that needs to enforce tier limits."""

import logging

from fastapi import HTTPException, status

from app.billing.entitlements import Limit, Resource, limit_for
from app.billing.plans import Tier

logger = logging.getLogger(__name__)

UPGRADE_URL = "/pricing"


def enforce_limit(tier: Tier | str, resource: Resource | str, used: int) -> Limit:
    """Raise 402 if creating one more ``resource`` would exceed the tier's limit.

    Returns the applicable limit so callers can report remaining capacity.
    """
    limit = limit_for(tier, resource)
    if limit.allows(used):
        return limit

    resource_name = Resource(resource).value
    tier_name = Tier(tier).value
    logger.info("Limit reached: tier=%s resource=%s used=%d max=%s", tier_name, resource_name, used, limit.max)
    raise HTTPException(
        status_code=status.HTTP_402_PAYMENT_REQUIRED,
        detail={
            "message": f"{resource_name.replace('_', ' ').capitalize()} limit reached ({used}/{limit.max}). "
            "Upgrade your plan for more.",
            "limit": limit.max,
            "current": used,
            "tier": tier_name,
            "upgrade_url": UPGRADE_URL,
        },
    )
