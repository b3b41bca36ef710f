"""Tier-derived limits consumed by the rest of the platform.

Everything here is pure: callers pass a tier (or a subscription row) and get
back a limit. ``UNLIMITED`` is a distinct value rather than a large number so
that ``used < max`` style checks never truncate.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from app.billing.plans import Tier, parse_tier
from app.database import utcnow
from app.models.subscription import Subscription, SubscriptionStatus


class Resource(str, Enum):
    STUDY_PLANS = "study_plans"
    DOCUMENTS = "documents"
    STORAGE_MB = "storage_mb"
    AI_QUERIES = "ai_queries"
    STUDY_GROUPS = "study_groups"


class Feature(str, Enum):
    COLLABORATION = "collaboration"
    ANALYTICS = "analytics"
    EXPORT = "export"
    API_ACCESS = "api_access"


@dataclass(frozen=True)
class Limit:
    """A cap on a countable resource."""

    max: int | None
    unlimited: bool

    def allows(self, used: int) -> bool:
        """True if one more unit may be created when ``used`` already exist."""
        if self.unlimited:
            return True
        return used < self.max

    def remaining(self, used: int) -> int | None:
        if self.unlimited:
            return None
        return max(self.max - used, 0)


UNLIMITED = Limit(max=None, unlimited=True)


def capped(maximum: int) -> Limit:
    return Limit(max=maximum, unlimited=False)


_LIMITS: dict[Tier, dict[Resource, Limit]] = {
    Tier.FREE: {
        Resource.STUDY_PLANS: capped(3),
        Resource.DOCUMENTS: capped(3),
        Resource.STORAGE_MB: capped(1024),
        Resource.AI_QUERIES: capped(5),
        Resource.STUDY_GROUPS: capped(0),
    },
    Tier.PREMIUM: {
        Resource.STUDY_PLANS: UNLIMITED,
        Resource.DOCUMENTS: UNLIMITED,
        Resource.STORAGE_MB: capped(10240),
        Resource.AI_QUERIES: UNLIMITED,
        Resource.STUDY_GROUPS: capped(5),
    },
    Tier.ENTERPRISE: {
        Resource.STUDY_PLANS: UNLIMITED,
        Resource.DOCUMENTS: UNLIMITED,
        Resource.STORAGE_MB: UNLIMITED,
        Resource.AI_QUERIES: UNLIMITED,
        Resource.STUDY_GROUPS: UNLIMITED,
    },
}

_FEATURES: dict[Tier, frozenset[Feature]] = {
    Tier.FREE: frozenset(),
    Tier.PREMIUM: frozenset({Feature.COLLABORATION, Feature.ANALYTICS, Feature.EXPORT}),
    Tier.ENTERPRISE: frozenset(Feature),
}


def limit_for(tier: Tier | str, resource: Resource | str) -> Limit:
    """Limit for ``resource`` on ``tier``. Raises ValueError for unknown names."""
    return _LIMITS[Tier(tier)][Resource(resource)]


def limits_for(tier: Tier | str) -> dict[Resource, Limit]:
    return dict(_LIMITS[Tier(tier)])


def has_feature(tier: Tier | str, feature: Feature | str) -> bool:
    return Feature(feature) in _FEATURES[Tier(tier)]


def features_for(tier: Tier | str) -> list[Feature]:
    return sorted(_FEATURES[Tier(tier)], key=lambda f: f.value)


def effective_tier(subscription: Subscription | None, now: datetime | None = None) -> Tier:
    """The tier feature code should honour right now.

    ``active`` and ``past_due`` rows keep their tier (past_due is the grace
    period while Stripe retries the card) until a scheduled cancellation's
    period has ended. ``inactive`` and ``cancelled`` rows are free.
    """
    if subscription is None:
        return Tier.FREE

    tier = parse_tier(subscription.tier) or Tier.FREE
    status = subscription.status
    if status not in (SubscriptionStatus.ACTIVE.value, SubscriptionStatus.PAST_DUE.value):
        return Tier.FREE

    now = now or utcnow()
    if (
        subscription.cancel_at_period_end
        and subscription.current_period_end is not None
        and subscription.current_period_end <= now
    ):
        return Tier.FREE
    return tier
