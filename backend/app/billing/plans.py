"""Plan definitions and the Stripe price catalog."""

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from functools import lru_cache
from types import MappingProxyType

from app.billing.errors import InvalidTierError
from app.config import Settings, settings


class Tier(str, Enum):
    FREE = "free"
    PREMIUM = "premium"
    ENTERPRISE = "enterprise"


class BillingCycle(str, Enum):
    MONTHLY = "monthly"
    YEARLY = "yearly"


@dataclass(frozen=True)
class PlanDefinition:
    """Display metadata for a tier."""

    tier: Tier
    display_name: str
    description: str
    purchasable: bool


PLANS: dict[Tier, PlanDefinition] = {
    Tier.FREE: PlanDefinition(
        tier=Tier.FREE,
        display_name="Free Plan",
        description="3 study plans, 3 documents, 1 GB storage, 5 AI queries",
        purchasable=False,
    ),
    Tier.PREMIUM: PlanDefinition(
        tier=Tier.PREMIUM,
        display_name="Study Pro",
        description="Unlimited study plans and AI queries, 10 GB storage, 5 study groups",
        purchasable=True,
    ),
    Tier.ENTERPRISE: PlanDefinition(
        tier=Tier.ENTERPRISE,
        display_name="Study Master",
        description="Everything unlimited, plus API access",
        purchasable=True,
    ),
}


def plan_label(tier: Tier | str) -> str:
    """Display label stored alongside the tier on the subscription row."""
    return PLANS[Tier(tier)].display_name


def parse_tier(value: str | None) -> Tier | None:
    """Return the Tier for ``value`` or None if it is not a known tier."""
    try:
        return Tier(value)
    except ValueError:
        return None


def parse_billing_cycle(value: str | None) -> BillingCycle | None:
    try:
        return BillingCycle(value)
    except ValueError:
        return None


@dataclass(frozen=True)
class PriceCatalog:
    """Immutable mapping of (tier, billing cycle) to a Stripe price ID.

    Pairs whose price ID is empty are simply absent, so a misconfigured cycle
    only fails checkouts for that pair.
    """

    prices: Mapping[tuple[Tier, BillingCycle], str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        configured = {key: price for key, price in self.prices.items() if price}
        object.__setattr__(self, "prices", MappingProxyType(configured))

    def resolve(self, tier: str | None, billing_cycle: str | None) -> str:
        """Return the price ID for a purchasable pair or raise InvalidTierError."""
        parsed_tier = parse_tier(tier)
        parsed_cycle = parse_billing_cycle(billing_cycle)
        if parsed_tier is None or parsed_cycle is None:
            raise InvalidTierError(str(tier), str(billing_cycle))
        if not PLANS[parsed_tier].purchasable:
            raise InvalidTierError(parsed_tier.value, parsed_cycle.value)
        price_id = self.prices.get((parsed_tier, parsed_cycle))
        if not price_id:
            raise InvalidTierError(parsed_tier.value, parsed_cycle.value)
        return price_id

    def lookup_price(self, price_id: str | None) -> tuple[Tier, BillingCycle] | None:
        """Reverse lookup: Stripe price ID -> (tier, cycle). None if unknown."""
        if not price_id:
            return None
        for key, configured in self.prices.items():
            if configured == price_id:
                return key
        return None

    def configured_cycles(self, tier: Tier) -> list[BillingCycle]:
        return [cycle for cycle in BillingCycle if (tier, cycle) in self.prices]


def build_price_catalog(config: Settings) -> PriceCatalog:
    """Snapshot the price IDs from settings into an immutable catalog."""
    return PriceCatalog(
        prices={
            (Tier.PREMIUM, BillingCycle.MONTHLY): config.study_pro_monthly_price_id,
            (Tier.PREMIUM, BillingCycle.YEARLY): config.study_pro_yearly_price_id,
            (Tier.ENTERPRISE, BillingCycle.MONTHLY): config.study_master_monthly_price_id,
            (Tier.ENTERPRISE, BillingCycle.YEARLY): config.study_master_yearly_price_id,
        }
    )


@lru_cache
def get_price_catalog() -> PriceCatalog:
    """FastAPI dependency returning the catalog built once at first use."""
    return build_price_catalog(settings)
