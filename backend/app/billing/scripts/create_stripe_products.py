"""Create the Study Pro / Study Master products and prices in Stripe test mode.

Run once inside the backend container:
    python -m app.billing.scripts.create_stripe_products

Outputs the four price IDs to set in .env (STUDY_PRO_MONTHLY_PRICE_ID, ...).
"""

import asyncio

import stripe
from stripe import StripeClient

from app.billing.plans import PLANS, BillingCycle, Tier
from app.config import settings

# (tier, cycle) -> amount in pence
PRICES: dict[tuple[Tier, BillingCycle], int] = {
    (Tier.PREMIUM, BillingCycle.MONTHLY): 799,
    (Tier.PREMIUM, BillingCycle.YEARLY): 7999,
    (Tier.ENTERPRISE, BillingCycle.MONTHLY): 999,
    (Tier.ENTERPRISE, BillingCycle.YEARLY): 9999,
}

ENV_NAMES: dict[Tier, str] = {
    Tier.PREMIUM: "STUDY_PRO",
    Tier.ENTERPRISE: "STUDY_MASTER",
}

_INTERVALS = {BillingCycle.MONTHLY: "month", BillingCycle.YEARLY: "year"}


async def main() -> None:
    if not settings.stripe_secret_key:
        print("ERROR: STRIPE_SECRET_KEY is not set in .env")
        return

    client = StripeClient(
        settings.stripe_secret_key,
        http_client=stripe.HTTPXClient(),
    )

    env_lines: list[str] = []
    for tier, env_name in ENV_NAMES.items():
        plan = PLANS[tier]
        product = await client.v1.products.create_async(
            params={"name": plan.display_name, "description": plan.description}
        )
        print(f"Created product: {product.name} ({product.id})")

        for cycle in BillingCycle:
            amount = PRICES[(tier, cycle)]
            price = await client.v1.prices.create_async(
                params={
                    "product": product.id,
                    "unit_amount": amount,
                    "currency": "gbp",
                    "recurring": {"interval": _INTERVALS[cycle]},
                    "metadata": {"tier": tier.value, "billingCycle": cycle.value},
                }
            )
            print(f"  Price: £{amount / 100:.2f}/{_INTERVALS[cycle]} ({price.id})")
            env_lines.append(f"{env_name}_{cycle.value.upper()}_PRICE_ID={price.id}")

    print("\n--- Add these to your .env ---")
    for line in env_lines:
        print(line)


if __name__ == "__main__":
    asyncio.run(main())
