"""Stripe webhook event handlers — apply subscription lifecycle events to the store.

Handlers raise ``NotFoundError`` when the event cannot be correlated to a
local row, ``ValidationError`` when it cannot be applied meaningfully, and
let ``ConflictError`` from the store propagate for stale events. The
dispatcher turns each of those into an acknowledged no-op.
"""

import logging
import uuid

from sqlalchemy.ext.asyncio import AsyncSession

from app.billing.errors import NotFoundError, ValidationError
from app.billing.events import (
    SubscriptionCreated,
    SubscriptionDeleted,
    SubscriptionPayload,
    SubscriptionTrialWillEnd,
    SubscriptionUpdated,
)
from app.billing.plans import BillingCycle, PriceCatalog, Tier, parse_billing_cycle, parse_tier
from app.models.subscription import Subscription, SubscriptionStatus
from app.services.subscription_service import (
    activate_subscription,
    apply_subscription_update,
    get_or_create_subscription,
    get_subscription_by_stripe_subscription,
    get_user,
    mark_cancelled,
)

logger = logging.getLogger(__name__)


def resolve_paid_tier(
    stripe_sub: SubscriptionPayload, catalog: PriceCatalog
) -> tuple[Tier | None, BillingCycle | None]:
    """Tier and cycle for a subscription: checkout metadata first, then the price."""
    tier = parse_tier(stripe_sub.metadata.get("tier"))
    cycle = parse_billing_cycle(stripe_sub.metadata.get("billingCycle"))
    by_price = catalog.lookup_price(stripe_sub.price_id)
    if by_price is not None:
        tier = tier or by_price[0]
        cycle = cycle or by_price[1]
    if tier == Tier.FREE:
        tier = None
    return tier, cycle


async def _subscription_for(db: AsyncSession, stripe_subscription_id: str) -> Subscription:
    subscription = await get_subscription_by_stripe_subscription(
        db, stripe_subscription_id, for_update=True
    )
    if subscription is None:
        raise NotFoundError(f"No local subscription for Stripe subscription {stripe_subscription_id}")
    return subscription


async def handle_subscription_created(
    db: AsyncSession, event: SubscriptionCreated, catalog: PriceCatalog
) -> None:
    """Handle customer.subscription.created — activate the paid tier.

    The only event guaranteed to carry ``userId`` in metadata.
    """
    stripe_sub = event.subscription
    raw_user_id = stripe_sub.metadata.get("userId")
    if not raw_user_id:
        raise NotFoundError(f"No userId in metadata of subscription {stripe_sub.id}")
    try:
        user_id = uuid.UUID(raw_user_id)
    except ValueError:
        raise NotFoundError(f"Malformed userId {raw_user_id!r} on subscription {stripe_sub.id}") from None

    tier, cycle = resolve_paid_tier(stripe_sub, catalog)
    if tier is None:
        raise ValidationError(
            f"Cannot determine paid tier for subscription {stripe_sub.id} "
            f"(metadata tier={stripe_sub.metadata.get('tier')!r}, price={stripe_sub.price_id})"
        )

    user = await get_user(db, user_id)
    subscription = await get_or_create_subscription(db, user)
    await activate_subscription(
        db,
        subscription,
        stripe_subscription_id=stripe_sub.id,
        stripe_customer_id=stripe_sub.customer_id,
        tier=tier,
        billing_cycle=cycle,
        current_period_start=stripe_sub.period_start,
        current_period_end=stripe_sub.period_end,
        cancel_at_period_end=stripe_sub.cancel_at_period_end,
        event_at=event.created_at,
    )


async def handle_subscription_updated(
    db: AsyncSession, event: SubscriptionUpdated, catalog: PriceCatalog
) -> None:
    """Handle customer.subscription.updated — sync status, period and plan."""
    stripe_sub = event.subscription
    subscription = await _subscription_for(db, stripe_sub.id)

    status = SubscriptionStatus.from_processor(stripe_sub.status)
    by_price = catalog.lookup_price(stripe_sub.price_id)
    tier, cycle = by_price if by_price is not None else (None, None)

    cancelled_at = None
    if status == SubscriptionStatus.CANCELLED:
        cancelled_at = event.subscription_ended_at or event.created_at

    await apply_subscription_update(
        db,
        subscription,
        stripe_subscription_id=stripe_sub.id,
        status=status,
        current_period_start=stripe_sub.period_start,
        current_period_end=stripe_sub.period_end,
        cancel_at_period_end=stripe_sub.cancel_at_period_end,
        tier=tier,
        billing_cycle=cycle,
        cancelled_at=cancelled_at,
        event_at=event.created_at,
    )


async def handle_subscription_deleted(
    db: AsyncSession, event: SubscriptionDeleted, catalog: PriceCatalog
) -> None:
    """Handle customer.subscription.deleted — mark cancelled, keep history."""
    stripe_sub = event.subscription
    subscription = await _subscription_for(db, stripe_sub.id)
    cancelled_at = event.subscription_ended_at or event.created_at
    if cancelled_at is None:
        raise ValidationError(f"Delete event {event.id} carries no timestamp")
    await mark_cancelled(
        db,
        subscription,
        cancelled_at=cancelled_at,
        event_at=event.created_at,
    )


async def handle_subscription_trial_will_end(
    db: AsyncSession, event: SubscriptionTrialWillEnd, catalog: PriceCatalog
) -> None:
    """Handle customer.subscription.trial_will_end — notification hook only."""
    logger.info(
        "Trial ending for subscription %s at %s",
        event.subscription.id,
        event.subscription.trial_end,
    )
