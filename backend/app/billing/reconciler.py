"""Pull-based reconciliation against Stripe.

``fetch_authoritative`` is read-only: it returns Stripe's current view and
leaves the local row alone, so it can never race a webhook. Persisting that
view is a separate, explicit call (``sync_from_processor``), and
``confirm_checkout_session`` applies a completed checkout whose webhook was lost.
"""

import logging
import math
import uuid

import pydantic
from sqlalchemy.ext.asyncio import AsyncSession

from app.billing.errors import NotFoundError, UpstreamError, ValidationError
from app.billing.events import CheckoutSessionPayload, CustomerPayload, ProductPayload, SubscriptionPayload
from app.billing.locks import subscription_locks
from app.billing.plans import PriceCatalog, Tier, parse_billing_cycle, parse_tier, plan_label
from app.billing.stripe_client import SUBSCRIPTION_EXPAND, get_checkout_session, get_subscription
from app.billing.webhooks import resolve_paid_tier
from app.database import from_unix, utcnow
from app.models.subscription import Subscription, SubscriptionStatus
from app.schemas.billing import SubscriptionSnapshot
from app.services.subscription_service import (
    activate_subscription,
    apply_subscription_update,
    find_subscription,
    get_or_create_subscription,
    get_subscription_by_stripe_subscription,
    get_user,
)

logger = logging.getLogger(__name__)

_INTERVAL_TO_CYCLE = {"month": "monthly", "year": "yearly"}

# Local fields compared against the snapshot when reporting drift.
_DRIFT_FIELDS = (
    "status",
    "tier",
    "billing_cycle",
    "current_period_start",
    "current_period_end",
    "cancel_at_period_end",
)


async def _local_subscription(db: AsyncSession, user_id: uuid.UUID) -> Subscription:
    user = await get_user(db, user_id)
    subscription = await find_subscription(db, user.id)
    if subscription is None or not subscription.stripe_subscription_id:
        raise NotFoundError("No Stripe subscription found for this user")
    return subscription


def build_snapshot(stripe_sub: SubscriptionPayload, catalog: PriceCatalog) -> SubscriptionSnapshot:
    """Denormalize an expanded Stripe subscription into a snapshot."""
    price = stripe_sub.price
    recurring = price.recurring if price else None
    product = price.product if price and isinstance(price.product, ProductPayload) else None
    customer = stripe_sub.customer if isinstance(stripe_sub.customer, CustomerPayload) else None

    tier = parse_tier(stripe_sub.metadata.get("tier"))
    cycle = parse_billing_cycle(stripe_sub.metadata.get("billingCycle"))
    by_price = catalog.lookup_price(stripe_sub.price_id)
    if by_price is not None:
        tier, cycle = by_price
    if cycle is None and recurring is not None:
        cycle = parse_billing_cycle(_INTERVAL_TO_CYCLE.get(recurring.interval))

    period_end = stripe_sub.period_end
    days_remaining = None
    if period_end is not None:
        days_remaining = max(math.ceil((period_end - utcnow()).total_seconds() / 86400), 0)

    return SubscriptionSnapshot(
        subscription_id=stripe_sub.id,
        processor_status=stripe_sub.status,
        status=SubscriptionStatus.from_processor(stripe_sub.status).value,
        tier=tier.value if tier else None,
        plan_label=plan_label(tier) if tier else None,
        billing_cycle=cycle.value if cycle else None,
        current_period_start=stripe_sub.period_start,
        current_period_end=period_end,
        days_remaining=days_remaining,
        cancel_at_period_end=stripe_sub.cancel_at_period_end,
        canceled_at=from_unix(stripe_sub.canceled_at),
        amount=price.unit_amount if price else None,
        currency=price.currency if price else None,
        interval=recurring.interval if recurring else None,
        interval_count=recurring.interval_count if recurring else None,
        price_id=stripe_sub.price_id,
        product_name=product.name if product else None,
        customer_id=stripe_sub.customer_id,
        customer_email=customer.email if customer else None,
        customer_name=customer.name if customer else None,
        created=from_unix(stripe_sub.created),
        trial_start=from_unix(stripe_sub.trial_start),
        trial_end=from_unix(stripe_sub.trial_end),
    )


async def _retrieve_subscription(stripe_subscription_id: str) -> SubscriptionPayload:
    stripe_sub = await get_subscription(stripe_subscription_id, expand=SUBSCRIPTION_EXPAND)
    try:
        return SubscriptionPayload.from_stripe(stripe_sub)
    except pydantic.ValidationError as e:
        logger.error("Unexpected subscription shape from Stripe for %s: %s", stripe_subscription_id, e)
        raise UpstreamError("subscriptions.retrieve", upstream_code="invalid_response") from e


async def _fetch_snapshot(stripe_subscription_id: str, catalog: PriceCatalog) -> SubscriptionSnapshot:
    return build_snapshot(await _retrieve_subscription(stripe_subscription_id), catalog)


async def fetch_authoritative(
    db: AsyncSession, user_id: uuid.UUID, catalog: PriceCatalog
) -> SubscriptionSnapshot:
    """Fetch the user's subscription, price, product and customer from Stripe.

    Raises NotFoundError if the user has no Stripe subscription and
    UpstreamError if Stripe fails. Never writes.
    """
    subscription = await _local_subscription(db, user_id)
    snapshot = await _fetch_snapshot(subscription.stripe_subscription_id, catalog)
    logger.info(
        "Fetched Stripe snapshot for user %s: %s status=%s period_end=%s",
        user_id,
        snapshot.subscription_id,
        snapshot.processor_status,
        snapshot.current_period_end,
    )
    return snapshot


def detect_drift(subscription: Subscription, snapshot: SubscriptionSnapshot) -> list[str]:
    """Names of local fields that disagree with the snapshot."""
    drift = [
        name
        for name in _DRIFT_FIELDS
        if getattr(snapshot, name) is not None and getattr(subscription, name) != getattr(snapshot, name)
    ]
    if subscription.stripe_subscription_id != snapshot.subscription_id:
        drift.append("stripe_subscription_id")
    if subscription.unmanaged_override:
        drift.append("unmanaged_override")
    return drift


async def sync_from_processor(
    db: AsyncSession, user_id: uuid.UUID, catalog: PriceCatalog
) -> Subscription:
    """Fetch the authoritative view and write it to the local row.

    Runs under the same per-subscription lock as webhook dispatch. A snapshot
    that would move ``current_period_end`` backward raises ConflictError.
    """
    subscription = await _local_subscription(db, user_id)
    stripe_subscription_id = subscription.stripe_subscription_id
    snapshot = await _fetch_snapshot(stripe_subscription_id, catalog)

    async with subscription_locks.acquire(stripe_subscription_id):
        locked = await get_subscription_by_stripe_subscription(
            db, stripe_subscription_id, for_update=True
        )
        if locked is None:
            raise NotFoundError("Subscription changed while syncing; retry")

        tier = parse_tier(snapshot.tier)
        if tier in (None, Tier.FREE) and locked.unmanaged_override:
            raise ValidationError("Cannot determine the paid tier from Stripe; override left in place")

        await apply_subscription_update(
            db,
            locked,
            stripe_subscription_id=snapshot.subscription_id,
            status=SubscriptionStatus(snapshot.status),
            current_period_start=snapshot.current_period_start,
            current_period_end=snapshot.current_period_end,
            cancel_at_period_end=snapshot.cancel_at_period_end,
            tier=tier,
            billing_cycle=parse_billing_cycle(snapshot.billing_cycle),
            cancelled_at=snapshot.canceled_at,
        )
        if snapshot.customer_id:
            locked.stripe_customer_id = snapshot.customer_id
        locked.unmanaged_override = False
        locked.override_reason = None
        await db.commit()

    logger.info("Synced subscription %s for user %s from Stripe", stripe_subscription_id, user_id)
    return locked


# A trial checkout completes without a charge.
_SETTLED_PAYMENT_STATUSES = ("paid", "no_payment_required")


async def confirm_checkout_session(
    db: AsyncSession, user_id: uuid.UUID, session_id: str, catalog: PriceCatalog
) -> Subscription:
    """Activate the subscription a completed Checkout Session created.

    Repairs a first activation whose ``customer.subscription.created`` webhook
    never arrived. The session must belong to ``user_id`` and be settled. The
    subscription is applied under the same lock and ordering guards as the
    webhook; a row already tracking it is returned unchanged.
    """
    user = await get_user(db, user_id)
    raw_session = await get_checkout_session(session_id)
    try:
        session = CheckoutSessionPayload.from_stripe(raw_session)
    except pydantic.ValidationError as e:
        logger.error("Unexpected checkout session shape from Stripe for %s: %s", session_id, e)
        raise UpstreamError("checkout.sessions.retrieve", upstream_code="invalid_response") from e

    if session.metadata.get("userId") != str(user.id):
        raise ValidationError("Checkout session does not belong to this user")
    if session.payment_status not in _SETTLED_PAYMENT_STATUSES:
        raise ValidationError("Payment not completed")
    if not session.subscription_id:
        raise ValidationError("Checkout session has no subscription")

    stripe_sub = await _retrieve_subscription(session.subscription_id)
    tier, cycle = resolve_paid_tier(stripe_sub, catalog)
    if tier is None:
        tier = parse_tier(session.metadata.get("tier"))
        if tier == Tier.FREE:
            tier = None
    cycle = cycle or parse_billing_cycle(session.metadata.get("billingCycle"))
    if tier is None:
        raise ValidationError(f"Cannot determine paid tier for subscription {stripe_sub.id}")

    async with subscription_locks.acquire(stripe_sub.id):
        subscription = await get_or_create_subscription(db, user)
        if subscription.stripe_subscription_id == stripe_sub.id:
            logger.info("Checkout session %s already applied for user %s", session_id, user.id)
            return subscription

        await activate_subscription(
            db,
            subscription,
            stripe_subscription_id=stripe_sub.id,
            stripe_customer_id=stripe_sub.customer_id or session.customer_id,
            tier=tier,
            billing_cycle=cycle,
            current_period_start=stripe_sub.period_start,
            current_period_end=stripe_sub.period_end,
            cancel_at_period_end=stripe_sub.cancel_at_period_end,
            event_at=from_unix(stripe_sub.created),
        )
        await db.commit()

    logger.info(
        "Confirmed checkout session %s for user %s: subscription %s",
        session_id,
        user.id,
        stripe_sub.id,
    )
    return subscription
