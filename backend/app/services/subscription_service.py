"""Subscription service — the local subscription store.

All writes are absolute ("set status to X"), never increments, so replaying
an event converges on the same row. Writes that carry processor data pass
through ``_guard_ordering`` first; it rejects anything older than what the
row already reflects for the same Stripe subscription.
"""

import logging
import uuid
from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.billing.errors import ConflictError, NotFoundError
from app.billing.plans import BillingCycle, Tier, plan_label
from app.database import utcnow
from app.models.subscription import Subscription, SubscriptionStatus
from app.models.user import User

logger = logging.getLogger(__name__)


async def get_user(db: AsyncSession, user_id: uuid.UUID) -> User:
    """Load a user or raise NotFoundError."""
    result = await db.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()
    if user is None:
        raise NotFoundError("User not found")
    return user


async def find_subscription(db: AsyncSession, user_id: uuid.UUID) -> Subscription | None:
    """Read-only lookup of a user's subscription row."""
    result = await db.execute(
        select(Subscription).where(Subscription.user_id == user_id)
    )
    return result.scalar_one_or_none()


async def get_or_create_subscription(
    db: AsyncSession, user: User
) -> Subscription:
    """Get existing subscription or create the default inactive/free one."""
    subscription = await find_subscription(db, user.id)
    if subscription is not None:
        return subscription

    logger.info("Creating free-tier subscription for user %s", user.id)
    subscription = Subscription(
        user_id=user.id,
        tier=Tier.FREE.value,
        plan_label=plan_label(Tier.FREE),
        status=SubscriptionStatus.INACTIVE.value,
        cancel_at_period_end=False,
        unmanaged_override=False,
    )
    db.add(subscription)
    await db.flush()
    return subscription


async def get_subscription_by_stripe_subscription(
    db: AsyncSession, stripe_subscription_id: str, *, for_update: bool = False
) -> Subscription | None:
    """Look up subscription by Stripe subscription ID (used by webhooks).

    ``for_update`` takes a row lock on databases that support it, serializing
    concurrent deliveries for the same subscription across workers.
    """
    stmt = select(Subscription).where(
        Subscription.stripe_subscription_id == stripe_subscription_id
    )
    if for_update:
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


async def get_subscription_by_stripe_customer(
    db: AsyncSession, stripe_customer_id: str
) -> Subscription | None:
    """Look up subscription by Stripe customer ID."""
    result = await db.execute(
        select(Subscription).where(
            Subscription.stripe_customer_id == stripe_customer_id
        )
    )
    return result.scalars().first()


def _guard_ordering(
    subscription: Subscription,
    stripe_subscription_id: str,
    *,
    status: SubscriptionStatus,
    period_end: datetime | None,
    event_at: datetime | None,
) -> None:
    """Raise ConflictError if the write is older than the row's current state.

    Only applies when the row already tracks ``stripe_subscription_id``; a
    different (new) subscription replaces the old one outright. Cancellation
    is always allowed through.
    """
    if subscription.stripe_subscription_id != stripe_subscription_id:
        return
    if status == SubscriptionStatus.CANCELLED:
        return

    if subscription.status == SubscriptionStatus.CANCELLED.value:
        raise ConflictError(
            f"Subscription {stripe_subscription_id} is already cancelled; "
            f"refusing transition to {status.value}"
        )
    if (
        event_at is not None
        and subscription.last_event_at is not None
        and event_at < subscription.last_event_at
    ):
        raise ConflictError(
            f"Event from {event_at.isoformat()} is older than last applied event "
            f"({subscription.last_event_at.isoformat()}) for {stripe_subscription_id}"
        )
    if (
        period_end is not None
        and subscription.current_period_end is not None
        and period_end < subscription.current_period_end
    ):
        raise ConflictError(
            f"current_period_end would move backward for {stripe_subscription_id}: "
            f"{subscription.current_period_end.isoformat()} -> {period_end.isoformat()}"
        )


def _stamp_event(subscription: Subscription, event_at: datetime | None) -> None:
    if event_at is None:
        return
    if subscription.last_event_at is None or event_at > subscription.last_event_at:
        subscription.last_event_at = event_at


def _set_tier(subscription: Subscription, tier: Tier, billing_cycle: BillingCycle | None) -> None:
    subscription.tier = tier.value
    subscription.plan_label = plan_label(tier)
    if billing_cycle is not None:
        subscription.billing_cycle = billing_cycle.value


async def activate_subscription(
    db: AsyncSession,
    subscription: Subscription,
    *,
    stripe_subscription_id: str,
    stripe_customer_id: str | None,
    tier: Tier,
    billing_cycle: BillingCycle | None,
    current_period_start: datetime | None,
    current_period_end: datetime | None,
    cancel_at_period_end: bool = False,
    event_at: datetime | None = None,
) -> Subscription:
    """Point the row at a newly created Stripe subscription and mark it active.

    A live row tracking a different subscription is only replaced by a
    creation newer than the last event it applied.
    """
    if (
        subscription.stripe_subscription_id is not None
        and subscription.stripe_subscription_id != stripe_subscription_id
        and subscription.status != SubscriptionStatus.CANCELLED.value
        and event_at is not None
        and subscription.last_event_at is not None
        and event_at < subscription.last_event_at
    ):
        raise ConflictError(
            f"Creation of {stripe_subscription_id} at {event_at.isoformat()} predates the last "
            f"event applied for {subscription.stripe_subscription_id} "
            f"({subscription.last_event_at.isoformat()})"
        )
    _guard_ordering(
        subscription,
        stripe_subscription_id,
        status=SubscriptionStatus.ACTIVE,
        period_end=current_period_end,
        event_at=event_at,
    )
    if subscription.stripe_subscription_id != stripe_subscription_id:
        # A different subscription: its clock starts fresh.
        subscription.last_event_at = None
        subscription.cancelled_at = None

    subscription.stripe_subscription_id = stripe_subscription_id
    if stripe_customer_id:
        subscription.stripe_customer_id = stripe_customer_id
    _set_tier(subscription, tier, billing_cycle)
    subscription.status = SubscriptionStatus.ACTIVE.value
    subscription.current_period_start = current_period_start
    subscription.current_period_end = current_period_end
    subscription.cancel_at_period_end = cancel_at_period_end
    subscription.unmanaged_override = False
    subscription.override_reason = None
    _stamp_event(subscription, event_at)
    await db.flush()

    logger.info(
        "Activated subscription %s for user %s: tier=%s (%s), period_end=%s",
        stripe_subscription_id,
        subscription.user_id,
        tier.value,
        subscription.plan_label,
        current_period_end,
    )
    return subscription


async def apply_subscription_update(
    db: AsyncSession,
    subscription: Subscription,
    *,
    stripe_subscription_id: str,
    status: SubscriptionStatus,
    current_period_start: datetime | None,
    current_period_end: datetime | None,
    cancel_at_period_end: bool,
    tier: Tier | None = None,
    billing_cycle: BillingCycle | None = None,
    cancelled_at: datetime | None = None,
    event_at: datetime | None = None,
) -> Subscription:
    """Mirror a processor-side change onto the row.

    Period fields are only overwritten when the processor supplied them.
    """
    _guard_ordering(
        subscription,
        stripe_subscription_id,
        status=status,
        period_end=current_period_end,
        event_at=event_at,
    )

    subscription.status = status.value
    if current_period_start is not None:
        subscription.current_period_start = current_period_start
    if current_period_end is not None:
        subscription.current_period_end = current_period_end
    subscription.cancel_at_period_end = cancel_at_period_end
    if tier is not None and tier != Tier.FREE:
        _set_tier(subscription, tier, billing_cycle)
    if status == SubscriptionStatus.CANCELLED:
        subscription.cancel_at_period_end = False
        subscription.cancelled_at = cancelled_at or event_at or utcnow()
    _stamp_event(subscription, event_at)
    await db.flush()

    logger.info(
        "Updated subscription %s: status=%s, tier=%s, period_end=%s, cancel_at_period_end=%s",
        stripe_subscription_id,
        subscription.status,
        subscription.tier,
        subscription.current_period_end,
        subscription.cancel_at_period_end,
    )
    return subscription


async def mark_cancelled(
    db: AsyncSession,
    subscription: Subscription,
    *,
    cancelled_at: datetime,
    event_at: datetime | None = None,
) -> Subscription:
    """Terminal transition: status=cancelled, keeping tier and Stripe IDs for history."""
    subscription.status = SubscriptionStatus.CANCELLED.value
    subscription.cancel_at_period_end = False
    subscription.cancelled_at = cancelled_at
    _stamp_event(subscription, event_at)
    await db.flush()

    logger.info(
        "Cancelled subscription %s (user %s, tier=%s)",
        subscription.stripe_subscription_id,
        subscription.user_id,
        subscription.tier,
    )
    return subscription


async def apply_override(
    db: AsyncSession,
    subscription: Subscription,
    *,
    tier: Tier,
    status: SubscriptionStatus,
    current_period_end: datetime | None = None,
    reason: str | None = None,
) -> Subscription:
    """Administrative write that bypasses Stripe.

    Never invents a Stripe subscription ID. The row is flagged
    ``unmanaged_override`` unless the override lands on the consistent
    free/no-subscription state; the flag is cleared by the next
    ``customer.subscription.created`` event or an explicit sync.
    """
    _set_tier(subscription, tier, None)
    subscription.status = status.value
    if current_period_end is not None:
        subscription.current_period_start = utcnow()
        subscription.current_period_end = current_period_end
    subscription.cancel_at_period_end = False

    consistent = tier == Tier.FREE and subscription.stripe_subscription_id is None
    subscription.unmanaged_override = not consistent
    subscription.override_reason = None if consistent else reason
    await db.flush()

    logger.warning(
        "Manual subscription override for user %s: tier=%s status=%s unmanaged=%s reason=%r",
        subscription.user_id,
        tier.value,
        status.value,
        subscription.unmanaged_override,
        reason,
    )
    return subscription


async def expire_lapsed_subscriptions(db: AsyncSession, now: datetime | None = None) -> int:
    """Cancel rows whose scheduled cancellation has reached the period end.

    Returns the number of rows updated.
    """
    now = now or utcnow()
    result = await db.execute(
        update(Subscription)
        .where(
            Subscription.status.in_(
                [SubscriptionStatus.ACTIVE.value, SubscriptionStatus.PAST_DUE.value]
            ),
            Subscription.cancel_at_period_end.is_(True),
            Subscription.current_period_end.is_not(None),
            Subscription.current_period_end <= now,
        )
        .values(
            status=SubscriptionStatus.CANCELLED.value,
            cancel_at_period_end=False,
            cancelled_at=Subscription.current_period_end,
        )
        .execution_options(synchronize_session=False)
    )
    count = result.rowcount or 0
    if count:
        logger.info("Expired %d subscription(s) whose cancellation took effect", count)
    return count
