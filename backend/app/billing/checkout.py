"""Synchronous billing actions that talk to Stripe: checkout, portal, cancellation.

None of these write the local subscription row. Activation only happens once
Stripe confirms it through a webhook (or an explicit sync).
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession

from app.billing.errors import UpstreamError, ValidationError
from app.billing.events import SubscriptionPayload
from app.billing.plans import PriceCatalog
from app.billing.stripe_client import (
    create_checkout_session,
    create_portal_session,
    schedule_subscription_cancellation,
)
from app.config import settings
from app.services.subscription_service import find_subscription, get_user

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CheckoutResult:
    session_id: str
    redirect_url: str


@dataclass(frozen=True)
class CancellationResult:
    subscription_id: str
    cancel_at_period_end: bool
    current_period_end: datetime | None


def checkout_success_url() -> str:
    return f"{settings.frontend_url}/payment-success?success=true&session_id={{CHECKOUT_SESSION_ID}}"


def checkout_cancel_url() -> str:
    return f"{settings.frontend_url}/pricing?canceled=true"


def portal_return_url() -> str:
    return f"{settings.frontend_url}/profile"


async def start_checkout(
    db: AsyncSession,
    user_id: uuid.UUID,
    tier: str | None,
    billing_cycle: str | None,
    catalog: PriceCatalog,
) -> CheckoutResult:
    """Mint a hosted Checkout Session for ``(tier, billing_cycle)``.

    The catalog is resolved before anything else so a bad pair never reaches
    Stripe. The returned session ID is opaque.
    """
    price_id = catalog.resolve(tier, billing_cycle)
    user = await get_user(db, user_id)
    subscription = await find_subscription(db, user.id)
    customer_id = subscription.stripe_customer_id if subscription else None

    session = await create_checkout_session(
        price_id=price_id,
        success_url=checkout_success_url(),
        cancel_url=checkout_cancel_url(),
        metadata={
            "userId": str(user.id),
            "tier": tier,
            "billingCycle": billing_cycle,
        },
        customer_id=customer_id,
        customer_email=user.email,
    )
    if not session.url:
        logger.error("Checkout session %s returned without a redirect URL", session.id)
        raise UpstreamError("checkout.sessions.create", upstream_code="missing_url")
    return CheckoutResult(session_id=session.id, redirect_url=session.url)


async def open_portal(
    db: AsyncSession,
    user_id: uuid.UUID,
    customer_id: str | None = None,
    *,
    allow_foreign_customer: bool = False,
) -> str:
    """Create a Customer Portal session and return its URL.

    A ``customer_id`` from the request is only honoured when it matches the
    stored one, or for admins (``allow_foreign_customer``).
    """
    user = await get_user(db, user_id)
    subscription = await find_subscription(db, user.id)
    stored = subscription.stripe_customer_id if subscription else None

    if customer_id and customer_id != stored and not allow_foreign_customer:
        raise ValidationError("Customer ID does not belong to this user")
    customer_to_use = customer_id or stored
    if not customer_to_use:
        raise ValidationError("No customer ID found. Please subscribe first.")

    session = await create_portal_session(customer_to_use, portal_return_url())
    logger.info("Portal session %s created for user %s", session.id, user.id)
    return session.url


async def schedule_cancellation(db: AsyncSession, user_id: uuid.UUID) -> CancellationResult:
    """Ask Stripe to cancel at period end; the webhook updates the local row."""
    user = await get_user(db, user_id)
    subscription = await find_subscription(db, user.id)
    if subscription is None or not subscription.stripe_subscription_id:
        raise ValidationError("No Stripe subscription to cancel")
    if subscription.unmanaged_override:
        raise ValidationError("Subscription was set manually and is not managed by Stripe")

    updated = SubscriptionPayload.from_stripe(
        await schedule_subscription_cancellation(subscription.stripe_subscription_id)
    )
    return CancellationResult(
        subscription_id=updated.id,
        cancel_at_period_end=updated.cancel_at_period_end,
        current_period_end=updated.period_end,
    )
