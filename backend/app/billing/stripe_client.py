"""Async Stripe API wrapper.

Every call goes through a client configured with a bounded timeout and
translates Stripe exceptions into ``UpstreamError`` so callers only deal with
the billing error taxonomy.
"""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import stripe
from stripe import StripeClient

from app.billing.errors import UpstreamError
from app.config import settings

logger = logging.getLogger(__name__)

SUBSCRIPTION_EXPAND = ["items.data.price.product", "customer"]


def get_stripe_client() -> StripeClient:
    """Create a StripeClient instance with async HTTP support and a bounded timeout."""
    return StripeClient(
        settings.stripe_secret_key,
        http_client=stripe.HTTPXClient(timeout=settings.stripe_timeout_seconds),
        max_network_retries=settings.stripe_max_network_retries,
    )


@asynccontextmanager
async def _stripe_call(operation: str) -> AsyncIterator[None]:
    """Translate Stripe failures raised inside the block into UpstreamError."""
    try:
        yield
    except stripe.APIConnectionError as e:
        # Network failures and timeouts: nothing reached Stripe, safe to retry.
        logger.error("Stripe %s unreachable: %s", operation, e.user_message or e)
        raise UpstreamError(
            operation,
            upstream_code="processor_unreachable",
            diagnostic=str(e),
            retryable=True,
        ) from e
    except stripe.StripeError as e:
        logger.error(
            "Stripe %s failed: code=%s http_status=%s request_id=%s message=%s",
            operation,
            e.code,
            e.http_status,
            e.request_id,
            e.user_message,
        )
        raise UpstreamError(
            operation,
            upstream_code=e.code or type(e).__name__,
            http_status=e.http_status,
            request_id=e.request_id,
            diagnostic=e.user_message,
        ) from e


async def create_checkout_session(
    price_id: str,
    success_url: str,
    cancel_url: str,
    metadata: dict[str, str],
    customer_id: str | None = None,
    customer_email: str | None = None,
) -> stripe.checkout.Session:
    """Create a hosted Checkout Session for a subscription.

    The metadata is attached both to the session and to the subscription it
    creates, so ``customer.subscription.created`` carries the user ID.
    """
    params: dict = {
        "mode": "subscription",
        "billing_address_collection": "auto",
        "line_items": [{"price": price_id, "quantity": 1}],
        "success_url": success_url,
        "cancel_url": cancel_url,
        "metadata": metadata,
        "subscription_data": {"metadata": metadata},
    }
    if customer_id:
        params["customer"] = customer_id
    elif customer_email:
        params["customer_email"] = customer_email

    logger.info(
        "Creating checkout session for user %s, price %s",
        metadata.get("userId"),
        price_id,
    )
    async with _stripe_call("checkout.sessions.create"):
        client = get_stripe_client()
        session = await client.v1.checkout.sessions.create_async(params=params)
    logger.info("Created checkout session %s for user %s", session.id, metadata.get("userId"))
    return session


async def get_checkout_session(session_id: str) -> stripe.checkout.Session:
    """Retrieve a Checkout Session by ID."""
    async with _stripe_call("checkout.sessions.retrieve"):
        client = get_stripe_client()
        return await client.v1.checkout.sessions.retrieve_async(session_id)


async def create_portal_session(
    customer_id: str, return_url: str
) -> stripe.billing_portal.Session:
    """Create a Stripe Customer Portal session for subscription management."""
    logger.info("Creating portal session for customer %s", customer_id)
    async with _stripe_call("billing_portal.sessions.create"):
        client = get_stripe_client()
        return await client.v1.billing_portal.sessions.create_async(
            params={
                "customer": customer_id,
                "return_url": return_url,
            }
        )


async def get_subscription(subscription_id: str, expand: list[str] | None = None) -> stripe.Subscription:
    """Retrieve a Stripe subscription by ID, optionally expanding related objects."""
    params = {"expand": expand} if expand else None
    async with _stripe_call("subscriptions.retrieve"):
        client = get_stripe_client()
        return await client.v1.subscriptions.retrieve_async(subscription_id, params=params)


async def schedule_subscription_cancellation(subscription_id: str) -> stripe.Subscription:
    """Ask Stripe to cancel the subscription when the current period ends."""
    logger.info("Scheduling cancellation of subscription %s at period end", subscription_id)
    async with _stripe_call("subscriptions.update"):
        client = get_stripe_client()
        return await client.v1.subscriptions.update_async(
            subscription_id,
            params={"cancel_at_period_end": True},
        )
