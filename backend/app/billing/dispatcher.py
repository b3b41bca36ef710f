"""Route verified webhook events to their handlers.

``dispatch`` never raises: Stripe retries any delivery that does not get a
2xx, so one bad event must not turn into a retry storm. Every outcome is
logged and returned so the endpoint can report it.
"""

import logging
from collections.abc import Awaitable, Callable
from enum import Enum

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.billing.errors import ConflictError, NotFoundError, ValidationError
from app.billing.events import (
    SubscriptionCreated,
    SubscriptionDeleted,
    SubscriptionEvent,
    SubscriptionTrialWillEnd,
    SubscriptionUpdated,
    WebhookEvent,
)
from app.billing.locks import subscription_locks
from app.billing.plans import PriceCatalog
from app.billing.webhooks import (
    handle_subscription_created,
    handle_subscription_deleted,
    handle_subscription_trial_will_end,
    handle_subscription_updated,
)
from app.models.processed_webhook_event import ProcessedWebhookEvent

logger = logging.getLogger(__name__)


class DispatchOutcome(str, Enum):
    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
    STALE = "stale"
    REJECTED = "rejected"
    UNRESOLVED = "unresolved"
    FAILED = "failed"


Handler = Callable[[AsyncSession, SubscriptionEvent, PriceCatalog], Awaitable[None]]

# Map event classes to handler functions
EVENT_HANDLERS: dict[type[SubscriptionEvent], Handler] = {
    SubscriptionCreated: handle_subscription_created,
    SubscriptionUpdated: handle_subscription_updated,
    SubscriptionDeleted: handle_subscription_deleted,
    SubscriptionTrialWillEnd: handle_subscription_trial_will_end,
}


async def is_event_processed(db: AsyncSession, event_id: str) -> bool:
    result = await db.execute(
        select(ProcessedWebhookEvent.id).where(ProcessedWebhookEvent.event_id == event_id)
    )
    return result.first() is not None


async def _record(db: AsyncSession, event: SubscriptionEvent, outcome: DispatchOutcome) -> None:
    db.add(ProcessedWebhookEvent(event_id=event.id, event_type=event.type, outcome=outcome.value))
    await db.commit()


async def dispatch(db: AsyncSession, event: WebhookEvent, catalog: PriceCatalog) -> DispatchOutcome:
    """Apply ``event`` once. Safe to call repeatedly with the same event."""
    handler = EVENT_HANDLERS.get(type(event))
    if handler is None:
        logger.info("Ignoring unhandled webhook event type %s (id=%s)", event.type, event.id)
        return DispatchOutcome.IGNORED

    logger.info(
        "Processing webhook event %s (id=%s, subscription=%s)",
        event.type,
        event.id,
        event.subscription.id,
    )
    try:
        async with subscription_locks.acquire(event.subscription.id):
            outcome = await _dispatch_locked(db, event, handler, catalog)
    except Exception:
        await db.rollback()
        logger.exception("Error processing webhook event %s (%s)", event.id, event.type)
        return DispatchOutcome.FAILED

    logger.info("Webhook event %s (%s): %s", event.id, event.type, outcome.value)
    return outcome


async def _dispatch_locked(
    db: AsyncSession,
    event: SubscriptionEvent,
    handler: Handler,
    catalog: PriceCatalog,
) -> DispatchOutcome:
    if await is_event_processed(db, event.id):
        return DispatchOutcome.DUPLICATE

    try:
        await handler(db, event, catalog)
    except ConflictError as e:
        await db.rollback()
        logger.warning("Discarding stale event %s: %s", event.id, e.message)
        outcome = DispatchOutcome.STALE
    except ValidationError as e:
        await db.rollback()
        logger.warning("Rejecting event %s: %s", event.id, e.message)
        outcome = DispatchOutcome.REJECTED
    except NotFoundError as e:
        # Not recorded: a later redelivery may find the row once it exists.
        await db.rollback()
        logger.warning("Unresolvable event %s: %s", event.id, e.message)
        return DispatchOutcome.UNRESOLVED
    else:
        outcome = DispatchOutcome.PROCESSED

    # Stale and rejected events are recorded too so replays short-circuit.
    try:
        await _record(db, event, outcome)
    except IntegrityError:
        # Another worker recorded the same event between our check and commit.
        await db.rollback()
        return DispatchOutcome.DUPLICATE
    return outcome
