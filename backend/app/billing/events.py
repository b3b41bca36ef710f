"""Webhook ingress: signature verification and typed event decoding.

Stripe signs the exact request bytes, so the body must reach
``verify_event`` untouched. After verification the JSON is decoded once into
one of the event classes below; handlers never see raw dictionaries.
"""

import json
import logging
from datetime import datetime
from typing import Any

import pydantic
import stripe
from pydantic import BaseModel, ConfigDict, Field, field_validator

from app.billing.errors import VerificationError
from app.database import from_unix

logger = logging.getLogger(__name__)


class _StripePayload(BaseModel):
    model_config = ConfigDict(extra="ignore")


class RecurringPayload(_StripePayload):
    interval: str
    interval_count: int = 1


class ProductPayload(_StripePayload):
    id: str
    name: str | None = None


class PricePayload(_StripePayload):
    id: str
    unit_amount: int | None = None
    currency: str | None = None
    recurring: RecurringPayload | None = None
    product: ProductPayload | str | None = None


class CustomerPayload(_StripePayload):
    id: str
    email: str | None = None
    name: str | None = None


class SubscriptionItemPayload(_StripePayload):
    price: PricePayload | None = None
    # API 2025-08-27 (basil) moved the billing period onto the item.
    current_period_start: int | None = None
    current_period_end: int | None = None


class SubscriptionPayload(_StripePayload):
    """The subscription object carried by ``customer.subscription.*`` events."""

    id: str
    customer: CustomerPayload | str | None = None
    status: str
    metadata: dict[str, str] = Field(default_factory=dict)
    items: list[SubscriptionItemPayload] = Field(default_factory=list)
    cancel_at_period_end: bool = False
    current_period_start: int | None = None
    current_period_end: int | None = None
    canceled_at: int | None = None
    ended_at: int | None = None
    created: int | None = None
    trial_start: int | None = None
    trial_end: int | None = None

    @classmethod
    def from_stripe(cls, obj: Any) -> "SubscriptionPayload":
        """Validate a subscription returned by the Stripe API (or a plain dict)."""
        data = obj.to_dict() if hasattr(obj, "to_dict") else obj
        return cls.model_validate(data)

    @field_validator("items", mode="before")
    @classmethod
    def _unwrap_list_object(cls, value: Any) -> Any:
        # Stripe wraps collections as {"object": "list", "data": [...]}
        if isinstance(value, dict):
            return value.get("data") or []
        return value or []

    @property
    def first_item(self) -> SubscriptionItemPayload | None:
        return self.items[0] if self.items else None

    @property
    def price(self) -> PricePayload | None:
        item = self.first_item
        return item.price if item else None

    @property
    def price_id(self) -> str | None:
        price = self.price
        return price.id if price else None

    @property
    def customer_id(self) -> str | None:
        if isinstance(self.customer, CustomerPayload):
            return self.customer.id
        return self.customer

    @property
    def period_start(self) -> datetime | None:
        item = self.first_item
        if item and item.current_period_start is not None:
            return from_unix(item.current_period_start)
        return from_unix(self.current_period_start)

    @property
    def period_end(self) -> datetime | None:
        item = self.first_item
        if item and item.current_period_end is not None:
            return from_unix(item.current_period_end)
        return from_unix(self.current_period_end)


class CheckoutSessionPayload(_StripePayload):
    """A Checkout Session as returned by ``checkout.sessions.retrieve``."""

    id: str
    payment_status: str | None = None
    metadata: dict[str, str] = Field(default_factory=dict)
    customer: CustomerPayload | str | None = None
    subscription: SubscriptionPayload | str | None = None

    @classmethod
    def from_stripe(cls, obj: Any) -> "CheckoutSessionPayload":
        data = obj.to_dict() if hasattr(obj, "to_dict") else obj
        return cls.model_validate(data)

    @property
    def customer_id(self) -> str | None:
        if isinstance(self.customer, CustomerPayload):
            return self.customer.id
        return self.customer

    @property
    def subscription_id(self) -> str | None:
        if isinstance(self.subscription, SubscriptionPayload):
            return self.subscription.id
        return self.subscription


class _WebhookEventBase(BaseModel):
    id: str
    type: str
    created: int | None = None

    @property
    def created_at(self) -> datetime | None:
        return from_unix(self.created)


class SubscriptionEvent(_WebhookEventBase):
    subscription: SubscriptionPayload

    @property
    def subscription_ended_at(self) -> datetime | None:
        """When Stripe ended (or cancelled) the subscription, if it says so."""
        sub = self.subscription
        return from_unix(sub.ended_at or sub.canceled_at)


class SubscriptionCreated(SubscriptionEvent):
    pass


class SubscriptionUpdated(SubscriptionEvent):
    pass


class SubscriptionDeleted(SubscriptionEvent):
    pass


class SubscriptionTrialWillEnd(SubscriptionEvent):
    pass


class UnknownEvent(_WebhookEventBase):
    raw: dict[str, Any] = Field(default_factory=dict)


WebhookEvent = (
    SubscriptionCreated
    | SubscriptionUpdated
    | SubscriptionDeleted
    | SubscriptionTrialWillEnd
    | UnknownEvent
)

EVENT_TYPES: dict[str, type[SubscriptionEvent]] = {
    "customer.subscription.created": SubscriptionCreated,
    "customer.subscription.updated": SubscriptionUpdated,
    "customer.subscription.deleted": SubscriptionDeleted,
    "customer.subscription.trial_will_end": SubscriptionTrialWillEnd,
}


def decode_event(raw: dict[str, Any]) -> WebhookEvent:
    """Decode a verified Stripe event dict into its typed variant.

    Unknown types, and known types whose object does not validate, become
    ``UnknownEvent`` so the delivery is still acknowledged.
    """
    event_id = str(raw.get("id", ""))
    event_type = str(raw.get("type", ""))
    created = raw.get("created")
    event_cls = EVENT_TYPES.get(event_type)
    if event_cls is not None:
        try:
            return event_cls(
                id=event_id,
                type=event_type,
                created=created,
                subscription=(raw.get("data") or {}).get("object"),
            )
        except pydantic.ValidationError:
            logger.exception("Malformed %s payload in event %s", event_type, event_id)
    return UnknownEvent(id=event_id, type=event_type, created=created, raw=raw)


def verify_event(raw_body: bytes, signature_header: str, secret: str) -> WebhookEvent:
    """Verify a webhook delivery and return the typed event.

    Raises:
        VerificationError: missing secret, bad signature, or unparseable body.
    """
    if not secret:
        logger.error("Webhook received but STRIPE_WEBHOOK_SECRET is not configured")
        raise VerificationError("Webhook secret not configured")
    if not signature_header:
        logger.warning("Webhook rejected: missing Stripe-Signature header")
        raise VerificationError("Missing signature")

    try:
        stripe.Webhook.construct_event(raw_body, signature_header, secret)
    except stripe.SignatureVerificationError as e:
        logger.warning("Webhook signature verification failed")
        raise VerificationError("Invalid signature") from e
    except ValueError as e:
        logger.warning("Invalid webhook payload")
        raise VerificationError("Invalid payload", code="invalid_payload") from e

    raw = json.loads(raw_body)
    if not isinstance(raw, dict):
        raise VerificationError("Invalid payload", code="invalid_payload")
    return decode_event(raw)
