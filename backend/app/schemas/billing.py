"""Pydantic v2 request/response schemas for billing endpoints.

JSON bodies use camelCase (``billingCycle``, ``redirectUrl``); Python code
uses the snake_case attribute names.
"""

from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, field_validator
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# --- Request schemas ---


class CheckoutRequest(CamelModel):
    """Request to create a Stripe Checkout session.

    Left as optional plain strings so a missing or unknown tier/cycle is a 400
    from the catalog rather than a 422 from request validation.
    """

    tier: str | None = None
    billing_cycle: str | None = None


class PortalRequest(CamelModel):
    """Request to create a Stripe Customer Portal session."""

    customer_id: str | None = None


class OverrideRequest(CamelModel):
    """Administrative subscription override."""

    tier: str
    status: str = "active"
    current_period_end: datetime | None = None
    reason: str | None = None

    @field_validator("current_period_end")
    @classmethod
    def _to_naive_utc(cls, value: datetime | None) -> datetime | None:
        # Stored columns are naive UTC, like the Stripe timestamps.
        if value is not None and value.tzinfo is not None:
            return value.astimezone(timezone.utc).replace(tzinfo=None)
        return value


# --- Response schemas ---


class PlanResponse(CamelModel):
    """Plan details for display."""

    tier: str
    display_name: str
    description: str
    purchasable: bool
    billing_cycles: list[str]


class PlansListResponse(CamelModel):
    """All available plans."""

    plans: list[PlanResponse]


class CheckoutResponse(CamelModel):
    """Stripe Checkout session returned to the frontend."""

    session_id: str
    redirect_url: str


class PortalResponse(CamelModel):
    """Stripe Customer Portal URL returned to the frontend."""

    redirect_url: str


class CancellationResponse(CamelModel):
    subscription_id: str
    cancel_at_period_end: bool
    current_period_end: datetime | None


class SubscriptionResponse(CamelModel):
    """The locally cached subscription record."""

    status: str
    tier: str
    plan_label: str
    effective_tier: str
    billing_cycle: str | None
    stripe_customer_id: str | None
    stripe_subscription_id: str | None
    current_period_start: datetime | None
    current_period_end: datetime | None
    cancel_at_period_end: bool
    cancelled_at: datetime | None
    unmanaged_override: bool


class SubscriptionSnapshot(CamelModel):
    """Authoritative, denormalized view of a subscription fetched from Stripe."""

    subscription_id: str
    processor_status: str
    status: str
    tier: str | None
    plan_label: str | None
    billing_cycle: str | None
    current_period_start: datetime | None
    current_period_end: datetime | None
    days_remaining: int | None
    cancel_at_period_end: bool
    canceled_at: datetime | None
    amount: int | None
    currency: str | None
    interval: str | None
    interval_count: int | None
    price_id: str | None
    product_name: str | None
    customer_id: str | None
    customer_email: str | None
    customer_name: str | None
    created: datetime | None
    trial_start: datetime | None
    trial_end: datetime | None


class RemoteSnapshotResponse(CamelModel):
    """Stripe's view plus the local fields that disagree with it."""

    snapshot: SubscriptionSnapshot
    drift: list[str]


class LimitResponse(CamelModel):
    resource: str
    max: int | None
    unlimited: bool


class EntitlementsResponse(CamelModel):
    tier: str
    limits: list[LimitResponse]
    features: list[str]


class LimitCheckResponse(CamelModel):
    resource: str
    tier: str
    max: int | None
    unlimited: bool
    used: int
    remaining: int | None
    allowed: bool


class WebhookAck(BaseModel):
    received: bool
    status: str
