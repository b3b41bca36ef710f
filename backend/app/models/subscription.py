"""Subscription model — the locally cached Stripe billing state per user."""

import uuid
from datetime import datetime
from enum import Enum

from sqlalchemy import Boolean, ForeignKey, String, false
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base, TimestampMixin, UUIDPrimaryKeyMixin


class SubscriptionStatus(str, Enum):
    """Local mirror of the processor's subscription status."""

    INACTIVE = "inactive"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELLED = "cancelled"

    @classmethod
    def from_processor(cls, stripe_status: str | None) -> "SubscriptionStatus":
        """Collapse Stripe's subscription statuses onto the local enum."""
        return _PROCESSOR_STATUS_MAP.get(stripe_status or "", cls.INACTIVE)


_PROCESSOR_STATUS_MAP: dict[str, SubscriptionStatus] = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.ACTIVE,
    "past_due": SubscriptionStatus.PAST_DUE,
    "unpaid": SubscriptionStatus.PAST_DUE,
    "canceled": SubscriptionStatus.CANCELLED,
    "incomplete_expired": SubscriptionStatus.CANCELLED,
    "incomplete": SubscriptionStatus.INACTIVE,
    "paused": SubscriptionStatus.INACTIVE,
}


class Subscription(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """One row per user: tier, status, billing period and Stripe identifiers.

    ``tier == "free"`` exactly when ``stripe_subscription_id`` is NULL, for
    every row written by the webhook path. Rows written by an administrative
    override carry ``unmanaged_override = True`` instead.
    """

    __tablename__ = "subscriptions"

    # Foreign key, one subscription per user (UNIQUE enforces one-to-one)
    user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        unique=True,
        nullable=False,
        index=True,
    )

    # Stripe identifiers
    stripe_customer_id: Mapped[str | None] = mapped_column(String(255), index=True, nullable=True)
    stripe_subscription_id: Mapped[str | None] = mapped_column(String(255), unique=True, nullable=True)

    # Plan & status
    tier: Mapped[str] = mapped_column(String(20), nullable=False, default="free", server_default="free")
    plan_label: Mapped[str] = mapped_column(
        String(50), nullable=False, default="Free Plan", server_default="Free Plan"
    )
    billing_cycle: Mapped[str | None] = mapped_column(String(20), nullable=True)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="inactive", server_default="inactive"
    )

    # Billing period
    current_period_start: Mapped[datetime | None] = mapped_column(nullable=True)
    current_period_end: Mapped[datetime | None] = mapped_column(nullable=True)
    cancel_at_period_end: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=false()
    )
    cancelled_at: Mapped[datetime | None] = mapped_column(nullable=True)

    # Ordering guard: `created` time of the newest processor event applied
    last_event_at: Mapped[datetime | None] = mapped_column(nullable=True)

    # Administrative writes that bypassed the processor
    unmanaged_override: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=false()
    )
    override_reason: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Relationships
    user: Mapped["User"] = relationship(back_populates="subscription", lazy="selectin")  # type: ignore[name-defined]  # noqa: F821

    def __repr__(self) -> str:
        return (
            f"<Subscription(id={self.id}, user_id={self.user_id}, tier={self.tier}, "
            f"status={self.status}, stripe_subscription_id={self.stripe_subscription_id})>"
        )
