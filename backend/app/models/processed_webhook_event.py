"""Idempotency ledger for Stripe webhook deliveries."""

from datetime import datetime

from sqlalchemy import String, func
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base, UUIDPrimaryKeyMixin


class ProcessedWebhookEvent(UUIDPrimaryKeyMixin, Base):
    """A Stripe event id that has already been applied (or deliberately discarded)."""

    __tablename__ = "processed_webhook_events"

    event_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    outcome: Mapped[str] = mapped_column(String(20), nullable=False)
    processed_at: Mapped[datetime] = mapped_column(server_default=func.now())

    def __repr__(self) -> str:
        return f"<ProcessedWebhookEvent {self.event_id} {self.event_type} outcome={self.outcome}>"
