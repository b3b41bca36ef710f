"""SQLAlchemy models for StudyBrain billing.

All models are imported here so that Alembic's autogenerate can discover
them via Base.metadata. If you add a new model, import it in this file.
"""

from app.models.processed_webhook_event import ProcessedWebhookEvent
from app.models.subscription import Subscription, SubscriptionStatus
from app.models.user import User

__all__ = [
    "ProcessedWebhookEvent",
    "Subscription",
    "SubscriptionStatus",
    "User",
]
