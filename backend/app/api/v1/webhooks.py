"""Stripe webhook endpoint — verifies, decodes and dispatches subscription events."""

import logging

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_db, get_price_catalog
from app.billing.dispatcher import dispatch
from app.billing.events import verify_event
from app.billing.plans import PriceCatalog
from app.config import settings
from app.schemas.billing import WebhookAck

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/billing", tags=["webhooks"])


@router.post("/webhook", response_model=WebhookAck)
async def stripe_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    catalog: PriceCatalog = Depends(get_price_catalog),
) -> WebhookAck:
    """Receive a Stripe event.

    Verification failures are 400 (Stripe will retry). Once verified, the
    delivery is always acknowledged; the outcome is reported in ``status``.
    """
    # Raw bytes: the signature covers the exact body
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature", "")

    event = verify_event(payload, sig_header, settings.stripe_webhook_secret)
    outcome = await dispatch(db, event, catalog)
    return WebhookAck(received=True, status=outcome.value)
