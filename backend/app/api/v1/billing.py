"""Billing API endpoints — plans, Stripe Checkout/Portal, subscription state and entitlements."""

import logging
import uuid

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_db, get_price_catalog, require_account_access, require_admin
from app.billing.checkout import open_portal, schedule_cancellation, start_checkout
from app.billing.entitlements import (
    Resource,
    effective_tier,
    features_for,
    limit_for,
    limits_for,
)
from app.billing.errors import NotFoundError, ValidationError
from app.billing.plans import PLANS, PriceCatalog, parse_tier
from app.billing.reconciler import (
    confirm_checkout_session,
    detect_drift,
    fetch_authoritative,
    sync_from_processor,
)
from app.models.subscription import Subscription, SubscriptionStatus
from app.models.user import User
from app.schemas.billing import (
    CancellationResponse,
    CheckoutRequest,
    CheckoutResponse,
    EntitlementsResponse,
    LimitCheckResponse,
    LimitResponse,
    OverrideRequest,
    PlanResponse,
    PlansListResponse,
    PortalRequest,
    PortalResponse,
    RemoteSnapshotResponse,
    SubscriptionResponse,
)
from app.services.subscription_service import (
    apply_override,
    find_subscription,
    get_or_create_subscription,
    get_user,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/billing", tags=["billing"])


def _subscription_response(subscription: Subscription) -> SubscriptionResponse:
    return SubscriptionResponse(
        status=subscription.status,
        tier=subscription.tier,
        plan_label=subscription.plan_label,
        effective_tier=effective_tier(subscription).value,
        billing_cycle=subscription.billing_cycle,
        stripe_customer_id=subscription.stripe_customer_id,
        stripe_subscription_id=subscription.stripe_subscription_id,
        current_period_start=subscription.current_period_start,
        current_period_end=subscription.current_period_end,
        cancel_at_period_end=subscription.cancel_at_period_end,
        cancelled_at=subscription.cancelled_at,
        unmanaged_override=subscription.unmanaged_override,
    )


@router.get("/plans", response_model=PlansListResponse)
async def list_plans(catalog: PriceCatalog = Depends(get_price_catalog)) -> PlansListResponse:
    """List available plans (public — no auth required)."""
    return PlansListResponse(
        plans=[
            PlanResponse(
                tier=p.tier.value,
                display_name=p.display_name,
                description=p.description,
                purchasable=p.purchasable,
                billing_cycles=[c.value for c in catalog.configured_cycles(p.tier)],
            )
            for p in PLANS.values()
        ]
    )


@router.post("/{user_id}/checkout", response_model=CheckoutResponse)
async def create_checkout(
    user_id: uuid.UUID,
    body: CheckoutRequest,
    db: AsyncSession = Depends(get_db),
    catalog: PriceCatalog = Depends(get_price_catalog),
    _caller: User = Depends(require_account_access),
) -> CheckoutResponse:
    """Create a Stripe Checkout session for a tier and billing cycle."""
    result = await start_checkout(db, user_id, body.tier, body.billing_cycle, catalog)
    logger.info("Checkout session %s created for user %s (%s/%s)", result.session_id, user_id, body.tier, body.billing_cycle)
    return CheckoutResponse(session_id=result.session_id, redirect_url=result.redirect_url)


@router.post("/{user_id}/checkout/{session_id}/confirm", response_model=SubscriptionResponse)
async def confirm_checkout(
    user_id: uuid.UUID,
    session_id: str,
    db: AsyncSession = Depends(get_db),
    catalog: PriceCatalog = Depends(get_price_catalog),
    _caller: User = Depends(require_account_access),
) -> SubscriptionResponse:
    """Apply a completed Checkout Session (the success page calls this with its session_id)."""
    subscription = await confirm_checkout_session(db, user_id, session_id, catalog)
    return _subscription_response(subscription)


@router.post("/{user_id}/portal", response_model=PortalResponse)
async def create_portal(
    user_id: uuid.UUID,
    body: PortalRequest,
    db: AsyncSession = Depends(get_db),
    caller: User = Depends(require_account_access),
) -> PortalResponse:
    """Create a Stripe Customer Portal session for subscription management."""
    url = await open_portal(db, user_id, body.customer_id, allow_foreign_customer=caller.is_admin)
    return PortalResponse(redirect_url=url)


@router.post("/{user_id}/cancel", response_model=CancellationResponse)
async def cancel_subscription(
    user_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    _caller: User = Depends(require_account_access),
) -> CancellationResponse:
    """Schedule cancellation at period end. The local row changes when Stripe confirms."""
    result = await schedule_cancellation(db, user_id)
    return CancellationResponse(
        subscription_id=result.subscription_id,
        cancel_at_period_end=result.cancel_at_period_end,
        current_period_end=result.current_period_end,
    )


@router.get("/{user_id}/subscription", response_model=SubscriptionResponse)
async def get_subscription(
    user_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    _caller: User = Depends(require_account_access),
) -> SubscriptionResponse:
    """Get the locally cached subscription and the tier currently in effect."""
    user = await get_user(db, user_id)
    subscription = await get_or_create_subscription(db, user)
    return _subscription_response(subscription)


@router.get("/{user_id}/remote-snapshot", response_model=RemoteSnapshotResponse)
async def get_remote_snapshot(
    user_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    catalog: PriceCatalog = Depends(get_price_catalog),
    _caller: User = Depends(require_account_access),
) -> RemoteSnapshotResponse:
    """Stripe's current view of the subscription, without touching the local row."""
    snapshot = await fetch_authoritative(db, user_id, catalog)
    subscription = await find_subscription(db, user_id)
    return RemoteSnapshotResponse(snapshot=snapshot, drift=detect_drift(subscription, snapshot))


@router.post("/{user_id}/sync", response_model=SubscriptionResponse)
async def sync_subscription(
    user_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    catalog: PriceCatalog = Depends(get_price_catalog),
    _caller: User = Depends(require_account_access),
) -> SubscriptionResponse:
    """Overwrite the local row with Stripe's current view."""
    subscription = await sync_from_processor(db, user_id, catalog)
    return _subscription_response(subscription)


@router.get("/{user_id}/entitlements", response_model=EntitlementsResponse)
async def get_entitlements(
    user_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    _caller: User = Depends(require_account_access),
) -> EntitlementsResponse:
    """All limits and features for the user's effective tier."""
    await get_user(db, user_id)
    tier = effective_tier(await find_subscription(db, user_id))
    return EntitlementsResponse(
        tier=tier.value,
        limits=[
            LimitResponse(resource=resource.value, max=limit.max, unlimited=limit.unlimited)
            for resource, limit in limits_for(tier).items()
        ],
        features=[f.value for f in features_for(tier)],
    )


@router.get("/{user_id}/entitlements/{resource}", response_model=LimitCheckResponse)
async def check_entitlement(
    user_id: uuid.UUID,
    resource: str,
    used: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
    _caller: User = Depends(require_account_access),
) -> LimitCheckResponse:
    """Whether one more ``resource`` may be created when ``used`` already exist."""
    try:
        parsed = Resource(resource)
    except ValueError:
        raise NotFoundError(f"Unknown resource '{resource}'") from None

    await get_user(db, user_id)
    tier = effective_tier(await find_subscription(db, user_id))
    limit = limit_for(tier, parsed)
    return LimitCheckResponse(
        resource=parsed.value,
        tier=tier.value,
        max=limit.max,
        unlimited=limit.unlimited,
        used=used,
        remaining=limit.remaining(used),
        allowed=limit.allows(used),
    )


@router.post("/{user_id}/override", response_model=SubscriptionResponse)
async def override_subscription(
    user_id: uuid.UUID,
    body: OverrideRequest,
    db: AsyncSession = Depends(get_db),
    admin: User = Depends(require_admin),
) -> SubscriptionResponse:
    """Set tier/status without Stripe (admin only). The row is flagged as unmanaged."""
    tier = parse_tier(body.tier)
    if tier is None:
        raise ValidationError(f"Unknown tier '{body.tier}'")
    try:
        new_status = SubscriptionStatus(body.status)
    except ValueError:
        raise ValidationError(f"Unknown status '{body.status}'") from None

    user = await get_user(db, user_id)
    subscription = await get_or_create_subscription(db, user)
    await apply_override(
        db,
        subscription,
        tier=tier,
        status=new_status,
        current_period_end=body.current_period_end,
        reason=body.reason,
    )
    logger.info("Override on user %s applied by admin %s", user_id, admin.id)
    return _subscription_response(subscription)
