"""Tests for the pull reconciler: snapshot building, drift and sync."""

from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from app.billing.errors import ConflictError, NotFoundError, UpstreamError, ValidationError
from app.billing.events import SubscriptionPayload
from app.billing.reconciler import (
    build_snapshot,
    confirm_checkout_session,
    detect_drift,
    fetch_authoritative,
    sync_from_processor,
)
from app.database import from_unix
from app.models.subscription import Subscription
from app.services.subscription_service import find_subscription
from factories import DAY, PRO_MONTHLY, T0, TEST_CATALOG, checkout_metadata, stripe_subscription


def _snapshot(**kwargs):
    return build_snapshot(SubscriptionPayload.model_validate(stripe_subscription(**kwargs)), TEST_CATALOG)


class TestBuildSnapshot:
    def test_tier_from_price(self):
        snapshot = _snapshot(price_id=PRO_MONTHLY)
        assert snapshot.tier == "premium"
        assert snapshot.plan_label == "Study Pro"
        assert snapshot.billing_cycle == "monthly"
        assert snapshot.price_id == PRO_MONTHLY

    def test_price_overrides_metadata(self):
        snapshot = _snapshot(price_id=PRO_MONTHLY, metadata={"tier": "enterprise", "billingCycle": "yearly"})
        assert snapshot.tier == "premium"
        assert snapshot.billing_cycle == "monthly"

    def test_unknown_price_uses_metadata_then_interval(self):
        snapshot = _snapshot(price_id="price_legacy", metadata={"tier": "enterprise"}, interval="year")
        assert snapshot.tier == "enterprise"
        assert snapshot.billing_cycle == "yearly"

    def test_unknown_price_without_metadata(self):
        snapshot = _snapshot(price_id="price_legacy")
        assert snapshot.tier is None
        assert snapshot.plan_label is None

    def test_status_mapping_and_timestamps(self):
        snapshot = _snapshot(status="trialing", trial_start=T0, trial_end=T0 + 7 * DAY)
        assert snapshot.processor_status == "trialing"
        assert snapshot.status == "active"
        assert snapshot.trial_end == from_unix(T0 + 7 * DAY)
        assert snapshot.created == from_unix(T0)

    def test_days_remaining_never_negative(self):
        assert _snapshot(period_end=T0).days_remaining == 0

    def test_unexpanded_customer_and_product(self):
        snapshot = _snapshot()
        assert snapshot.customer_id == "cus_test_1"
        assert snapshot.customer_email is None
        assert snapshot.product_name is None


class TestDetectDrift:
    def test_in_sync(self):
        snapshot = _snapshot()
        sub = Subscription(
            stripe_subscription_id="sub_test_1",
            status="active",
            tier="premium",
            billing_cycle="monthly",
            current_period_start=from_unix(T0),
            current_period_end=from_unix(T0 + 30 * DAY),
            cancel_at_period_end=False,
            unmanaged_override=False,
        )
        assert detect_drift(sub, snapshot) == []

    def test_reports_mismatches(self):
        snapshot = _snapshot(status="past_due", cancel_at_period_end=True)
        sub = Subscription(
            stripe_subscription_id="sub_old",
            status="active",
            tier="premium",
            billing_cycle="monthly",
            current_period_start=from_unix(T0),
            current_period_end=from_unix(T0 + 30 * DAY),
            cancel_at_period_end=False,
            unmanaged_override=True,
        )
        assert detect_drift(sub, snapshot) == [
            "status",
            "cancel_at_period_end",
            "stripe_subscription_id",
            "unmanaged_override",
        ]


class TestFetchAuthoritative:
    async def test_no_local_subscription(self, db_session: AsyncSession, make_user):
        user = await make_user()
        with pytest.raises(NotFoundError):
            await fetch_authoritative(db_session, user.id, TEST_CATALOG)

    async def test_unexpected_shape_is_upstream_error(self, db_session: AsyncSession, make_user):
        user = await make_user(stripe_subscription_id="sub_test_1")
        with patch(
            "app.billing.reconciler.get_subscription",
            new_callable=AsyncMock,
            return_value={"id": "sub_test_1"},
        ):
            with pytest.raises(UpstreamError) as exc_info:
                await fetch_authoritative(db_session, user.id, TEST_CATALOG)
        assert exc_info.value.upstream_code == "invalid_response"

    async def test_never_writes(self, db_session: AsyncSession, make_user):
        user = await make_user(tier="premium", status="active", stripe_subscription_id="sub_test_1")
        with patch(
            "app.billing.reconciler.get_subscription",
            new_callable=AsyncMock,
            return_value=stripe_subscription(status="canceled"),
        ) as mock_get:
            snapshot = await fetch_authoritative(db_session, user.id, TEST_CATALOG)
        assert snapshot.status == "cancelled"
        assert mock_get.call_args.kwargs["expand"] == ["items.data.price.product", "customer"]
        sub = await find_subscription(db_session, user.id)
        assert sub.status == "active"
        assert not db_session.dirty


class TestSyncFromProcessor:
    async def test_applies_snapshot(self, db_session: AsyncSession, make_user):
        user = await make_user(tier="premium", status="active", stripe_subscription_id="sub_test_1")
        with patch(
            "app.billing.reconciler.get_subscription",
            new_callable=AsyncMock,
            return_value=stripe_subscription(status="past_due", period_end=T0 + 30 * DAY),
        ):
            sub = await sync_from_processor(db_session, user.id, TEST_CATALOG)
        assert sub.status == "past_due"
        assert sub.current_period_end == from_unix(T0 + 30 * DAY)
        assert sub.stripe_customer_id == "cus_test_1"

    async def test_refuses_to_move_period_backward(self, db_session: AsyncSession, make_user):
        user = await make_user(
            tier="premium",
            status="active",
            stripe_subscription_id="sub_test_1",
            current_period_end=from_unix(T0 + 60 * DAY),
        )
        with patch(
            "app.billing.reconciler.get_subscription",
            new_callable=AsyncMock,
            return_value=stripe_subscription(period_end=T0 + 30 * DAY),
        ):
            with pytest.raises(ConflictError):
                await sync_from_processor(db_session, user.id, TEST_CATALOG)

    async def test_keeps_override_when_tier_unknown(self, db_session: AsyncSession, make_user):
        user = await make_user(
            tier="enterprise",
            status="active",
            stripe_subscription_id="sub_test_1",
            unmanaged_override=True,
        )
        with patch(
            "app.billing.reconciler.get_subscription",
            new_callable=AsyncMock,
            return_value=stripe_subscription(price_id="price_legacy"),
        ):
            with pytest.raises(ValidationError):
                await sync_from_processor(db_session, user.id, TEST_CATALOG)


def _paid_session(user, **overrides):
    session = {
        "id": "cs_test_1",
        "payment_status": "paid",
        "customer": "cus_test_1",
        "subscription": "sub_test_1",
        "metadata": checkout_metadata(user),
    }
    session.update(overrides)
    return session


class TestConfirmCheckoutSession:
    async def test_tier_from_session_metadata_when_price_unknown(self, db_session: AsyncSession, make_user):
        user = await make_user()
        with (
            patch(
                "app.billing.reconciler.get_checkout_session",
                new_callable=AsyncMock,
                return_value=_paid_session(user, metadata=checkout_metadata(user, "enterprise", "yearly")),
            ),
            patch(
                "app.billing.reconciler.get_subscription",
                new_callable=AsyncMock,
                return_value=stripe_subscription(price_id="price_legacy"),
            ),
        ):
            sub = await confirm_checkout_session(db_session, user.id, "cs_test_1", TEST_CATALOG)
        assert sub.tier == "enterprise"
        assert sub.billing_cycle == "yearly"
        assert sub.status == "active"
        assert sub.last_event_at == from_unix(T0)

    async def test_already_applied_is_unchanged(self, db_session: AsyncSession, make_user):
        user = await make_user(
            tier="premium",
            status="past_due",
            stripe_subscription_id="sub_test_1",
            last_event_at=from_unix(T0 + DAY),
        )
        with (
            patch(
                "app.billing.reconciler.get_checkout_session",
                new_callable=AsyncMock,
                return_value=_paid_session(user),
            ),
            patch(
                "app.billing.reconciler.get_subscription",
                new_callable=AsyncMock,
                return_value=stripe_subscription(),
            ),
        ):
            sub = await confirm_checkout_session(db_session, user.id, "cs_test_1", TEST_CATALOG)
        assert sub.status == "past_due"
        assert sub.last_event_at == from_unix(T0 + DAY)

    async def test_older_session_does_not_replace_newer_subscription(self, db_session: AsyncSession, make_user):
        user = await make_user(
            tier="enterprise",
            status="active",
            stripe_subscription_id="sub_newer",
            current_period_end=from_unix(T0 + 62 * DAY),
            last_event_at=from_unix(T0 + 2 * DAY),
        )
        with (
            patch(
                "app.billing.reconciler.get_checkout_session",
                new_callable=AsyncMock,
                return_value=_paid_session(user),
            ),
            patch(
                "app.billing.reconciler.get_subscription",
                new_callable=AsyncMock,
                return_value=stripe_subscription(),
            ),
        ):
            with pytest.raises(ConflictError):
                await confirm_checkout_session(db_session, user.id, "cs_test_1", TEST_CATALOG)

    async def test_session_without_subscription(self, db_session: AsyncSession, make_user):
        user = await make_user()
        with patch(
            "app.billing.reconciler.get_checkout_session",
            new_callable=AsyncMock,
            return_value=_paid_session(user, subscription=None),
        ):
            with pytest.raises(ValidationError):
                await confirm_checkout_session(db_session, user.id, "cs_test_1", TEST_CATALOG)
