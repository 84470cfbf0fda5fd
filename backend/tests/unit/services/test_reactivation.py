"""
Unit tests for subscription reactivation.

WHY: Verifies the three outcomes a vendor can hit:
1. Scheduled cancellation: the flag is cleared, same row and same processor subscription
2. Cancelled recently: a new processor subscription and a new row, linked to the old one
3. Cancelled too long ago: NotReactivatableError, nothing written
"""

import pytest
from datetime import timedelta

from billing_engine.core.config import settings
from billing_engine.core.exceptions import (
    AlreadyActiveError,
    NoPaymentMethodError,
    NotReactivatableError,
    SubscriptionNotFoundError,
)
from billing_engine.dao.subscription import SubscriptionDAO
from billing_engine.models.base import utcnow
from billing_engine.models.notification import NotificationKind
from billing_engine.models.subscription import ReactivationPath, SubscriptionStatus
from billing_engine.services.entitlement_orchestrator import EntitlementOrchestrator

from tests.factories import PlanFactory, SubscriptionFactory


async def _canceled_paid(db_session, user, plan, days_ago, now):
    return await SubscriptionFactory.create_paid(
        db_session,
        user,
        plan,
        status=SubscriptionStatus.CANCELED,
        stripe_customer_id="cus_1",
        period_start=now - timedelta(days=days_ago + 20),
        period_end=now - timedelta(days=days_ago),
        canceled_at=now - timedelta(days=days_ago),
    )


class TestResumeScheduledCancellation:
    """Tests for the flag-flip path."""

    @pytest.mark.asyncio
    async def test_clears_flag_on_same_row(self, db_session, gateway, vendor, standard_plan):
        gs = gateway.add_subscription("cus_1", "price_standard")
        gateway.subscriptions[gs.id].cancel_at_period_end = True
        sub = await SubscriptionFactory.create_paid(
            db_session,
            vendor,
            standard_plan,
            stripe_subscription_id=gs.id,
            cancel_at_period_end=True,
            cancellation_reason="too expensive",
        )
        now = utcnow()
        orchestrator = EntitlementOrchestrator(db_session, gateway)

        result = await orchestrator.reactivate(vendor.id, now=now)

        assert result.path == ReactivationPath.FLAG_FLIP
        assert result.subscription.id == sub.id
        assert result.subscription.cancel_at_period_end is False
        assert result.subscription.cancellation_reason is None
        assert result.subscription.resumed_at == now
        assert result.subscription.meta.reactivation_path == ReactivationPath.FLAG_FLIP
        assert gateway.subscriptions[gs.id].cancel_at_period_end is False
        assert gateway.calls_to("update_subscription")[0]["idempotency_key"] == (
            f"resume-{sub.id}-1"
        )
        assert gateway.calls_to("create_subscription") == []
        assert [n.kind for n in orchestrator.drain_notices()] == [
            NotificationKind.SUBSCRIPTION_RESUMED
        ]

    @pytest.mark.asyncio
    async def test_trialing_row_can_resume(self, db_session, gateway, vendor, standard_plan):
        gs = gateway.add_subscription("cus_1", "price_standard", status="trialing")
        await SubscriptionFactory.create_paid(
            db_session,
            vendor,
            standard_plan,
            status=SubscriptionStatus.TRIALING,
            stripe_subscription_id=gs.id,
            cancel_at_period_end=True,
        )

        result = await EntitlementOrchestrator(db_session, gateway).reactivate(vendor.id)

        assert result.subscription.status == SubscriptionStatus.TRIALING
        assert result.subscription.cancel_at_period_end is False


class TestRecreateCanceledSubscription:
    """Tests for the new-subscription path."""

    @pytest.mark.asyncio
    async def test_canceled_ten_days_ago_gets_new_subscription(
        self, db_session, gateway, vendor, free_plan, standard_plan
    ):
        now = utcnow()
        old = await _canceled_paid(db_session, vendor, standard_plan, 10, now)
        free_row = await SubscriptionFactory.create_free(db_session, vendor, free_plan)
        gateway.add_payment_method("cus_1")
        orchestrator = EntitlementOrchestrator(db_session, gateway)

        result = await orchestrator.reactivate(vendor.id, now=now)

        assert result.path == ReactivationPath.NEW_SUBSCRIPTION
        new = result.subscription
        assert new.id != old.id
        assert new.status == SubscriptionStatus.ACTIVE
        assert new.plan_id == standard_plan.id
        assert new.stripe_customer_id == "cus_1"
        assert new.stripe_subscription_id in gateway.subscriptions
        assert new.default_payment_method == "pm_card_visa"
        assert new.meta.reactivated_from_subscription_id == old.id
        assert new.meta.reactivation_path == ReactivationPath.NEW_SUBSCRIPTION

        call = gateway.calls_to("create_subscription")[0]
        assert call["idempotency_key"] == f"reactivate-{old.id}"
        assert call["metadata"] == {
            "user_id": str(vendor.id),
            "plan_id": str(standard_plan.id),
            "reactivated_from": str(old.id),
        }

        # The free row is closed, the old paid row stays as it was
        closed = await SubscriptionDAO(db_session).get_fresh(free_row.id)
        assert closed.status == SubscriptionStatus.CANCELED
        assert closed.meta.superseded_by_subscription_id == new.id
        untouched = await SubscriptionDAO(db_session).get_fresh(old.id)
        assert untouched.status == SubscriptionStatus.CANCELED
        assert untouched.version == 1

        current = await SubscriptionDAO(db_session).get_current_for_user(vendor.id)
        assert current.id == new.id
        assert [(n.kind, n.email) for n in orchestrator.drain_notices()] == [
            (NotificationKind.SUBSCRIPTION_REACTIVATED, True)
        ]

    @pytest.mark.asyncio
    async def test_second_reactivation_reports_already_active(
        self, db_session, gateway, vendor, free_plan, standard_plan
    ):
        now = utcnow()
        await _canceled_paid(db_session, vendor, standard_plan, 10, now)
        gateway.add_payment_method("cus_1")
        orchestrator = EntitlementOrchestrator(db_session, gateway)
        await orchestrator.reactivate(vendor.id, now=now)

        with pytest.raises(AlreadyActiveError):
            await orchestrator.reactivate(vendor.id, now=now)
        assert len(gateway.calls_to("create_subscription")) == 1

    @pytest.mark.asyncio
    async def test_window_boundary_is_inclusive(self, db_session, gateway, vendor, standard_plan):
        now = utcnow()
        await _canceled_paid(
            db_session, vendor, standard_plan, settings.REACTIVATION_WINDOW_DAYS, now
        )
        gateway.add_payment_method("cus_1")

        result = await EntitlementOrchestrator(db_session, gateway).reactivate(vendor.id, now=now)

        assert result.path == ReactivationPath.NEW_SUBSCRIPTION

    @pytest.mark.asyncio
    async def test_retired_plan_can_still_be_reactivated(self, db_session, gateway, vendor):
        legacy = await PlanFactory.create(
            db_session, name="Legacy", stripe_price_id="price_legacy", is_active=False
        )
        now = utcnow()
        await _canceled_paid(db_session, vendor, legacy, 5, now)
        gateway.add_payment_method("cus_1")

        result = await EntitlementOrchestrator(db_session, gateway).reactivate(vendor.id, now=now)

        assert result.subscription.plan_id == legacy.id
        assert gateway.calls_to("create_subscription")[0]["price_id"] == "price_legacy"

    @pytest.mark.asyncio
    async def test_unconfirmed_payment_recorded_as_past_due(
        self, db_session, gateway, vendor, standard_plan
    ):
        now = utcnow()
        await _canceled_paid(db_session, vendor, standard_plan, 3, now)
        gateway.add_payment_method("cus_1")
        gateway.new_subscription_status = "incomplete"

        result = await EntitlementOrchestrator(db_session, gateway).reactivate(vendor.id, now=now)

        assert result.subscription.status == SubscriptionStatus.PAST_DUE

    @pytest.mark.asyncio
    async def test_no_payment_method(self, db_session, gateway, vendor, free_plan, standard_plan):
        now = utcnow()
        await _canceled_paid(db_session, vendor, standard_plan, 10, now)
        free_row = await SubscriptionFactory.create_free(db_session, vendor, free_plan)

        with pytest.raises(NoPaymentMethodError) as exc_info:
            await EntitlementOrchestrator(db_session, gateway).reactivate(vendor.id, now=now)

        assert exc_info.value.remediation == "add_payment_method"
        assert exc_info.value.redirect_url == settings.subscription_url
        assert exc_info.value.status_code == 402
        assert gateway.calls_to("create_subscription") == []
        current = await SubscriptionDAO(db_session).get_current_for_user(vendor.id)
        assert current.id == free_row.id


class TestNotReactivatable:
    """Tests for requests that cannot reactivate anything."""

    @pytest.mark.asyncio
    async def test_canceled_forty_days_ago(self, db_session, gateway, vendor, free_plan, standard_plan):
        now = utcnow()
        await _canceled_paid(db_session, vendor, standard_plan, 40, now)
        await SubscriptionFactory.create_free(db_session, vendor, free_plan)

        with pytest.raises(NotReactivatableError) as exc_info:
            await EntitlementOrchestrator(db_session, gateway).reactivate(vendor.id, now=now)

        assert exc_info.value.status_code == 422
        assert gateway.calls == []

    @pytest.mark.asyncio
    async def test_active_without_pending_cancellation(self, db_session, gateway, vendor, standard_plan):
        await SubscriptionFactory.create_paid(db_session, vendor, standard_plan)

        with pytest.raises(AlreadyActiveError):
            await EntitlementOrchestrator(db_session, gateway).reactivate(vendor.id)

    @pytest.mark.asyncio
    async def test_past_due_is_already_active(self, db_session, gateway, vendor, standard_plan):
        await SubscriptionFactory.create_paid(
            db_session,
            vendor,
            standard_plan,
            status=SubscriptionStatus.PAST_DUE,
            cancel_at_period_end=True,
        )

        with pytest.raises(AlreadyActiveError):
            await EntitlementOrchestrator(db_session, gateway).reactivate(vendor.id)
        assert gateway.calls == []

    @pytest.mark.asyncio
    async def test_free_user_never_paid(self, db_session, gateway, vendor, free_plan):
        await SubscriptionFactory.create_free(db_session, vendor, free_plan)

        with pytest.raises(SubscriptionNotFoundError):
            await EntitlementOrchestrator(db_session, gateway).reactivate(vendor.id)
