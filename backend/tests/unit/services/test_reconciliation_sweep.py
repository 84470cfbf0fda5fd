"""
Unit tests for the reconciliation sweep.

WHAT: Tests for the pure planners and for ReconciliationSweep execution.

WHY: Verifies that:
1. Only paid rows in the current family with an elapsed period are selected
2. Past-due rows are selected once the grace window has passed since the
   first failure
3. A row settled between planning and execution is skipped
4. One failing item does not stop the batch
5. A late deletion webhook after a sweep downgrade changes nothing

HOW: Planners are called with hand-built snapshots and a fixed clock.
Executor tests use the shared in-memory database, so rows committed by the
sweep's own sessions are visible to the test session.
"""

import pytest
from datetime import datetime, timedelta

from billing_engine.dao.notification import NotificationDAO
from billing_engine.dao.subscription import SubscriptionDAO
from billing_engine.models.base import utcnow
from billing_engine.models.billing_event import BillingEventOutcome
from billing_engine.models.subscription import (
    FREE_TIER_PERIOD_END,
    DowngradeReason,
    SubscriptionMetadata,
    SubscriptionStatus,
)
from billing_engine.services.entitlement_orchestrator import EntitlementOrchestrator
from billing_engine.services.email import MockEmailProvider
from billing_engine.services.reconciliation_sweep import (
    PlannedTransition,
    SubscriptionSnapshot,
    plan_expired_period_sweep,
    plan_stale_past_due_sweep,
)
from billing_engine.services.webhook_dispatcher import WebhookDispatcher

from tests.factories import SubscriptionFactory, UserFactory, make_event, subscription_object


NOW = datetime(2025, 6, 1, 2, 0)
S = SubscriptionStatus


def _snapshot(id, status=S.ACTIVE, period_end=None, is_free=False, past_due_since=None):
    return SubscriptionSnapshot(
        id=id,
        user_id=id,
        status=status,
        current_period_end=period_end or NOW + timedelta(days=10),
        is_free=is_free,
        past_due_since=past_due_since,
    )


class TestPlanExpiredPeriodSweep:
    """Tests for the expired-period planner."""

    def test_selects_elapsed_paid_rows(self):
        snapshots = [
            _snapshot(1, S.ACTIVE, NOW - timedelta(minutes=1)),
            _snapshot(2, S.TRIALING, NOW - timedelta(days=3)),
            _snapshot(3, S.PAST_DUE, NOW - timedelta(days=1)),
            _snapshot(4, S.ACTIVE, NOW + timedelta(days=1)),
        ]

        planned = plan_expired_period_sweep(NOW, snapshots)

        assert planned == [
            PlannedTransition(1, DowngradeReason.SUBSCRIPTION_EXPIRED),
            PlannedTransition(2, DowngradeReason.SUBSCRIPTION_EXPIRED),
            PlannedTransition(3, DowngradeReason.SUBSCRIPTION_EXPIRED),
        ]

    def test_skips_free_and_terminal_rows(self):
        snapshots = [
            _snapshot(1, S.ACTIVE, FREE_TIER_PERIOD_END, is_free=True),
            _snapshot(2, S.CANCELED, NOW - timedelta(days=5)),
            _snapshot(3, S.UNPAID, NOW - timedelta(days=5)),
        ]

        assert plan_expired_period_sweep(NOW, snapshots) == []

    def test_period_ending_exactly_now_is_not_expired(self):
        assert plan_expired_period_sweep(NOW, [_snapshot(1, S.ACTIVE, NOW)]) == []

    def test_empty_input(self):
        assert plan_expired_period_sweep(NOW, []) == []


class TestPlanStalePastDueSweep:
    """Tests for the grace-window planner."""

    def test_selects_rows_past_grace(self):
        grace = timedelta(days=7)
        snapshots = [
            _snapshot(1, S.PAST_DUE, past_due_since=NOW - timedelta(days=8)),
            _snapshot(2, S.PAST_DUE, past_due_since=NOW - timedelta(days=7)),
            _snapshot(3, S.PAST_DUE, past_due_since=NOW - timedelta(days=6)),
            _snapshot(4, S.PAST_DUE, past_due_since=None),
            _snapshot(5, S.ACTIVE, past_due_since=NOW - timedelta(days=30)),
        ]

        planned = plan_stale_past_due_sweep(NOW, snapshots, grace)

        assert [p.subscription_id for p in planned] == [1, 2]
        assert all(p.reason == DowngradeReason.PAST_DUE_GRACE_EXPIRED for p in planned)


class TestExpiredSweepExecution:
    """Tests for running the expired-period sweep."""

    @pytest.mark.asyncio
    async def test_downgrades_expired_rows(self, db_session, sweep, free_plan, standard_plan):
        now = utcnow()
        alice = await UserFactory.create(db_session)
        bob = await UserFactory.create(db_session)
        carol = await UserFactory.create(db_session)
        expired_a = await SubscriptionFactory.create_paid(
            db_session, alice, standard_plan, period_end=now - timedelta(days=1)
        )
        expired_b = await SubscriptionFactory.create_paid(
            db_session,
            bob,
            standard_plan,
            status=SubscriptionStatus.TRIALING,
            period_end=now - timedelta(hours=2),
        )
        healthy = await SubscriptionFactory.create_paid(db_session, carol, standard_plan)

        stats = await sweep.run_expired_sweep(now)

        assert stats == {"processed": 2, "downgraded": 2, "skipped": 0, "errors": 0}
        dao = SubscriptionDAO(db_session)
        for sub in (expired_a, expired_b):
            old = await dao.get_fresh(sub.id)
            assert old.status == SubscriptionStatus.CANCELED
            assert old.meta.downgrade_reason == DowngradeReason.SUBSCRIPTION_EXPIRED
            current = await dao.get_current_for_user(sub.user_id)
            assert current.is_free
        assert (await dao.get_fresh(healthy.id)).status == SubscriptionStatus.ACTIVE

        # Notices went out after commit
        notifications = await NotificationDAO(db_session).get_all(user_id=alice.id)
        assert {n.title for n in notifications} == {"Subscription ended", "Moved to the free plan"}
        assert {m.to_email for m in MockEmailProvider.sent_emails} == {alice.email, bob.email}

    @pytest.mark.asyncio
    async def test_settled_row_is_skipped(self, db_session, sweep, vendor, free_plan, standard_plan):
        now = utcnow()
        sub = await SubscriptionFactory.create_paid(
            db_session, vendor, standard_plan, period_end=now - timedelta(days=1)
        )
        planned = await sweep.plan_expired(now)
        assert [p.subscription_id for p in planned] == [sub.id]

        # A renewal webhook lands between planning and execution
        await SubscriptionDAO(db_session).compare_and_swap(
            sub.id, 1, current_period_end=now + timedelta(days=30)
        )
        await db_session.commit()

        stats = await sweep.execute(planned, now)

        assert stats == {"processed": 1, "downgraded": 0, "skipped": 1, "errors": 0}
        fresh = await SubscriptionDAO(db_session).get_fresh(sub.id)
        assert fresh.status == SubscriptionStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_one_failure_does_not_stop_batch(
        self, db_session, sweep, free_plan, standard_plan, monkeypatch
    ):
        now = utcnow()
        good_user = await UserFactory.create(db_session)
        bad_user = await UserFactory.create(db_session)
        bad = await SubscriptionFactory.create_paid(
            db_session, bad_user, standard_plan, period_end=now - timedelta(days=1)
        )
        good = await SubscriptionFactory.create_paid(
            db_session, good_user, standard_plan, period_end=now - timedelta(days=1)
        )
        original = EntitlementOrchestrator.downgrade_to_free

        async def flaky_downgrade(self, subscription_id, reason, now=None, note=None):
            if subscription_id == bad.id:
                raise RuntimeError("database hiccup")
            return await original(self, subscription_id, reason, now=now, note=note)

        monkeypatch.setattr(EntitlementOrchestrator, "downgrade_to_free", flaky_downgrade)

        stats = await sweep.run_expired_sweep(now)

        assert stats == {"processed": 2, "downgraded": 1, "skipped": 0, "errors": 1}
        dao = SubscriptionDAO(db_session)
        assert (await dao.get_fresh(bad.id)).status == SubscriptionStatus.ACTIVE
        assert (await dao.get_fresh(good.id)).status == SubscriptionStatus.CANCELED

    @pytest.mark.asyncio
    async def test_late_deletion_webhook_after_sweep(
        self, db_session, gateway, sweep, vendor, free_plan, standard_plan
    ):
        now = utcnow()
        sub = await SubscriptionFactory.create_paid(
            db_session, vendor, standard_plan, period_end=now - timedelta(days=1)
        )
        await sweep.run_expired_sweep(now)

        dispatcher = WebhookDispatcher(db_session, gateway)
        outcome = await dispatcher.dispatch(
            make_event(
                "customer.subscription.deleted",
                subscription_object(sub.stripe_subscription_id, status="canceled"),
            )
        )
        await db_session.commit()

        assert outcome == BillingEventOutcome.NO_OP
        assert dispatcher.drain_notices() == []
        rows = await SubscriptionDAO(db_session).list_for_user(vendor.id)
        assert len(rows) == 2
        old = await SubscriptionDAO(db_session).get_fresh(sub.id)
        assert old.status == SubscriptionStatus.CANCELED
        current = await SubscriptionDAO(db_session).get_current_for_user(vendor.id)
        assert current.is_free
        assert current.id == old.meta.downgraded_to_subscription_id


class TestPastDueSweepExecution:
    """Tests for the stale past-due sweep."""

    @pytest.mark.asyncio
    async def test_downgrades_after_grace(self, db_session, gateway, sweep, free_plan, standard_plan):
        now = utcnow()
        stale_user = await UserFactory.create(db_session)
        recent_user = await UserFactory.create(db_session)
        gs = gateway.add_subscription("cus_stale", "price_standard", status="past_due")
        stale = await SubscriptionFactory.create_paid(
            db_session,
            stale_user,
            standard_plan,
            status=SubscriptionStatus.PAST_DUE,
            stripe_subscription_id=gs.id,
            meta=SubscriptionMetadata(payment_failure_count=2, past_due_since=now - timedelta(days=8)),
        )
        recent = await SubscriptionFactory.create_paid(
            db_session,
            recent_user,
            standard_plan,
            status=SubscriptionStatus.PAST_DUE,
            meta=SubscriptionMetadata(payment_failure_count=1, past_due_since=now - timedelta(days=2)),
        )

        stats = await sweep.run_past_due_sweep(now)

        assert stats["downgraded"] == 1
        dao = SubscriptionDAO(db_session)
        old = await dao.get_fresh(stale.id)
        assert old.status == SubscriptionStatus.CANCELED
        assert old.meta.downgrade_reason == DowngradeReason.PAST_DUE_GRACE_EXPIRED
        assert (await dao.get_fresh(recent.id)).status == SubscriptionStatus.PAST_DUE
        # The processor would otherwise keep retrying the card
        assert gateway.calls_to("cancel_subscription")[0]["idempotency_key"] == f"downgrade-{stale.id}"

    @pytest.mark.asyncio
    async def test_run_daily_reports_both_sweeps(self, sweep):
        stats = await sweep.run_daily(NOW)

        assert stats == {
            "expired": {"processed": 0, "downgraded": 0, "skipped": 0, "errors": 0},
            "past_due": {"processed": 0, "downgraded": 0, "skipped": 0, "errors": 0},
        }
