"""
Subscription reconciliation sweep.

WHAT: Periodic safety net that downgrades subscriptions the processor's
webhooks should have settled but did not:
1. Expired period: a paid row still trialing/active/past_due whose
   current_period_end has passed (missed renewal or deletion webhook)
2. Stale past-due: a past_due row whose first failure is older than the
   grace window (tracked in metadata, not updated_at, because unrelated
   writes touch updated_at)

WHY: Webhooks are delivered at least once but can be delayed or lost.
Without the sweep a vendor could keep paid features indefinitely.

HOW:
- Pure planners ``(now, snapshots) -> [PlannedTransition]`` decide what to
  do and can be tested without a database or a clock
- ``ReconciliationSweep`` loads snapshots, then executes each planned item
  in its own session against a fresh read of the row; if a webhook settled
  the row in the meantime the planner no longer selects it and the item is
  skipped
- One item failing is logged with its id and never aborts the batch
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from billing_engine.core.config import settings
from billing_engine.dao.subscription import SubscriptionDAO
from billing_engine.db.session import AsyncSessionLocal
from billing_engine.models.base import utcnow
from billing_engine.models.subscription import (
    CURRENT_STATUSES,
    DowngradeReason,
    SubscriptionStatus,
    UserSubscription,
)
from billing_engine.services.billing_periods import is_period_expired
from billing_engine.services.entitlement_orchestrator import EntitlementOrchestrator
from billing_engine.services.payment_gateway import PaymentGateway, get_payment_gateway
from billing_engine.services.subscription_notifier import SubscriptionNotifier

logger = logging.getLogger(__name__)


# ============================================================================
# Pure planning
# ============================================================================


@dataclass(frozen=True)
class SubscriptionSnapshot:
    """The fields the planners look at, detached from the session."""

    id: int
    user_id: int
    status: SubscriptionStatus
    current_period_end: datetime
    is_free: bool
    past_due_since: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: UserSubscription) -> "SubscriptionSnapshot":
        return cls(
            id=row.id,
            user_id=row.user_id,
            status=SubscriptionStatus(row.status),
            current_period_end=row.current_period_end,
            is_free=row.is_free,
            past_due_since=row.meta.past_due_since,
        )


@dataclass(frozen=True)
class PlannedTransition:
    """A downgrade the sweep intends to carry out."""

    subscription_id: int
    reason: DowngradeReason


def plan_expired_period_sweep(
    now: datetime,
    snapshots: Iterable[SubscriptionSnapshot],
) -> List[PlannedTransition]:
    """
    Paid rows in the current family whose period ended before ``now``.

    Free rows never expire (their period end is a far-future sentinel).
    """
    return [
        PlannedTransition(snapshot.id, DowngradeReason.SUBSCRIPTION_EXPIRED)
        for snapshot in snapshots
        if snapshot.status in CURRENT_STATUSES
        and not snapshot.is_free
        and is_period_expired(snapshot.current_period_end, now)
    ]


def plan_stale_past_due_sweep(
    now: datetime,
    snapshots: Iterable[SubscriptionSnapshot],
    grace: timedelta,
) -> List[PlannedTransition]:
    """past_due rows whose first failure is at least ``grace`` old."""
    cutoff = now - grace
    return [
        PlannedTransition(snapshot.id, DowngradeReason.PAST_DUE_GRACE_EXPIRED)
        for snapshot in snapshots
        if snapshot.status == SubscriptionStatus.PAST_DUE
        and snapshot.past_due_since is not None
        and snapshot.past_due_since <= cutoff
    ]


# ============================================================================
# Executor
# ============================================================================


class ReconciliationSweep:
    """
    Runs the sweeps against the database.

    Example:
        sweep = ReconciliationSweep()
        stats = await sweep.run_expired_sweep()
        # {"processed": 3, "downgraded": 2, "skipped": 1, "errors": 0}
    """

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession] = AsyncSessionLocal,
        gateway: Optional[PaymentGateway] = None,
        notifier: Optional[SubscriptionNotifier] = None,
        grace_days: Optional[int] = None,
    ):
        self.session_factory = session_factory
        self.gateway = gateway or get_payment_gateway()
        self.notifier = notifier or SubscriptionNotifier(session_factory=session_factory)
        self.grace = timedelta(
            days=settings.PAST_DUE_GRACE_DAYS if grace_days is None else grace_days
        )

    def _replan(self, reason: DowngradeReason, now: datetime, snapshot: SubscriptionSnapshot) -> bool:
        """Whether the planner that produced ``reason`` still selects the row."""
        if reason == DowngradeReason.SUBSCRIPTION_EXPIRED:
            return bool(plan_expired_period_sweep(now, [snapshot]))
        return bool(plan_stale_past_due_sweep(now, [snapshot], self.grace))

    # ========================================================================
    # Planning
    # ========================================================================

    async def plan_expired(self, now: datetime) -> List[PlannedTransition]:
        async with self.session_factory() as session:
            rows = await SubscriptionDAO(session).list_expired_candidates(now)
            snapshots = [SubscriptionSnapshot.from_row(row) for row in rows]
        return plan_expired_period_sweep(now, snapshots)

    async def plan_stale_past_due(self, now: datetime) -> List[PlannedTransition]:
        async with self.session_factory() as session:
            rows = await SubscriptionDAO(session).list_past_due()
            snapshots = [SubscriptionSnapshot.from_row(row) for row in rows]
        return plan_stale_past_due_sweep(now, snapshots, self.grace)

    # ========================================================================
    # Execution
    # ========================================================================

    async def execute(self, planned: Iterable[PlannedTransition], now: datetime) -> Dict[str, int]:
        """
        Carry out planned downgrades, one session per item.

        Returns:
            Counts of processed, downgraded, skipped and failed items
        """
        stats = {"processed": 0, "downgraded": 0, "skipped": 0, "errors": 0}

        for item in planned:
            stats["processed"] += 1
            try:
                if await self._execute_one(item, now):
                    stats["downgraded"] += 1
                else:
                    stats["skipped"] += 1
            except Exception as e:
                stats["errors"] += 1
                logger.error(
                    f"Sweep failed for subscription {item.subscription_id}: {e}",
                    extra={
                        "subscription_id": item.subscription_id,
                        "reason": item.reason.value,
                    },
                    exc_info=True,
                )

        return stats

    async def _execute_one(self, item: PlannedTransition, now: datetime) -> bool:
        async with self.session_factory() as session:
            try:
                row = await SubscriptionDAO(session).get_fresh(item.subscription_id)
                if row is None or not self._replan(item.reason, now, SubscriptionSnapshot.from_row(row)):
                    logger.info(
                        f"Subscription {item.subscription_id} no longer needs "
                        f"{item.reason.value}, skipping",
                        extra={"subscription_id": item.subscription_id},
                    )
                    return False

                orchestrator = EntitlementOrchestrator(session, self.gateway)
                free = await orchestrator.downgrade_to_free(row.id, item.reason, now=now)
                await session.commit()
            except Exception:
                await session.rollback()
                raise

        await self.notifier.dispatch(orchestrator.drain_notices())
        return free is not None

    # ========================================================================
    # Entry points
    # ========================================================================

    async def run_expired_sweep(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """Downgrade paid subscriptions whose period has passed."""
        now = now or utcnow()
        logger.info("Starting expired-period sweep")
        start_time = utcnow()

        stats = await self.execute(await self.plan_expired(now), now)

        elapsed = (utcnow() - start_time).total_seconds()
        logger.info(
            f"Expired-period sweep completed in {elapsed:.2f}s. "
            f"Processed: {stats['processed']}, Downgraded: {stats['downgraded']}, "
            f"Skipped: {stats['skipped']}, Errors: {stats['errors']}"
        )
        return stats

    async def run_past_due_sweep(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """Downgrade subscriptions past due for longer than the grace window."""
        now = now or utcnow()
        logger.info("Starting stale past-due sweep")
        start_time = utcnow()

        stats = await self.execute(await self.plan_stale_past_due(now), now)

        elapsed = (utcnow() - start_time).total_seconds()
        logger.info(
            f"Stale past-due sweep completed in {elapsed:.2f}s. "
            f"Processed: {stats['processed']}, Downgraded: {stats['downgraded']}, "
            f"Skipped: {stats['skipped']}, Errors: {stats['errors']}"
        )
        return stats

    async def run_daily(self, now: Optional[datetime] = None) -> Dict[str, Dict[str, int]]:
        """Primary daily run: expired periods first, then stale past-due rows."""
        now = now or utcnow()
        return {
            "expired": await self.run_expired_sweep(now),
            "past_due": await self.run_past_due_sweep(now),
        }
