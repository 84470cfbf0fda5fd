"""
Subscription Data Access Object (DAO).

WHAT: DAO for reading and conditionally writing user subscription rows.

WHY: Subscriptions are written from three places at once: processor
webhooks, the reconciliation sweep and user-facing API calls. Every
write therefore goes through ``compare_and_swap``, which only succeeds if
the row still has the version the writer read.

HOW: Extends BaseDAO with lookups by user, processor id and sweep
criteria, plus the version-checked update.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from billing_engine.core.exceptions import DuplicateActiveSubscriptionError
from billing_engine.dao.base import BaseDAO
from billing_engine.models.base import utcnow
from billing_engine.models.plan import SubscriptionPlan
from billing_engine.models.subscription import (
    UserSubscription,
    SubscriptionStatus,
    CURRENT_STATUSES,
)


class SubscriptionDAO(BaseDAO[UserSubscription]):
    """
    Data Access Object for UserSubscription model.

    WHAT: Handles all database operations for subscription rows.

    WHY: Centralizes the queries the lifecycle, webhook and sweep code
    share so they agree on what "current" and "expired" mean.
    """

    def __init__(self, session: AsyncSession):
        """
        Initialize SubscriptionDAO.

        Args:
            session: Async database session
        """
        super().__init__(UserSubscription, session)

    async def create(self, **kwargs: Any) -> UserSubscription:
        """
        Insert a subscription row.

        WHY: The partial unique index rejects a second current row for the
        same user. Callers check first; this catches the race where two
        writers both passed the check.

        Raises:
            DuplicateActiveSubscriptionError: If the user already has a current row
        """
        try:
            return await super().create(**kwargs)
        except IntegrityError as e:
            raise DuplicateActiveSubscriptionError(
                user_id=kwargs.get("user_id"),
                error=str(e.orig),
            ) from e

    async def get_fresh(self, subscription_id: int) -> Optional[UserSubscription]:
        """
        Re-read a row, overwriting any stale copy in the identity map.

        WHY: After a failed conditional write the in-memory object still
        holds what we read before; the retry must see what the winner wrote.
        """
        result = await self.session.execute(
            select(UserSubscription)
            .where(UserSubscription.id == subscription_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_current_for_user(self, user_id: int) -> Optional[UserSubscription]:
        """
        Get the user's current (trialing, active or past_due) subscription.

        Args:
            user_id: User ID

        Returns:
            Current subscription if any, None otherwise
        """
        result = await self.session.execute(
            select(UserSubscription)
            .where(
                UserSubscription.user_id == user_id,
                UserSubscription.status.in_(list(CURRENT_STATUSES)),
            )
            .execution_options(populate_existing=True)
        )
        return result.scalars().first()

    async def get_by_stripe_subscription_id(
        self, stripe_subscription_id: str
    ) -> Optional[UserSubscription]:
        """
        Get subscription by processor subscription ID.

        WHY: Essential for webhook processing. When the processor sends an
        event we need the row it refers to.

        Args:
            stripe_subscription_id: Processor subscription ID (sub_xxx)

        Returns:
            Subscription if found, None otherwise
        """
        result = await self.session.execute(
            select(UserSubscription)
            .where(UserSubscription.stripe_subscription_id == stripe_subscription_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_latest_paid_for_user(self, user_id: int) -> Optional[UserSubscription]:
        """
        Most recent paid row for a user, whatever its status.

        WHY: Reactivation decides its path from the latest paid row: a
        scheduled cancellation, a recent terminal cancellation, or neither.
        """
        result = await self.session.execute(
            select(UserSubscription)
            .where(
                UserSubscription.user_id == user_id,
                UserSubscription.stripe_subscription_id.is_not(None),
            )
            .order_by(UserSubscription.created_at.desc(), UserSubscription.id.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def list_for_user(self, user_id: int, limit: int = 50) -> List[UserSubscription]:
        """Subscription history for a user, newest first."""
        result = await self.session.execute(
            select(UserSubscription)
            .where(UserSubscription.user_id == user_id)
            .order_by(UserSubscription.created_at.desc(), UserSubscription.id.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def compare_and_swap(
        self,
        subscription_id: int,
        expected_version: int,
        **values: Any,
    ) -> Optional[UserSubscription]:
        """
        Update a row only if it still has the expected version.

        WHAT: ``UPDATE ... WHERE id = :id AND version = :expected`` that also
        bumps the version.

        WHY: Webhooks, the sweep and API calls never hold a lock across a
        processor call. Instead each writer reads, decides and writes back
        conditionally; a concurrent writer turns this into a miss that the
        caller re-evaluates.

        Args:
            subscription_id: Row to update
            expected_version: Version the caller read
            **values: Columns to set

        Returns:
            The updated row, or None if another writer got there first
        """
        result = await self.session.execute(
            update(UserSubscription)
            .where(
                UserSubscription.id == subscription_id,
                UserSubscription.version == expected_version,
            )
            .values(version=expected_version + 1, updated_at=utcnow(), **values)
            .returning(UserSubscription)
        )
        instance = result.scalar_one_or_none()
        if instance:
            await self.session.refresh(instance)
        return instance

    # ========================================================================
    # Sweep queries
    # ========================================================================

    async def list_expired_candidates(self, now: datetime) -> List[UserSubscription]:
        """
        Paid rows that still look current but whose period has ended.

        WHY: Safety net for missed webhooks: the processor should have told
        us about renewal or cancellation before the period ended.
        """
        result = await self.session.execute(
            select(UserSubscription)
            .where(
                UserSubscription.status.in_(list(CURRENT_STATUSES)),
                UserSubscription.current_period_end < now,
                UserSubscription.stripe_subscription_id.is_not(None),
            )
            .order_by(UserSubscription.id)
        )
        return list(result.scalars().all())

    async def list_past_due(self) -> List[UserSubscription]:
        """All past_due rows; grace expiry is decided from metadata by the planner."""
        result = await self.session.execute(
            select(UserSubscription)
            .where(UserSubscription.status == SubscriptionStatus.PAST_DUE)
            .order_by(UserSubscription.id)
        )
        return list(result.scalars().all())

    # ========================================================================
    # Analytics
    # ========================================================================

    async def count_by_status(self) -> Dict[str, int]:
        """Row counts per status."""
        result = await self.session.execute(
            select(UserSubscription.status, func.count(UserSubscription.id)).group_by(
                UserSubscription.status
            )
        )
        return {SubscriptionStatus(status).value: count for status, count in result.all()}

    async def count_current_by_plan(self) -> Dict[str, int]:
        """Current subscriptions per plan name."""
        result = await self.session.execute(
            select(SubscriptionPlan.name, func.count(UserSubscription.id))
            .join(SubscriptionPlan, SubscriptionPlan.id == UserSubscription.plan_id)
            .where(UserSubscription.status.in_(list(CURRENT_STATUSES)))
            .group_by(SubscriptionPlan.name)
        )
        return {name: count for name, count in result.all()}

    async def list_current_paid(self) -> List[UserSubscription]:
        """Current rows backed by a processor subscription (for revenue figures)."""
        result = await self.session.execute(
            select(UserSubscription).where(
                UserSubscription.status.in_(list(CURRENT_STATUSES)),
                UserSubscription.stripe_subscription_id.is_not(None),
            )
        )
        return list(result.scalars().all())
