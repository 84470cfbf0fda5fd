"""
Subscription plan Data Access Object.

WHAT: Read-side queries over the plan catalog.

WHY: The catalog is read on every checkout, downgrade and webhook that
needs period arithmetic; keeping the queries here lets the catalog service
stay free of SQL.
"""

from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from billing_engine.dao.base import BaseDAO
from billing_engine.models.plan import SubscriptionPlan, PlanType


class PlanDAO(BaseDAO[SubscriptionPlan]):
    """Data Access Object for SubscriptionPlan model."""

    def __init__(self, session: AsyncSession):
        super().__init__(SubscriptionPlan, session)

    async def list_active(self) -> List[SubscriptionPlan]:
        """Active plans in display order."""
        result = await self.session.execute(
            select(SubscriptionPlan)
            .where(SubscriptionPlan.is_active.is_(True))
            .order_by(SubscriptionPlan.sort_order, SubscriptionPlan.id)
        )
        return list(result.scalars().all())

    async def get_free_plan(self) -> Optional[SubscriptionPlan]:
        """
        Active free plan without a trial.

        WHY: This is the plan every vendor is bootstrapped onto and every
        downgrade lands on. If several are configured the first in display
        order wins.
        """
        result = await self.session.execute(
            select(SubscriptionPlan)
            .where(
                SubscriptionPlan.plan_type == PlanType.FREE,
                SubscriptionPlan.is_active.is_(True),
                SubscriptionPlan.trial_period_days == 0,
            )
            .order_by(SubscriptionPlan.sort_order, SubscriptionPlan.id)
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def get_by_stripe_price_id(self, stripe_price_id: str) -> Optional[SubscriptionPlan]:
        """Plan for a processor price id (used when a webhook reports a plan change)."""
        result = await self.session.execute(
            select(SubscriptionPlan).where(SubscriptionPlan.stripe_price_id == stripe_price_id)
        )
        return result.scalar_one_or_none()
