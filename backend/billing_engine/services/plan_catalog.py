"""
Plan catalog service.

WHAT: Lookups over the subscription plan catalog with the business rules
that apply to them (inactive plans are not sold, the free plan must exist).

WHY: Checkout, downgrade and webhook handling all need "give me this plan
or fail clearly"; doing it in one place keeps the error types consistent.
"""

import logging
from typing import List

from sqlalchemy.ext.asyncio import AsyncSession

from billing_engine.core.exceptions import PlanNotFoundError, PlanNotActiveError
from billing_engine.dao.plan import PlanDAO
from billing_engine.models.plan import SubscriptionPlan

logger = logging.getLogger(__name__)


class PlanCatalog:
    """Read access to subscription plans."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.dao = PlanDAO(db)

    async def get_plan(self, plan_id: int, require_active: bool = True) -> SubscriptionPlan:
        """
        Fetch a plan by id.

        Args:
            plan_id: Plan ID
            require_active: Reject retired plans (False when resolving the
                plan of an existing subscription)

        Raises:
            PlanNotFoundError: If the plan does not exist
            PlanNotActiveError: If the plan is retired and require_active is set
        """
        plan = await self.dao.get_by_id(plan_id)
        if plan is None:
            raise PlanNotFoundError(plan_id=plan_id)
        if require_active and not plan.is_active:
            raise PlanNotActiveError(plan_id=plan_id)
        return plan

    async def list_active_plans(self) -> List[SubscriptionPlan]:
        """Plans currently for sale, in display order."""
        return await self.dao.list_active()

    async def get_free_plan(self) -> SubscriptionPlan:
        """
        The plan vendors are bootstrapped onto and downgraded to.

        Raises:
            PlanNotFoundError: If no active free plan is configured
        """
        plan = await self.dao.get_free_plan()
        if plan is None:
            logger.error("No active free plan configured; downgrades cannot proceed")
            raise PlanNotFoundError(message="Free plan is not configured")
        return plan
