"""
Billing event ledger DAO.

WHY: Webhook deduplication needs two queries, "have we seen this event"
and "record that we did", both executed in the dispatcher's transaction.
"""

from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from billing_engine.dao.base import BaseDAO
from billing_engine.models.billing_event import BillingEvent, BillingEventOutcome


class BillingEventDAO(BaseDAO[BillingEvent]):
    """Data Access Object for BillingEvent model."""

    def __init__(self, session: AsyncSession):
        super().__init__(BillingEvent, session)

    async def get_by_event_id(self, event_id: str) -> Optional[BillingEvent]:
        result = await self.session.execute(
            select(BillingEvent).where(BillingEvent.event_id == event_id)
        )
        return result.scalar_one_or_none()

    async def record(
        self,
        event_id: str,
        event_type: str,
        outcome: BillingEventOutcome,
        stripe_subscription_id: Optional[str] = None,
    ) -> BillingEvent:
        """
        Mark an event as processed.

        Raises:
            IntegrityError: If a concurrent delivery recorded it first
        """
        return await self.create(
            event_id=event_id,
            event_type=event_type,
            outcome=outcome,
            stripe_subscription_id=stripe_subscription_id,
        )
