"""
User Data Access Object.

WHY: Users are owned by the marketplace's identity service; the engine
only reads them and stores the processor customer handle once resolved.
"""

from typing import Optional
from sqlalchemy.ext.asyncio import AsyncSession

from billing_engine.dao.base import BaseDAO
from billing_engine.models.user import User


class UserDAO(BaseDAO[User]):
    """Data Access Object for User model."""

    def __init__(self, session: AsyncSession):
        super().__init__(User, session)

    async def set_stripe_customer_id(self, user_id: int, customer_id: str) -> Optional[User]:
        """
        Store the processor customer handle on the user.

        WHY: Every later checkout, downgrade and reactivation reuses it
        instead of creating duplicate customers at the processor.
        """
        return await self.update(user_id, stripe_customer_id=customer_id)
