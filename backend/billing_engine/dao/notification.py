"""
Notification Data Access Object.
"""

from typing import List

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from billing_engine.dao.base import BaseDAO
from billing_engine.models.notification import Notification


class NotificationDAO(BaseDAO[Notification]):
    """Data Access Object for Notification model."""

    def __init__(self, session: AsyncSession):
        super().__init__(Notification, session)

    async def list_for_user(self, user_id: int, limit: int = 50) -> List[Notification]:
        """Notifications for a user, newest first."""
        result = await self.session.execute(
            select(Notification)
            .where(Notification.user_id == user_id)
            .order_by(Notification.created_at.desc(), Notification.id.desc())
            .limit(limit)
        )
        return list(result.scalars().all())
