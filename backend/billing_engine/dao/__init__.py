"""
Data Access Object (DAO) package.

WHY: DAOs provide a clean separation between database operations and business logic,
making the codebase more testable and maintainable.
"""

from billing_engine.dao.base import BaseDAO
from billing_engine.dao.user import UserDAO
from billing_engine.dao.plan import PlanDAO
from billing_engine.dao.subscription import SubscriptionDAO
from billing_engine.dao.billing_event import BillingEventDAO
from billing_engine.dao.notification import NotificationDAO

__all__ = [
    "BaseDAO",
    "UserDAO",
    "PlanDAO",
    "SubscriptionDAO",
    "BillingEventDAO",
    "NotificationDAO",
]
