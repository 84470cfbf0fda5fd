"""
Database models package.

WHY: Centralizing model imports ensures Alembic can discover all models
for migration generation and makes it easier to import models elsewhere.
"""

from billing_engine.models.base import Base, TimestampMixin, PrimaryKeyMixin
from billing_engine.models.user import User, UserRole
from billing_engine.models.plan import SubscriptionPlan, PlanType, BillingInterval
from billing_engine.models.subscription import (
    UserSubscription,
    SubscriptionStatus,
    SubscriptionMetadata,
    DowngradeReason,
    ReactivationPath,
    CURRENT_STATUSES,
    TERMINAL_STATUSES,
    FREE_TIER_PERIOD_END,
)
from billing_engine.models.billing_event import BillingEvent, BillingEventOutcome
from billing_engine.models.notification import Notification, NotificationKind

__all__ = [
    "Base",
    "TimestampMixin",
    "PrimaryKeyMixin",
    "User",
    "UserRole",
    "SubscriptionPlan",
    "PlanType",
    "BillingInterval",
    "UserSubscription",
    "SubscriptionStatus",
    "SubscriptionMetadata",
    "DowngradeReason",
    "ReactivationPath",
    "CURRENT_STATUSES",
    "TERMINAL_STATUSES",
    "FREE_TIER_PERIOD_END",
    "BillingEvent",
    "BillingEventOutcome",
    "Notification",
    "NotificationKind",
]
