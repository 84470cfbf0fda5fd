"""
In-app notification model.

WHY: Subscription milestones are surfaced in the vendor dashboard's
notification feed in addition to email; the feed reads these rows.
"""

import enum

from sqlalchemy import Column, Integer, String, Text, Boolean, ForeignKey

from billing_engine.models.base import Base, TimestampMixin, PrimaryKeyMixin, enum_type


class NotificationKind(str, enum.Enum):
    """Subscription events a vendor is told about."""

    SUBSCRIPTION_CREATED = "subscription_created"
    SUBSCRIPTION_ACTIVATED = "subscription_activated"
    SUBSCRIPTION_RENEWED = "subscription_renewed"
    SUBSCRIPTION_PAST_DUE = "subscription_past_due"
    SUBSCRIPTION_CANCELED = "subscription_canceled"
    SUBSCRIPTION_CANCELLATION_SCHEDULED = "subscription_cancellation_scheduled"
    SUBSCRIPTION_RESUMED = "subscription_resumed"
    SUBSCRIPTION_REACTIVATED = "subscription_reactivated"
    SUBSCRIPTION_DOWNGRADED = "subscription_downgraded"
    SUBSCRIPTION_PLAN_CHANGED = "subscription_plan_changed"
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
    TRIAL_ENDING = "trial_ending"


class Notification(Base, PrimaryKeyMixin, TimestampMixin):
    """Notification shown in a user's in-app feed."""

    __tablename__ = "notifications"

    user_id = Column(
        Integer,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    kind = Column(enum_type(NotificationKind, "notificationkind"), nullable=False)
    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)
    action_url = Column(String(500), nullable=True)
    is_read = Column(Boolean, nullable=False, default=False)

    def __repr__(self) -> str:
        return f"<Notification(id={self.id}, user_id={self.user_id}, kind={self.kind})>"
