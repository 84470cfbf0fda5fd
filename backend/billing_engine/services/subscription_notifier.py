"""
Subscription notifier.

WHAT: Turns ``LifecycleNotice`` objects into in-app notification rows and,
for the milestones that warrant it, templated emails.

WHY: Notifications are side effects of a committed subscription change.
They run after the commit, each in its own session, and a failure to
notify is logged rather than propagated: the vendor's entitlement is
already correct and must not be rolled back because an email bounced.

HOW: Called with ``SubscriptionLifecycle.drain_notices()`` after the
caller commits. Reads the user and plan fresh so the text reflects what
was persisted.
"""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from billing_engine.core.config import settings
from billing_engine.dao.notification import NotificationDAO
from billing_engine.dao.plan import PlanDAO
from billing_engine.dao.subscription import SubscriptionDAO
from billing_engine.dao.user import UserDAO
from billing_engine.db.session import AsyncSessionLocal
from billing_engine.models.notification import NotificationKind
from billing_engine.models.subscription import FREE_TIER_PERIOD_END, SubscriptionStatus
from billing_engine.services.email import EmailService, EmailType, get_email_service
from billing_engine.services.subscription_lifecycle import LifecycleNotice

logger = logging.getLogger(__name__)


# In-app title and message per notification kind; messages are str.format
# templates over the notice context.
NOTIFICATION_TEXT: Dict[NotificationKind, tuple] = {
    NotificationKind.SUBSCRIPTION_CREATED: (
        "Subscription started",
        "You are now on the {plan_name} plan.",
    ),
    NotificationKind.SUBSCRIPTION_ACTIVATED: (
        "Subscription active",
        "Your {plan_name} subscription is now active.",
    ),
    NotificationKind.SUBSCRIPTION_RENEWED: (
        "Subscription renewed",
        "Your {plan_name} subscription renewed until {period_end}.",
    ),
    NotificationKind.SUBSCRIPTION_PAST_DUE: (
        "Payment failed",
        "We could not charge your payment method for {plan_name}. Please update it.",
    ),
    NotificationKind.SUBSCRIPTION_CANCELED: (
        "Subscription ended",
        "Your {plan_name} subscription has ended.",
    ),
    NotificationKind.SUBSCRIPTION_CANCELLATION_SCHEDULED: (
        "Cancellation scheduled",
        "Your {plan_name} subscription will end on {period_end}.",
    ),
    NotificationKind.SUBSCRIPTION_RESUMED: (
        "Subscription resumed",
        "Your {plan_name} subscription will renew as usual.",
    ),
    NotificationKind.SUBSCRIPTION_REACTIVATED: (
        "Subscription reactivated",
        "Welcome back! Your {plan_name} subscription is active again.",
    ),
    NotificationKind.SUBSCRIPTION_DOWNGRADED: (
        "Moved to the free plan",
        "Your paid subscription ended and your account is now on the {plan_name} plan.",
    ),
    NotificationKind.SUBSCRIPTION_PLAN_CHANGED: (
        "Plan changed",
        "Your subscription is now on the {plan_name} plan.",
    ),
    NotificationKind.PAYMENT_SUCCEEDED: (
        "Payment received",
        "Your payment for {plan_name} went through.",
    ),
    NotificationKind.PAYMENT_FAILED: (
        "Payment failed again",
        "Another payment attempt for {plan_name} failed. Please update your payment method.",
    ),
    NotificationKind.TRIAL_ENDING: (
        "Trial ending soon",
        "Your {plan_name} trial ends on {trial_end}.",
    ),
}

EMAIL_TYPES: Dict[NotificationKind, EmailType] = {
    NotificationKind.SUBSCRIPTION_ACTIVATED: EmailType.SUBSCRIPTION_ACTIVATED,
    NotificationKind.SUBSCRIPTION_PAST_DUE: EmailType.SUBSCRIPTION_PAST_DUE,
    NotificationKind.SUBSCRIPTION_CANCELED: EmailType.SUBSCRIPTION_CANCELED,
    NotificationKind.SUBSCRIPTION_CANCELLATION_SCHEDULED: EmailType.CANCELLATION_SCHEDULED,
    NotificationKind.SUBSCRIPTION_RESUMED: EmailType.SUBSCRIPTION_REACTIVATED,
    NotificationKind.SUBSCRIPTION_REACTIVATED: EmailType.SUBSCRIPTION_REACTIVATED,
    NotificationKind.SUBSCRIPTION_DOWNGRADED: EmailType.SUBSCRIPTION_DOWNGRADED,
    NotificationKind.PAYMENT_FAILED: EmailType.PAYMENT_FAILED,
    NotificationKind.TRIAL_ENDING: EmailType.TRIAL_ENDING,
}


def _format_date(value: Optional[datetime]) -> str:
    if value is None or value >= FREE_TIER_PERIOD_END:
        return ""
    return value.strftime("%B %d, %Y")


class _Blank(dict):
    def __missing__(self, key):
        return ""


class SubscriptionNotifier:
    """
    Delivers lifecycle notices after commit.

    Example:
        await db.commit()
        await SubscriptionNotifier().dispatch(lifecycle.drain_notices())
    """

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession] = AsyncSessionLocal,
        email_service: Optional[EmailService] = None,
    ):
        """
        Args:
            session_factory: Factory for the per-notice sessions
            email_service: Email service (defaults to the global one)
        """
        self.session_factory = session_factory
        self._email_service = email_service

    @property
    def email_service(self) -> EmailService:
        if self._email_service is None:
            self._email_service = get_email_service()
        return self._email_service

    async def dispatch(self, notices: Iterable[LifecycleNotice]) -> Dict[str, int]:
        """
        Deliver notices; one failing notice never blocks the rest.

        Returns:
            Counts of delivered notifications, sent emails and failures
        """
        stats = {"notified": 0, "emailed": 0, "failed": 0}

        for notice in notices:
            try:
                emailed = await self._deliver(notice)
                stats["notified"] += 1
                if emailed:
                    stats["emailed"] += 1
            except Exception as e:
                stats["failed"] += 1
                logger.error(
                    f"Failed to deliver {notice.kind.value} notice for "
                    f"subscription {notice.subscription_id}: {e}",
                    extra={
                        "user_id": notice.user_id,
                        "subscription_id": notice.subscription_id,
                    },
                    exc_info=True,
                )

        return stats

    async def _deliver(self, notice: LifecycleNotice) -> bool:
        """Insert the in-app notification and send the email if flagged."""
        async with self.session_factory() as session:
            user = await UserDAO(session).get_by_id(notice.user_id)
            if user is None:
                logger.warning(
                    f"User {notice.user_id} not found, dropping {notice.kind.value} notice",
                    extra={"user_id": notice.user_id},
                )
                return False

            context = await self._build_context(session, notice)
            context["user_name"] = user.full_name

            title, template = NOTIFICATION_TEXT[NotificationKind(notice.kind)]
            await NotificationDAO(session).create(
                user_id=user.id,
                kind=notice.kind,
                title=title,
                message=template.format_map(_Blank(context)),
                action_url=settings.subscription_url,
                is_read=False,
            )
            await session.commit()
            email_to = user.email

        if not notice.email:
            return False

        email_type = EMAIL_TYPES.get(NotificationKind(notice.kind))
        if email_type is None:
            return False

        result = await self.email_service.send_subscription_email(
            to_email=email_to,
            email_type=email_type,
            context=context,
        )
        return result.success

    async def _build_context(self, session: AsyncSession, notice: LifecycleNotice) -> Dict[str, Any]:
        context: Dict[str, Any] = {
            "subscription_id": notice.subscription_id,
            "action_url": settings.subscription_url,
        }

        subscription = await SubscriptionDAO(session).get_by_id(notice.subscription_id)
        if subscription is not None:
            plan = await PlanDAO(session).get_by_id(subscription.plan_id)
            context.update(
                plan_name=plan.name if plan else "",
                status=SubscriptionStatus(subscription.status).value,
                period_end=_format_date(subscription.current_period_end),
                trial_end=_format_date(subscription.trial_end),
                failure_count=subscription.meta.payment_failure_count,
            )

        context.update(
            {k: (v.value if hasattr(v, "value") else v) for k, v in notice.context.items()}
        )
        return context
