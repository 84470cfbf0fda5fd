"""
Unit tests for SubscriptionNotifier.

WHY: Verifies that committed lifecycle notices become in-app notification
rows and, when flagged, emails; and that one failing notice neither raises
nor blocks the others.
"""

import pytest
from datetime import datetime
from unittest.mock import AsyncMock

from billing_engine.core.config import settings
from billing_engine.dao.notification import NotificationDAO
from billing_engine.models.notification import NotificationKind
from billing_engine.models.subscription import SubscriptionStatus
from billing_engine.services.email import EmailService, EmailType, MockEmailProvider
from billing_engine.services.subscription_lifecycle import LifecycleNotice
from billing_engine.services.subscription_notifier import SubscriptionNotifier

from tests.factories import SubscriptionFactory


def _notice(sub, kind, email=False, **context):
    return LifecycleNotice(
        user_id=sub.user_id,
        subscription_id=sub.id,
        kind=kind,
        email=email,
        context=context,
    )


class TestSubscriptionNotifier:
    """Tests for notice delivery."""

    @pytest.mark.asyncio
    async def test_creates_notification_and_sends_email(
        self, db_session, notifier, vendor, standard_plan
    ):
        sub = await SubscriptionFactory.create_paid(
            db_session,
            vendor,
            standard_plan,
            status=SubscriptionStatus.TRIALING,
            trial_end=datetime(2025, 2, 1, 9, 0),
        )

        stats = await notifier.dispatch([_notice(sub, NotificationKind.TRIAL_ENDING, email=True)])

        assert stats == {"notified": 1, "emailed": 1, "failed": 0}
        notifications = await NotificationDAO(db_session).list_for_user(vendor.id)
        assert len(notifications) == 1
        assert notifications[0].kind == NotificationKind.TRIAL_ENDING
        assert notifications[0].message == "Your Standard trial ends on February 01, 2025."
        assert notifications[0].action_url == settings.subscription_url
        assert notifications[0].is_read is False

        sent = MockEmailProvider.sent_emails
        assert len(sent) == 1
        assert sent[0].to_email == vendor.email
        assert sent[0].email_type == EmailType.TRIAL_ENDING
        assert "Vera Vendor" in sent[0].html_content

    @pytest.mark.asyncio
    async def test_unflagged_notice_is_not_emailed(self, db_session, notifier, vendor, standard_plan):
        sub = await SubscriptionFactory.create_paid(db_session, vendor, standard_plan)

        stats = await notifier.dispatch([_notice(sub, NotificationKind.SUBSCRIPTION_RENEWED)])

        assert stats == {"notified": 1, "emailed": 0, "failed": 0}
        assert MockEmailProvider.sent_emails == []

    @pytest.mark.asyncio
    async def test_notice_context_overrides_subscription_fields(
        self, db_session, notifier, vendor, free_plan
    ):
        sub = await SubscriptionFactory.create_free(db_session, vendor, free_plan)

        await notifier.dispatch(
            [
                _notice(
                    sub,
                    NotificationKind.SUBSCRIPTION_DOWNGRADED,
                    email=True,
                    previous_plan_name="Standard",
                )
            ]
        )

        notifications = await NotificationDAO(db_session).list_for_user(vendor.id)
        assert notifications[0].message == (
            "Your paid subscription ended and your account is now on the Free plan."
        )
        # Free rows have no meaningful period end
        assert "9999" not in MockEmailProvider.sent_emails[0].html_content

    @pytest.mark.asyncio
    async def test_email_failure_is_isolated(
        self, db_session, session_factory, vendor, standard_plan
    ):
        sub = await SubscriptionFactory.create_paid(db_session, vendor, standard_plan)
        email_service = EmailService(provider=MockEmailProvider())
        email_service.send_subscription_email = AsyncMock(side_effect=RuntimeError("smtp down"))
        notifier = SubscriptionNotifier(session_factory=session_factory, email_service=email_service)

        stats = await notifier.dispatch(
            [
                _notice(sub, NotificationKind.SUBSCRIPTION_PAST_DUE, email=True),
                _notice(sub, NotificationKind.SUBSCRIPTION_RENEWED),
            ]
        )

        assert stats == {"notified": 1, "emailed": 0, "failed": 1}
        notifications = await NotificationDAO(db_session).list_for_user(vendor.id)
        assert len(notifications) == 2

    @pytest.mark.asyncio
    async def test_missing_user_is_skipped(self, db_session, notifier, vendor, standard_plan):
        sub = await SubscriptionFactory.create_paid(db_session, vendor, standard_plan)
        orphan = LifecycleNotice(
            user_id=9999,
            subscription_id=sub.id,
            kind=NotificationKind.SUBSCRIPTION_CANCELED,
            email=True,
            context={},
        )

        stats = await notifier.dispatch([orphan])

        assert stats == {"notified": 1, "emailed": 0, "failed": 0}
        assert MockEmailProvider.sent_emails == []

    @pytest.mark.asyncio
    async def test_nothing_to_dispatch(self, notifier):
        assert await notifier.dispatch([]) == {"notified": 0, "emailed": 0, "failed": 0}
