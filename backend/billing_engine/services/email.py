"""
Subscription email delivery.

WHAT: Sends the templated emails that accompany subscription milestones
(trial ending, payment failures, cancellation, downgrade, reactivation).

WHY: A vendor whose card fails has a few days to fix it before losing paid
features; email is the channel that reaches them outside the app.

HOW: EmailService renders a milestone with EmailTemplateService and hands
the message to a provider. Resend is used when RESEND_API_KEY is set;
otherwise MockEmailProvider records messages in memory and logs them.

Delivery problems are reported in EmailResult instead of raised, so the
notifier can count them without a try/except per provider error.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union
from urllib.parse import urlparse

import httpx

from billing_engine.core.config import settings
from billing_engine.services.email_template_service import (
    EmailTemplateService,
    get_email_template_service,
)

logger = logging.getLogger(__name__)


class EmailType(str, Enum):
    """
    Subscription milestones that send an email.

    Each value is also the template file name and the key into
    SUBSCRIPTION_EMAILS.
    """

    SUBSCRIPTION_ACTIVATED = "subscription_activated"
    SUBSCRIPTION_PAST_DUE = "subscription_past_due"
    SUBSCRIPTION_CANCELED = "subscription_canceled"
    CANCELLATION_SCHEDULED = "cancellation_scheduled"
    SUBSCRIPTION_REACTIVATED = "subscription_reactivated"
    SUBSCRIPTION_DOWNGRADED = "subscription_downgraded"
    TRIAL_ENDING = "trial_ending"
    PAYMENT_FAILED = "payment_failed"


@dataclass
class EmailMessage:
    """A rendered email ready for a provider."""

    to_email: str
    subject: str
    html_content: str
    email_type: EmailType
    text_content: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class EmailResult:
    success: bool
    provider: str
    message_id: Optional[str] = None
    error: Optional[str] = None


class EmailProvider(ABC):
    """Transport for rendered emails."""

    name: str = "unknown"

    @abstractmethod
    async def send(self, message: EmailMessage) -> EmailResult:
        """Deliver ``message``; failures are returned, not raised."""


class ResendProvider(EmailProvider):
    """
    Sends through the Resend HTTP API.

    Messages are tagged with the milestone and subscription id so bounces
    can be traced back to the subscription in the Resend dashboard.
    """

    name = "resend"
    API_URL = "https://api.resend.com/emails"
    REQUEST_TIMEOUT_SECONDS = 10.0

    def __init__(self, api_key: Optional[str] = None, from_email: Optional[str] = None):
        self._api_key = api_key or settings.RESEND_API_KEY
        self._from_email = from_email or settings.EMAIL_FROM or self._default_sender()

    @staticmethod
    def _default_sender() -> str:
        domain = urlparse(settings.FRONTEND_URL).hostname or "localhost"
        return f"Billing <billing@{domain}>"

    def _payload(self, message: EmailMessage) -> Dict[str, Any]:
        tags = [{"name": "email_type", "value": message.email_type.value}]
        subscription_id = message.metadata.get("subscription_id")
        if subscription_id is not None:
            tags.append({"name": "subscription_id", "value": str(subscription_id)})
        return {
            "from": self._from_email,
            "to": [message.to_email],
            "subject": message.subject,
            "html": message.html_content,
            "text": message.text_content,
            "tags": tags,
        }

    async def send(self, message: EmailMessage) -> EmailResult:
        if not self._api_key:
            return EmailResult(success=False, provider=self.name, error="RESEND_API_KEY is not set")

        try:
            async with httpx.AsyncClient(timeout=self.REQUEST_TIMEOUT_SECONDS) as client:
                response = await client.post(
                    self.API_URL,
                    headers={"Authorization": f"Bearer {self._api_key}"},
                    json=self._payload(message),
                )
        except httpx.HTTPError as e:
            return EmailResult(success=False, provider=self.name, error=f"Resend unreachable: {e}")

        if response.status_code not in (200, 201):
            return EmailResult(
                success=False,
                provider=self.name,
                error=f"Resend returned {response.status_code}: {response.text}",
            )
        return EmailResult(success=True, provider=self.name, message_id=response.json().get("id"))


class MockEmailProvider(EmailProvider):
    """
    Records emails instead of sending them.

    Used in development and tests; ``sent_emails`` is shared by every
    instance so tests can inspect what any service sent.
    """

    name = "mock"
    sent_emails: List[EmailMessage] = []

    async def send(self, message: EmailMessage) -> EmailResult:
        logger.info(
            f"[MOCK EMAIL] {message.email_type.value} to {message.to_email}: {message.subject}"
        )
        MockEmailProvider.sent_emails.append(message)
        return EmailResult(
            success=True,
            provider=self.name,
            message_id=f"mock-{datetime.now(timezone.utc).timestamp()}",
        )

    @classmethod
    def clear_sent_emails(cls) -> None:
        cls.sent_emails = []


class EmailService:
    """
    Renders and sends subscription milestone emails.

    Example:
        result = await EmailService().send_subscription_email(
            to_email="vendor@example.com",
            email_type=EmailType.TRIAL_ENDING,
            context={"user_name": "Vera", "plan_name": "Standard", "trial_end": "May 01, 2025"},
        )
    """

    def __init__(
        self,
        provider: Optional[EmailProvider] = None,
        template_service: Optional[EmailTemplateService] = None,
    ):
        if provider is None:
            if settings.RESEND_API_KEY:
                provider = ResendProvider()
            else:
                logger.warning("RESEND_API_KEY not set, subscription emails will only be logged")
                provider = MockEmailProvider()
        self._provider = provider
        self._templates = template_service or get_email_template_service()

    @property
    def provider(self) -> EmailProvider:
        return self._provider

    async def send_subscription_email(
        self,
        to_email: str,
        email_type: Union[EmailType, str],
        context: Dict[str, Any],
    ) -> EmailResult:
        """
        Render the milestone template and send it.

        Args:
            to_email: Vendor email address
            email_type: Milestone (enum member or its value)
            context: Template variables; ``subscription_id`` is also kept as
                message metadata

        Raises:
            EmailServiceError: If the template is missing or fails to render
        """
        email_type = EmailType(email_type)
        subject, html_content, text_content = self._templates.render_subscription_email(
            email_type.value, context
        )
        message = EmailMessage(
            to_email=to_email,
            subject=subject,
            html_content=html_content,
            text_content=text_content,
            email_type=email_type,
            metadata={"subscription_id": context.get("subscription_id")},
        )

        result = await self._provider.send(message)
        if result.success:
            logger.info(
                f"Sent {email_type.value} email to {to_email}",
                extra={"message_id": result.message_id, "provider": result.provider},
            )
        else:
            logger.error(
                f"Failed to send {email_type.value} email to {to_email}: {result.error}",
                extra={"provider": result.provider, "subscription_id": context.get("subscription_id")},
            )
        return result


_email_service: Optional[EmailService] = None


def get_email_service() -> EmailService:
    """Process-wide EmailService, created on first use."""
    global _email_service
    if _email_service is None:
        _email_service = EmailService()
    return _email_service
