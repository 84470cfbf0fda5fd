"""
Subscription email rendering.

WHAT: Turns a milestone key plus context into (subject, html, text).

WHY: Milestone emails share one branded layout (templates/email/base.html)
and copy can change without touching the lifecycle code that sends them.

HOW: Jinja2 renders the HTML body from ``<milestone>.html``; subject and
plain-text body are short ``str.format`` templates kept in
SUBSCRIPTION_EMAILS below.
"""

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Any, Optional, Tuple

from jinja2 import Environment, FileSystemLoader, select_autoescape, TemplateNotFound, TemplateError

from billing_engine.core.config import settings
from billing_engine.core.exceptions import EmailServiceError


logger = logging.getLogger(__name__)

TEMPLATE_DIR = Path(__file__).resolve().parent.parent / "templates" / "email"

TEXT_FOOTER = "\n\n---\nYou are receiving this because you have a subscription on our platform."


# Subject and plain-text body per template; both are str.format templates
# over the same context the HTML template receives.
SUBSCRIPTION_EMAILS: Dict[str, Tuple[str, str]] = {
    "subscription_activated": (
        "Your {plan_name} subscription is active",
        "Hi {user_name},\n\n"
        "Your {plan_name} subscription is now active. "
        "The current billing period runs until {period_end}.",
    ),
    "subscription_past_due": (
        "Payment failed for your {plan_name} subscription",
        "Hi {user_name},\n\n"
        "We could not charge your payment method for {plan_name}. "
        "Please update it to keep your plan:\n\n{action_url}",
    ),
    "payment_failed": (
        "Another payment attempt failed",
        "Hi {user_name},\n\n"
        "Your payment for {plan_name} failed again. "
        "Please update your payment method:\n\n{action_url}",
    ),
    "subscription_canceled": (
        "Your {plan_name} subscription has ended",
        "Hi {user_name},\n\n"
        "Your {plan_name} subscription has ended. "
        "You can reactivate it from your subscription page:\n\n{action_url}",
    ),
    "cancellation_scheduled": (
        "Your {plan_name} subscription will end on {period_end}",
        "Hi {user_name},\n\n"
        "Your {plan_name} subscription will not renew. "
        "You keep access until {period_end}.",
    ),
    "subscription_reactivated": (
        "Welcome back to {plan_name}",
        "Hi {user_name},\n\n"
        "Your {plan_name} subscription has been reactivated.",
    ),
    "subscription_downgraded": (
        "You have been moved to the {plan_name} plan",
        "Hi {user_name},\n\n"
        "Your paid subscription ended and your account is now on the "
        "{plan_name} plan. You can upgrade again at any time:\n\n{action_url}",
    ),
    "trial_ending": (
        "Your {plan_name} trial ends on {trial_end}",
        "Hi {user_name},\n\n"
        "Your {plan_name} trial ends on {trial_end}. "
        "Your payment method will be charged after that.",
    ),
}


class _DefaultDict(dict):
    """Leaves missing keys empty in subject/text formatting."""

    def __missing__(self, key):
        return ""


class EmailTemplateService:
    """
    Renders subscription milestone emails.

    Example:
        subject, html, text = EmailTemplateService().render_subscription_email(
            "trial_ending",
            {"user_name": "Ana", "plan_name": "Pro", "trial_end": "May 3, 2025"},
        )
    """

    def __init__(self, template_dir: Optional[Path] = None):
        self.template_dir = template_dir or TEMPLATE_DIR
        # Autoescape keeps user-controlled names from injecting markup
        self.env = Environment(
            loader=FileSystemLoader(str(self.template_dir)),
            autoescape=select_autoescape(["html"]),
            trim_blocks=True,
            lstrip_blocks=True,
        )

    @staticmethod
    def common_context() -> Dict[str, Any]:
        """Footer, branding and link values every template may use."""
        return {
            "year": datetime.now(timezone.utc).year,
            "frontend_url": settings.FRONTEND_URL,
            "subscription_url": settings.subscription_url,
            "platform_name": settings.PROJECT_NAME.replace(" API", ""),
        }

    def render_template(self, template_name: str, context: Dict[str, Any]) -> str:
        """
        Render one HTML template over the common context plus ``context``.

        Raises:
            EmailServiceError: Missing template or a Jinja2 error while rendering
        """
        try:
            template = self.env.get_template(template_name)
        except TemplateNotFound:
            logger.error(f"Missing email template {template_name}")
            raise EmailServiceError(
                message=f"Email template {template_name} does not exist",
                template=template_name,
            )

        try:
            return template.render(**{**self.common_context(), **context})
        except TemplateError as e:
            logger.error(f"Rendering {template_name} failed: {e}")
            raise EmailServiceError(
                message=f"Could not render email template {template_name}",
                template=template_name,
                error=str(e),
            )

    def render_subscription_email(
        self,
        template_key: str,
        context: Dict[str, Any],
    ) -> Tuple[str, str, str]:
        """
        Render a milestone email.

        Returns:
            (subject, html_content, text_content)

        Raises:
            EmailServiceError: Unknown milestone or a render failure
        """
        try:
            subject_format, text_format = SUBSCRIPTION_EMAILS[template_key]
        except KeyError:
            raise EmailServiceError(
                message=f"Unknown subscription email: {template_key}",
                template=template_key,
            )

        values = _DefaultDict({**self.common_context(), **context})
        values.setdefault("action_url", settings.subscription_url)

        html_content = self.render_template(f"{template_key}.html", dict(values))
        text_content = text_format.format_map(values).strip() + TEXT_FOOTER
        return subject_format.format_map(values), html_content, text_content


_template_service: Optional[EmailTemplateService] = None


def get_email_template_service() -> EmailTemplateService:
    """Process-wide instance, so Jinja2's compiled template cache is reused."""
    global _template_service
    if _template_service is None:
        _template_service = EmailTemplateService()
    return _template_service
