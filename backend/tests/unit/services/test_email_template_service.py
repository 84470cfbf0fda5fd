"""
Unit tests for EmailTemplateService and EmailService.

WHAT: Tests for Jinja2 rendering of subscription milestone emails and for
sending them through the mock provider.

WHY: Ensures every milestone the notifier can send has a template, that
variables are substituted and escaped, and that unknown milestones fail
loudly instead of sending an empty email.

HOW: Renders the packaged templates directly; sending goes through
MockEmailProvider.
"""

import pytest
from datetime import datetime, timezone
from pathlib import Path

from billing_engine.core.config import settings
from billing_engine.core.exceptions import EmailServiceError
from billing_engine.services.email import (
    EmailService,
    EmailType,
    MockEmailProvider,
)
from billing_engine.services.email_template_service import (
    SUBSCRIPTION_EMAILS,
    EmailTemplateService,
    get_email_template_service,
)


class TestEmailTemplateService:
    """Tests for EmailTemplateService class."""

    @pytest.fixture
    def template_service(self) -> EmailTemplateService:
        """Create template service instance."""
        return EmailTemplateService()

    def test_init_default_path(self, template_service: EmailTemplateService):
        """Test initialization with default template path."""
        assert template_service.template_dir.exists()
        assert (template_service.template_dir / "base.html").exists()

    def test_init_custom_path(self, tmp_path: Path):
        """Test initialization with custom template path."""
        (tmp_path / "test.html").write_text("Hello {{ name }}")

        service = EmailTemplateService(template_dir=tmp_path)

        assert service.render_template("test.html", {"name": "Vera"}) == "Hello Vera"

    def test_every_email_type_has_a_template(self, template_service: EmailTemplateService):
        """Test that each EmailType maps to a subject, text and HTML file."""
        for email_type in EmailType:
            assert email_type.value in SUBSCRIPTION_EMAILS
            assert (template_service.template_dir / f"{email_type.value}.html").exists()

    def test_render_template_not_found(self, template_service: EmailTemplateService):
        """Test rendering non-existent template raises error."""
        with pytest.raises(EmailServiceError) as exc_info:
            template_service.render_template("nonexistent.html", {})

        assert "does not exist" in str(exc_info.value)

    def test_render_trial_ending(self, template_service: EmailTemplateService):
        """Test trial ending email rendering."""
        subject, html, text = template_service.render_subscription_email(
            "trial_ending",
            {"user_name": "Vera", "plan_name": "Standard", "trial_end": "February 01, 2025"},
        )

        assert subject == "Your Standard trial ends on February 01, 2025"
        assert "Vera" in html
        assert "Standard" in html
        assert "February 01, 2025" in html
        assert text.startswith("Hi Vera,")
        assert text.endswith(
            "You are receiving this because you have a subscription on our platform."
        )

    def test_render_past_due_links_to_subscription_page(
        self, template_service: EmailTemplateService
    ):
        """Test that payment emails send the vendor to fix their card."""
        subject, html, text = template_service.render_subscription_email(
            "subscription_past_due",
            {"user_name": "Vera", "plan_name": "Standard"},
        )

        assert "Standard" in subject
        assert settings.subscription_url in html
        assert settings.subscription_url in text

    def test_missing_variables_render_empty(self, template_service: EmailTemplateService):
        """Test that a sparse context still renders."""
        subject, html, text = template_service.render_subscription_email(
            "subscription_downgraded", {}
        )

        assert subject == "You have been moved to the  plan"
        assert "Hi there" in html

    def test_user_input_is_escaped(self, template_service: EmailTemplateService):
        """Test that names cannot inject markup."""
        _, html, _ = template_service.render_subscription_email(
            "subscription_activated",
            {"user_name": "<script>alert(1)</script>", "plan_name": "Standard"},
        )

        assert "<script>" not in html
        assert "&lt;script&gt;" in html

    def test_unknown_milestone_rejected(self, template_service: EmailTemplateService):
        with pytest.raises(EmailServiceError):
            template_service.render_subscription_email("invoice_created", {})

    def test_base_context_includes_year(self, template_service: EmailTemplateService):
        """Test that base context variables are included."""
        html = template_service.render_template(
            "subscription_canceled.html",
            {"user_name": "Test", "plan_name": "Standard"},
        )

        assert str(datetime.now(timezone.utc).year) in html

    def test_singleton(self):
        assert get_email_template_service() is get_email_template_service()


class TestEmailService:
    """Tests for sending subscription emails."""

    @pytest.mark.asyncio
    async def test_send_subscription_email(self):
        service = EmailService(provider=MockEmailProvider())

        result = await service.send_subscription_email(
            to_email="vendor@example.com",
            email_type=EmailType.SUBSCRIPTION_DOWNGRADED,
            context={"user_name": "Vera", "plan_name": "Free", "subscription_id": 7},
        )

        assert result.success is True
        assert result.provider == "mock"
        sent = MockEmailProvider.sent_emails
        assert len(sent) == 1
        assert sent[0].to_email == "vendor@example.com"
        assert sent[0].email_type == EmailType.SUBSCRIPTION_DOWNGRADED
        assert sent[0].subject == "You have been moved to the Free plan"
        assert sent[0].metadata == {"subscription_id": 7}

    @pytest.mark.asyncio
    async def test_accepts_email_type_value(self):
        service = EmailService(provider=MockEmailProvider())

        result = await service.send_subscription_email(
            to_email="vendor@example.com",
            email_type="payment_failed",
            context={"plan_name": "Standard"},
        )

        assert result.success is True
        assert MockEmailProvider.sent_emails[0].email_type == EmailType.PAYMENT_FAILED

    def test_defaults_to_mock_without_api_key(self):
        """The autouse fixture clears RESEND_API_KEY."""
        assert isinstance(EmailService().provider, MockEmailProvider)
