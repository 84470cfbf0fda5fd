"""
Tests for custom exception hierarchy.

WHY: Comprehensive exception testing ensures:
1. Exceptions serialize correctly without leaking sensitive data
2. HTTP status codes map correctly for every billing failure
3. Remediation hints survive serialization
4. Exception handlers work as expected
"""

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from billing_engine.core.exceptions import (
    AlreadyActiveError,
    AppException,
    AuthenticationError,
    AuthorizationError,
    BusinessRuleViolation,
    CardDeclinedError,
    ConflictError,
    DuplicateActiveSubscriptionError,
    EmailServiceError,
    ExternalGatewayError,
    GatewayTimeoutError,
    InvalidGatewayRequestError,
    InvalidStateTransitionError,
    NoPaymentMethodError,
    NotReactivatableError,
    PlanNotActiveError,
    PlanNotFoundError,
    ResourceNotFoundError,
    StaleWriteError,
    SubscriptionNotFoundError,
    TokenExpiredError,
    TokenInvalidError,
    ValidationError,
    WebhookSignatureError,
)
from billing_engine.core.exception_handlers import app_exception_handler


class TestAppException:
    """Test base AppException class."""

    def test_default_message(self):
        """Verify default message is used when none provided."""
        exc = AppException()
        assert exc.message == "An unexpected error occurred"
        assert exc.status_code == 500

    def test_custom_message(self):
        """Verify custom message overrides default."""
        exc = AppException(message="Custom error message")
        assert exc.message == "Custom error message"
        assert str(exc) == "Custom error message"

    def test_custom_status_code(self):
        """Verify custom status code overrides class default."""
        exc = AppException(status_code=418)
        assert exc.status_code == 418

    def test_context_data(self):
        """Verify context data is stored."""
        exc = AppException(user_id=123, subscription_id=456, action="cancel")
        assert exc.context == {"user_id": 123, "subscription_id": 456, "action": "cancel"}

    def test_to_dict_basic(self):
        """Verify exception serializes to dict correctly."""
        exc = SubscriptionNotFoundError(message="No subscription", user_id=123)
        result = exc.to_dict()

        assert result["error"] == "SubscriptionNotFoundError"
        assert result["error_code"] == "SUBSCRIPTION_NOT_FOUND"
        assert result["message"] == "No subscription"
        assert result["status_code"] == 404
        assert result["details"] == {"user_id": 123}

    def test_to_dict_filters_sensitive_data(self):
        """Verify sensitive fields are filtered from dict."""
        exc = WebhookSignatureError(
            event_id="evt_1",
            signature="t=1,v1=abc",
            secret="whsec_x",
            api_key="sk_test",
            token="abc123",
        )
        result = exc.to_dict()

        assert result["details"] == {"event_id": "evt_1"}

    def test_to_dict_no_context(self):
        """Verify to_dict works with no context data."""
        assert AppException(message="Test error").to_dict()["details"] is None


class TestStatusCodes:
    """Each failure kind maps to a fixed HTTP status."""

    @pytest.mark.parametrize(
        "exc_class,status_code",
        [
            (AuthenticationError, 401),
            (TokenExpiredError, 401),
            (TokenInvalidError, 401),
            (AuthorizationError, 403),
            (ValidationError, 400),
            (ResourceNotFoundError, 404),
            (PlanNotFoundError, 404),
            (SubscriptionNotFoundError, 404),
            (PlanNotActiveError, 400),
            (ConflictError, 409),
            (DuplicateActiveSubscriptionError, 409),
            (StaleWriteError, 409),
            (BusinessRuleViolation, 422),
            (NotReactivatableError, 422),
            (AlreadyActiveError, 422),
            (InvalidStateTransitionError, 400),
            (ExternalGatewayError, 502),
            (CardDeclinedError, 402),
            (NoPaymentMethodError, 402),
            (InvalidGatewayRequestError, 400),
            (GatewayTimeoutError, 504),
            (WebhookSignatureError, 400),
            (EmailServiceError, 502),
        ],
    )
    def test_status_code(self, exc_class, status_code):
        assert exc_class().status_code == status_code

    def test_gateway_errors_share_a_base(self):
        """Callers can catch every processor failure with one clause."""
        for exc_class in (
            CardDeclinedError,
            NoPaymentMethodError,
            InvalidGatewayRequestError,
            GatewayTimeoutError,
        ):
            assert issubclass(exc_class, ExternalGatewayError)

    def test_reactivation_refusals_are_business_rules(self):
        assert issubclass(NotReactivatableError, BusinessRuleViolation)
        assert issubclass(AlreadyActiveError, BusinessRuleViolation)


class TestNoPaymentMethodError:
    """Tests for the remediation hint."""

    def test_remediation_in_details(self):
        exc = NoPaymentMethodError(
            redirect_url="https://app.example.com/settings/subscription",
            subscription_id=9,
        )
        details = exc.to_dict()["details"]

        assert exc.remediation == "add_payment_method"
        assert details["remediation"] == "add_payment_method"
        assert details["redirect_url"] == "https://app.example.com/settings/subscription"
        assert details["subscription_id"] == 9

    def test_default_message(self):
        assert "payment method" in NoPaymentMethodError().message


class TestExceptionHandlerIntegration:
    """Test exception handler integration with FastAPI."""

    @pytest.fixture
    def app(self):
        """Create test FastAPI app with exception handlers."""
        app = FastAPI()
        app.add_exception_handler(AppException, app_exception_handler)

        @app.get("/test-reactivate")
        async def test_reactivate():
            raise NoPaymentMethodError(redirect_url="/settings/subscription", subscription_id=3)

        @app.get("/test-sensitive-data")
        async def test_sensitive_data():
            raise GatewayTimeoutError(operation="cancel", api_key="sk_live_x")

        return app

    @pytest.fixture
    def client(self, app):
        """Create test client."""
        return TestClient(app)

    def test_exception_handler_returns_json(self, client):
        """Verify exception handler returns JSON response."""
        response = client.get("/test-reactivate")

        assert response.status_code == 402
        assert response.headers["content-type"] == "application/json"

        data = response.json()
        assert data["error"] == "NoPaymentMethodError"
        assert data["error_code"] == "NO_PAYMENT_METHOD"
        assert data["details"]["remediation"] == "add_payment_method"
        assert data["details"]["redirect_url"] == "/settings/subscription"

    def test_exception_handler_filters_sensitive_data(self, client):
        """Verify exception handler filters sensitive data from response."""
        response = client.get("/test-sensitive-data")

        assert response.status_code == 504
        data = response.json()
        assert data["details"] == {"operation": "cancel"}
