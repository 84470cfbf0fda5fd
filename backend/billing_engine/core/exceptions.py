"""
Custom exception hierarchy for structured error handling.

WHY: Custom exceptions provide:
1. Consistent error handling across the API, webhooks and background sweeps
2. HTTP status code mapping for FastAPI
3. Structured error responses with contextual data
4. No gateway secrets or card data in error messages

IMPORTANT: NEVER raise the base Exception class. Always use custom exceptions.
"""

from typing import Any, Dict, Optional


class AppException(Exception):
    """
    Base exception class for all application exceptions.

    WHY: Centralizing exception handling in a base class ensures consistent
    error responses, HTTP status code mapping, and prevents sensitive data
    leaks in error messages.

    All custom exceptions should inherit from this class.
    """

    status_code: int = 500
    default_message: str = "An unexpected error occurred"
    error_code: str = "INTERNAL_ERROR"

    def __init__(
        self,
        message: Optional[str] = None,
        status_code: Optional[int] = None,
        **context: Any,
    ):
        """
        Initialize exception with message and context.

        WHY: Context parameters allow including debugging information
        (user_id, subscription_id, event_id) without leaking secrets.

        Args:
            message: Human-readable error message
            status_code: HTTP status code (overrides class default)
            **context: Additional context for debugging (filtered in to_dict)
        """
        self.message = message or self.default_message
        if status_code is not None:
            self.status_code = status_code
        self.context = context
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """
        Serialize exception to dictionary for JSON response.

        Returns:
            Dictionary with error details (sensitive fields filtered out)
        """
        sensitive_fields = {"password", "token", "secret", "key", "api_key", "signature"}
        filtered_context = {
            k: v for k, v in self.context.items() if k.lower() not in sensitive_fields
        }

        return {
            "error": self.__class__.__name__,
            "error_code": self.error_code,
            "message": self.message,
            "status_code": self.status_code,
            "details": filtered_context if filtered_context else None,
        }


# ============================================================================
# Authentication & Authorization Exceptions
# ============================================================================


class AuthenticationError(AppException):
    """
    Raised when authentication fails.

    HTTP Status: 401 Unauthorized
    """

    status_code = 401
    default_message = "Authentication failed"
    error_code = "AUTHENTICATION_FAILED"


class AuthorizationError(AppException):
    """
    Raised when user lacks permissions for an action.

    HTTP Status: 403 Forbidden
    """

    status_code = 403
    default_message = "You do not have permission to perform this action"
    error_code = "FORBIDDEN"


class TokenExpiredError(AuthenticationError):
    """Raised when a JWT has expired."""

    default_message = "Token has expired"
    error_code = "TOKEN_EXPIRED"


class TokenInvalidError(AuthenticationError):
    """Raised when a JWT is malformed or has an invalid signature."""

    default_message = "Token is invalid"
    error_code = "TOKEN_INVALID"


# ============================================================================
# Validation Exceptions
# ============================================================================


class ValidationError(AppException):
    """
    Raised when input validation fails.

    HTTP Status: 400 Bad Request
    """

    status_code = 400
    default_message = "Validation failed"
    error_code = "VALIDATION_ERROR"


# ============================================================================
# Resource Exceptions
# ============================================================================


class ResourceNotFoundError(AppException):
    """
    Raised when a requested resource doesn't exist.

    WHY: 404 Not Found is the standard HTTP status for missing resources.
    Including resource type and ID in context helps debugging.

    HTTP Status: 404 Not Found
    """

    status_code = 404
    default_message = "Resource not found"
    error_code = "NOT_FOUND"


class UserNotFoundError(ResourceNotFoundError):
    """Raised when the user referenced by a subscription operation is unknown."""

    default_message = "User not found"
    error_code = "USER_NOT_FOUND"


class PlanNotFoundError(ResourceNotFoundError):
    """Raised when a plan id does not exist in the catalog."""

    default_message = "Subscription plan not found"
    error_code = "PLAN_NOT_FOUND"


class SubscriptionNotFoundError(ResourceNotFoundError):
    """Raised when a user has no subscription matching the request."""

    default_message = "Subscription not found"
    error_code = "SUBSCRIPTION_NOT_FOUND"


class PlanNotActiveError(AppException):
    """
    Raised when a plan exists but has been retired from sale.

    WHY: Retired plans stay in the catalog so historical subscriptions keep
    resolving, but nobody may start a new subscription on them.

    HTTP Status: 400 Bad Request
    """

    status_code = 400
    default_message = "Subscription plan is not available"
    error_code = "PLAN_NOT_ACTIVE"


# ============================================================================
# Conflict Exceptions
# ============================================================================


class ConflictError(AppException):
    """
    Raised when the request conflicts with the current stored state.

    HTTP Status: 409 Conflict
    """

    status_code = 409
    default_message = "Request conflicts with current state"
    error_code = "CONFLICT"


class DuplicateActiveSubscriptionError(ConflictError):
    """
    Raised when a user would end up with two current subscriptions.

    WHY: A user may hold at most one subscription in trialing, active or
    past_due. The database index catches races; this exception is what the
    service layer raises when it sees the violation first.
    """

    default_message = "User already has a current subscription"
    error_code = "DUPLICATE_ACTIVE_SUBSCRIPTION"


class StaleWriteError(ConflictError):
    """
    Raised when a conditional subscription write keeps losing the race.

    WHY: Writers re-read and re-evaluate when the version check fails. If a
    row is contended past the attempt limit the caller gets this instead of a
    silently lost update.
    """

    default_message = "Subscription was modified concurrently, please retry"
    error_code = "STALE_WRITE"


# ============================================================================
# Business Logic Exceptions
# ============================================================================


class BusinessRuleViolation(AppException):
    """
    Raised when a business rule is violated.

    WHY: 422 Unprocessable Entity indicates the request was well-formed but
    semantically not allowed in the current state.

    HTTP Status: 422 Unprocessable Entity
    """

    status_code = 422
    default_message = "Business rule violation"
    error_code = "BUSINESS_RULE_VIOLATION"


class InvalidStateTransitionError(BusinessRuleViolation):
    """
    Raised when a subscription transition is not allowed from its current status.

    HTTP Status: 400 Bad Request
    """

    status_code = 400
    default_message = "Invalid state transition"
    error_code = "INVALID_STATE_TRANSITION"


class NotReactivatableError(BusinessRuleViolation):
    """Raised when a canceled subscription is outside the reactivation window."""

    default_message = "Subscription can no longer be reactivated, please start a new subscription"
    error_code = "NOT_REACTIVATABLE"


class AlreadyActiveError(BusinessRuleViolation):
    """Raised when reactivation is requested for a subscription that is not canceling."""

    default_message = "Subscription is already active"
    error_code = "ALREADY_ACTIVE"


# ============================================================================
# External Gateway Exceptions
# ============================================================================


class ExternalGatewayError(AppException):
    """
    Base exception for payment gateway failures.

    WHY: Gateway failures return 502 Bad Gateway, indicating the problem is
    with the upstream processor, not our application.

    HTTP Status: 502 Bad Gateway
    """

    status_code = 502
    default_message = "Payment processing error"
    error_code = "GATEWAY_ERROR"


class CardDeclinedError(ExternalGatewayError):
    """
    Raised when the processor declines the customer's card.

    HTTP Status: 402 Payment Required
    """

    status_code = 402
    default_message = "Your card was declined"
    error_code = "CARD_DECLINED"


class NoPaymentMethodError(ExternalGatewayError):
    """
    Raised when a charge needs a stored payment method and none exists.

    WHY: The client can fix this itself, so the error carries a remediation
    action and the page to send the user to.

    HTTP Status: 402 Payment Required
    """

    status_code = 402
    default_message = "No payment method on file, please add a payment method"
    error_code = "NO_PAYMENT_METHOD"

    def __init__(
        self,
        message: Optional[str] = None,
        redirect_url: Optional[str] = None,
        **context: Any,
    ):
        super().__init__(
            message,
            remediation="add_payment_method",
            redirect_url=redirect_url,
            **context,
        )
        self.remediation = "add_payment_method"
        self.redirect_url = redirect_url


class InvalidGatewayRequestError(ExternalGatewayError):
    """
    Raised when the processor rejects a request as malformed.

    HTTP Status: 400 Bad Request
    """

    status_code = 400
    default_message = "Invalid payment request"
    error_code = "INVALID_GATEWAY_REQUEST"


class GatewayTimeoutError(ExternalGatewayError):
    """
    Raised when a gateway call exceeds its deadline.

    HTTP Status: 504 Gateway Timeout
    """

    status_code = 504
    default_message = "Payment processor did not respond in time"
    error_code = "GATEWAY_TIMEOUT"


class WebhookSignatureError(AppException):
    """
    Raised when a webhook payload fails signature verification.

    WHY: Unsigned or tampered payloads must never reach the dispatcher.
    The processor treats 400 as a permanent rejection.

    HTTP Status: 400 Bad Request
    """

    status_code = 400
    default_message = "Invalid webhook signature"
    error_code = "INVALID_SIGNATURE"


class EmailServiceError(AppException):
    """
    Raised when email rendering or sending fails.

    WHY: Email failures are logged by the notifier and never undo the
    subscription change that triggered them.

    HTTP Status: 502 Bad Gateway
    """

    status_code = 502
    default_message = "Email service error"
    error_code = "EMAIL_ERROR"
