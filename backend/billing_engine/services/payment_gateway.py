"""
Payment gateway adapter.

WHAT: The narrow set of payment processor operations the billing engine
needs (customers, subscriptions, payment methods, checkout sessions and
webhook verification) behind an abstract interface, with a Stripe
implementation.

WHY: Business logic must not depend on SDK objects or SDK exceptions:
1. Every processor failure is translated into our exception hierarchy
   (declined card, invalid request, timeout, generic gateway error)
2. The Stripe SDK is synchronous; calls run in a worker thread with a
   timeout so a slow processor cannot stall the event loop
3. Tests swap in an in-memory implementation of ``PaymentGateway``

HOW: ``StripeGateway`` wraps the module-level Stripe SDK. Reads are
retried once on timeouts and connection errors. Mutations are never
retried here; they carry an idempotency key so a caller-level retry with
the same key cannot double-charge.

Design decisions:
- API version pinned in configure_stripe for stable payload shapes
- Webhook signatures verified with the SDK before any payload is trusted
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from functools import partial
from typing import Any, Callable, Dict, List, Mapping, Optional

import stripe

from billing_engine.core.config import settings
from billing_engine.core.exceptions import (
    CardDeclinedError,
    ExternalGatewayError,
    GatewayTimeoutError,
    InvalidGatewayRequestError,
    WebhookSignatureError,
)
from billing_engine.models.base import from_unix_timestamp

logger = logging.getLogger(__name__)


# ============================================================================
# Stripe Configuration
# ============================================================================


def configure_stripe() -> None:
    """
    Configure Stripe SDK with API key from settings.

    WHY: Must be called before any Stripe API operations. The API version
    is pinned so period fields stay on the subscription object.
    """
    stripe.api_key = settings.STRIPE_SECRET_KEY
    stripe.api_version = settings.STRIPE_API_VERSION


# Initialize Stripe on module load
configure_stripe()


# ============================================================================
# Data Classes
# ============================================================================


@dataclass
class GatewayCustomer:
    """A processor customer (cus_xxx)."""

    id: str
    email: Optional[str] = None
    name: Optional[str] = None


@dataclass
class GatewayPaymentMethod:
    """A saved payment method (pm_xxx)."""

    id: str
    brand: Optional[str] = None
    last4: Optional[str] = None


@dataclass
class CheckoutSessionResult:
    """Hosted checkout page to redirect the vendor to."""

    id: str
    url: str


@dataclass
class BillingPortalSessionResult:
    """Hosted page where the vendor manages cards and invoices."""

    id: str
    url: str


@dataclass
class GatewayCheckoutSession:
    """A checkout session as listed by the processor."""

    id: str
    status: Optional[str]
    mode: Optional[str]
    subscription_id: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_stripe(cls, obj: Mapping[str, Any]) -> "GatewayCheckoutSession":
        subscription = obj.get("subscription")
        if isinstance(subscription, Mapping):
            subscription = subscription.get("id")
        return cls(
            id=obj["id"],
            status=obj.get("status"),
            mode=obj.get("mode"),
            subscription_id=subscription,
            metadata=dict(obj.get("metadata") or {}),
        )


@dataclass
class GatewaySubscription:
    """
    Processor view of a subscription.

    WHAT: The fields we mirror onto UserSubscription rows, with Unix
    timestamps converted to naive UTC datetimes.
    """

    id: str
    customer_id: Optional[str]
    status: str
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    trial_start: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    canceled_at: Optional[datetime] = None
    price_id: Optional[str] = None
    item_id: Optional[str] = None
    default_payment_method: Optional[str] = None
    latest_invoice_id: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_stripe(cls, obj: Mapping[str, Any]) -> "GatewaySubscription":
        """
        Build from a Stripe subscription object or webhook payload.

        WHY: Webhook payloads are plain dicts and SDK responses are
        StripeObjects; both support mapping access.
        """
        items = (obj.get("items") or {}).get("data") or []
        first_item = items[0] if items else {}
        price = first_item.get("price") or {}

        # Newer API versions moved the period onto the item
        period_start = obj.get("current_period_start") or first_item.get("current_period_start")
        period_end = obj.get("current_period_end") or first_item.get("current_period_end")

        customer = obj.get("customer")
        if isinstance(customer, Mapping):
            customer = customer.get("id")
        invoice = obj.get("latest_invoice")
        if isinstance(invoice, Mapping):
            invoice = invoice.get("id")
        payment_method = obj.get("default_payment_method")
        if isinstance(payment_method, Mapping):
            payment_method = payment_method.get("id")

        return cls(
            id=obj["id"],
            customer_id=customer,
            status=obj.get("status"),
            current_period_start=from_unix_timestamp(period_start),
            current_period_end=from_unix_timestamp(period_end),
            trial_start=from_unix_timestamp(obj.get("trial_start")),
            trial_end=from_unix_timestamp(obj.get("trial_end")),
            cancel_at_period_end=bool(obj.get("cancel_at_period_end")),
            canceled_at=from_unix_timestamp(obj.get("canceled_at")),
            price_id=price.get("id") if isinstance(price, Mapping) else price,
            item_id=first_item.get("id"),
            default_payment_method=payment_method,
            latest_invoice_id=invoice,
            metadata=dict(obj.get("metadata") or {}),
        )


# ============================================================================
# Gateway Interface
# ============================================================================


class PaymentGateway(ABC):
    """
    Payment processor operations used by the billing engine.

    All methods raise ExternalGatewayError subclasses on failure.
    """

    @abstractmethod
    async def retrieve_customer(self, customer_id: str) -> Optional[GatewayCustomer]:
        """Customer by id, or None if it does not exist or was deleted."""

    @abstractmethod
    async def find_customer_by_email(self, email: str) -> Optional[GatewayCustomer]:
        """First customer registered with ``email``, if any."""

    @abstractmethod
    async def create_customer(
        self,
        email: str,
        name: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
        idempotency_key: Optional[str] = None,
    ) -> GatewayCustomer:
        """Create a customer."""

    @abstractmethod
    async def retrieve_subscription(self, subscription_id: str) -> GatewaySubscription:
        """Subscription by id."""

    @abstractmethod
    async def create_subscription(
        self,
        customer_id: str,
        price_id: str,
        idempotency_key: str,
        default_payment_method: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
    ) -> GatewaySubscription:
        """Start a subscription charged to the customer's payment method."""

    @abstractmethod
    async def update_subscription(
        self,
        subscription_id: str,
        idempotency_key: Optional[str] = None,
        **params: Any,
    ) -> GatewaySubscription:
        """Modify a subscription (cancel_at_period_end, items, proration)."""

    @abstractmethod
    async def cancel_subscription(
        self,
        subscription_id: str,
        idempotency_key: Optional[str] = None,
    ) -> GatewaySubscription:
        """Cancel a subscription immediately."""

    @abstractmethod
    async def list_payment_methods(self, customer_id: str) -> List[GatewayPaymentMethod]:
        """Card payment methods attached to the customer."""

    @abstractmethod
    async def create_checkout_session(
        self,
        customer_id: str,
        price_id: str,
        success_url: str,
        cancel_url: str,
        trial_period_days: Optional[int] = None,
        metadata: Optional[Dict[str, str]] = None,
        idempotency_key: Optional[str] = None,
    ) -> CheckoutSessionResult:
        """Hosted checkout page for a new subscription."""

    @abstractmethod
    async def list_checkout_sessions(
        self,
        customer_id: str,
        limit: int = 10,
    ) -> List[GatewayCheckoutSession]:
        """The customer's most recent checkout sessions, newest first."""

    @abstractmethod
    async def create_billing_portal_session(
        self,
        customer_id: str,
        return_url: str,
    ) -> BillingPortalSessionResult:
        """Hosted billing portal for the customer."""

    @abstractmethod
    def construct_event(self, payload: bytes, signature: str) -> Dict[str, Any]:
        """
        Verify a webhook signature and parse the event.

        Raises:
            WebhookSignatureError: If the signature or payload is invalid
        """


# ============================================================================
# Stripe Implementation
# ============================================================================


class StripeGateway(PaymentGateway):
    """
    PaymentGateway backed by the Stripe SDK.

    HOW: Each SDK call goes through ``_call``, which runs it in a thread,
    bounds it with ``GATEWAY_TIMEOUT_SECONDS`` and maps SDK exceptions.
    """

    def __init__(
        self,
        timeout: Optional[float] = None,
        webhook_secret: Optional[str] = None,
    ):
        self.timeout = timeout or settings.GATEWAY_TIMEOUT_SECONDS
        self.webhook_secret = webhook_secret or settings.STRIPE_WEBHOOK_SECRET

    async def _call(self, operation: str, fn: Callable[..., Any], *args: Any, retry: bool = False, **kwargs: Any) -> Any:
        """
        Run a blocking SDK call with a timeout and error translation.

        Args:
            operation: Name for logs and error context
            fn: SDK function
            retry: Retry once on timeout or connection error (reads only)

        Raises:
            CardDeclinedError, InvalidGatewayRequestError, GatewayTimeoutError,
            ExternalGatewayError
        """
        attempts = 2 if retry else 1

        for attempt in range(1, attempts + 1):
            try:
                return await asyncio.wait_for(
                    asyncio.to_thread(partial(fn, *args, **kwargs)),
                    timeout=self.timeout,
                )
            except (asyncio.TimeoutError, stripe.APIConnectionError) as e:
                if attempt < attempts:
                    logger.warning(
                        f"Stripe {operation} failed ({type(e).__name__}), retrying",
                        extra={"operation": operation},
                    )
                    continue
                logger.error(
                    f"Stripe {operation} timed out or could not connect",
                    extra={"operation": operation},
                )
                raise GatewayTimeoutError(operation=operation) from e
            except stripe.CardError as e:
                logger.info(
                    f"Stripe {operation} declined: {e.user_message}",
                    extra={"operation": operation, "decline_code": getattr(e, "code", None)},
                )
                raise CardDeclinedError(
                    message=e.user_message or CardDeclinedError.default_message,
                    operation=operation,
                    decline_code=getattr(e, "code", None),
                ) from e
            except stripe.InvalidRequestError as e:
                logger.warning(
                    f"Stripe {operation} rejected: {e.user_message or e}",
                    extra={"operation": operation},
                )
                raise InvalidGatewayRequestError(
                    operation=operation,
                    gateway_error=str(e.user_message or e),
                ) from e
            except stripe.StripeError as e:
                logger.error(
                    f"Stripe {operation} error: {e}",
                    extra={"operation": operation},
                )
                raise ExternalGatewayError(
                    operation=operation,
                    gateway_error=str(e.user_message or e),
                ) from e

    # ========================================================================
    # Customers
    # ========================================================================

    async def retrieve_customer(self, customer_id: str) -> Optional[GatewayCustomer]:
        try:
            customer = await self._call(
                "retrieve_customer", stripe.Customer.retrieve, customer_id, retry=True
            )
        except InvalidGatewayRequestError:
            return None
        if customer.get("deleted", False):
            return None
        return GatewayCustomer(
            id=customer["id"],
            email=customer.get("email"),
            name=customer.get("name"),
        )

    async def find_customer_by_email(self, email: str) -> Optional[GatewayCustomer]:
        result = await self._call(
            "find_customer", stripe.Customer.list, email=email, limit=1, retry=True
        )
        data = result.get("data") or []
        if not data:
            return None
        customer = data[0]
        return GatewayCustomer(
            id=customer["id"],
            email=customer.get("email"),
            name=customer.get("name"),
        )

    async def create_customer(
        self,
        email: str,
        name: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
        idempotency_key: Optional[str] = None,
    ) -> GatewayCustomer:
        customer = await self._call(
            "create_customer",
            stripe.Customer.create,
            email=email,
            name=name,
            metadata=metadata or {},
            idempotency_key=idempotency_key,
        )
        logger.info(
            f"Created Stripe customer {customer['id']}",
            extra={"stripe_customer_id": customer["id"]},
        )
        return GatewayCustomer(id=customer["id"], email=email, name=name)

    # ========================================================================
    # Subscriptions
    # ========================================================================

    async def retrieve_subscription(self, subscription_id: str) -> GatewaySubscription:
        subscription = await self._call(
            "retrieve_subscription",
            stripe.Subscription.retrieve,
            subscription_id,
            retry=True,
        )
        return GatewaySubscription.from_stripe(subscription)

    async def create_subscription(
        self,
        customer_id: str,
        price_id: str,
        idempotency_key: str,
        default_payment_method: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
    ) -> GatewaySubscription:
        params: Dict[str, Any] = {
            "customer": customer_id,
            "items": [{"price": price_id}],
            "metadata": metadata or {},
            "idempotency_key": idempotency_key,
        }
        if default_payment_method:
            params["default_payment_method"] = default_payment_method

        subscription = await self._call(
            "create_subscription", stripe.Subscription.create, **params
        )
        logger.info(
            f"Created Stripe subscription {subscription['id']} for {customer_id}",
            extra={"stripe_subscription_id": subscription["id"]},
        )
        return GatewaySubscription.from_stripe(subscription)

    async def update_subscription(
        self,
        subscription_id: str,
        idempotency_key: Optional[str] = None,
        **params: Any,
    ) -> GatewaySubscription:
        subscription = await self._call(
            "update_subscription",
            stripe.Subscription.modify,
            subscription_id,
            idempotency_key=idempotency_key,
            **params,
        )
        return GatewaySubscription.from_stripe(subscription)

    async def cancel_subscription(
        self,
        subscription_id: str,
        idempotency_key: Optional[str] = None,
    ) -> GatewaySubscription:
        subscription = await self._call(
            "cancel_subscription",
            stripe.Subscription.cancel,
            subscription_id,
            idempotency_key=idempotency_key,
        )
        logger.info(
            f"Canceled Stripe subscription {subscription_id}",
            extra={"stripe_subscription_id": subscription_id},
        )
        return GatewaySubscription.from_stripe(subscription)

    # ========================================================================
    # Payment methods and checkout
    # ========================================================================

    async def list_payment_methods(self, customer_id: str) -> List[GatewayPaymentMethod]:
        result = await self._call(
            "list_payment_methods",
            stripe.PaymentMethod.list,
            customer=customer_id,
            type="card",
            retry=True,
        )
        methods = []
        for pm in result.get("data") or []:
            card = pm.get("card") or {}
            methods.append(
                GatewayPaymentMethod(
                    id=pm["id"],
                    brand=card.get("brand"),
                    last4=card.get("last4"),
                )
            )
        return methods

    async def create_checkout_session(
        self,
        customer_id: str,
        price_id: str,
        success_url: str,
        cancel_url: str,
        trial_period_days: Optional[int] = None,
        metadata: Optional[Dict[str, str]] = None,
        idempotency_key: Optional[str] = None,
    ) -> CheckoutSessionResult:
        subscription_data: Dict[str, Any] = {"metadata": metadata or {}}
        if trial_period_days:
            subscription_data["trial_period_days"] = trial_period_days

        session = await self._call(
            "create_checkout_session",
            stripe.checkout.Session.create,
            mode="subscription",
            customer=customer_id,
            line_items=[{"price": price_id, "quantity": 1}],
            success_url=success_url,
            cancel_url=cancel_url,
            metadata=metadata or {},
            subscription_data=subscription_data,
            idempotency_key=idempotency_key,
        )
        logger.info(
            f"Created checkout session {session['id']} for {customer_id}",
            extra={"checkout_session_id": session["id"]},
        )
        return CheckoutSessionResult(id=session["id"], url=session["url"])

    async def list_checkout_sessions(
        self,
        customer_id: str,
        limit: int = 10,
    ) -> List[GatewayCheckoutSession]:
        result = await self._call(
            "list_checkout_sessions",
            stripe.checkout.Session.list,
            customer=customer_id,
            limit=limit,
            retry=True,
        )
        return [GatewayCheckoutSession.from_stripe(s) for s in result.get("data") or []]

    async def create_billing_portal_session(
        self,
        customer_id: str,
        return_url: str,
    ) -> BillingPortalSessionResult:
        session = await self._call(
            "create_billing_portal_session",
            stripe.billing_portal.Session.create,
            customer=customer_id,
            return_url=return_url,
        )
        return BillingPortalSessionResult(id=session["id"], url=session["url"])

    # ========================================================================
    # Webhooks
    # ========================================================================

    def construct_event(self, payload: bytes, signature: str) -> Dict[str, Any]:
        """
        Verify Stripe webhook signature and parse event.

        WHY: Unverified payloads must never reach the dispatcher; the
        signature also carries a timestamp that bounds replay.

        HOW: Uses the SDK's HMAC-SHA256 verification, then returns the
        payload as a plain dict.

        Raises:
            WebhookSignatureError: If verification fails
        """
        if not signature:
            raise WebhookSignatureError(message="Missing webhook signature")
        try:
            stripe.Webhook.construct_event(
                payload,
                signature,
                self.webhook_secret,
                tolerance=settings.STRIPE_WEBHOOK_TOLERANCE_SECONDS,
            )
            return json.loads(payload)
        except stripe.SignatureVerificationError as e:
            logger.warning(f"Webhook signature verification failed: {e}")
            raise WebhookSignatureError() from e
        except ValueError as e:
            logger.warning(f"Webhook payload is not valid JSON: {e}")
            raise WebhookSignatureError(message="Invalid webhook payload") from e


# ============================================================================
# Module-level convenience functions
# ============================================================================


_payment_gateway: Optional[PaymentGateway] = None


def get_payment_gateway() -> PaymentGateway:
    """
    Get or create the global payment gateway.

    WHY: FastAPI dependency; tests override it with an in-memory gateway.
    """
    global _payment_gateway

    if _payment_gateway is None:
        _payment_gateway = StripeGateway()

    return _payment_gateway
