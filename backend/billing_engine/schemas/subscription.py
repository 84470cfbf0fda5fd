"""
Request and response models for the subscription API.

WHAT: Pydantic models for plans, subscriptions, checkout, cancellation,
reactivation, webhooks and admin analytics.

WHY: The subscription page and the admin dashboard branch on these shapes,
and the OpenAPI document is generated from them.

HOW: Pydantic v2 with from_attributes, so responses are built straight
from ORM rows; a few helpers add the derived display fields.
"""

from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from billing_engine.models.plan import BillingInterval, PlanType, SubscriptionPlan
from billing_engine.models.subscription import (
    FREE_TIER_PERIOD_END,
    ReactivationPath,
    SubscriptionStatus,
    UserSubscription,
)


# ============================================================================
# Plans
# ============================================================================


class PlanResponse(BaseModel):
    """
    Plan information for pricing display.

    WHY: Frontend needs plan details for the pricing page and upgrade modal.
    """

    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    description: Optional[str] = None
    plan_type: PlanType
    price: int = Field(description="Price in minor units (cents)")
    currency: str
    formatted_price: str
    billing_interval: BillingInterval
    billing_interval_count: int
    billing_period_text: str
    trial_period_days: int
    features: List[str] = Field(default_factory=list)
    max_products: Optional[int] = Field(default=None, description="null = unlimited")
    max_reviews: Optional[int] = Field(default=None, description="null = unlimited")
    max_disputes: Optional[int] = Field(default=None, description="null = unlimited")
    is_popular: bool = False


class PlansResponse(BaseModel):
    plans: List[PlanResponse]


# ============================================================================
# Subscriptions
# ============================================================================


class SubscriptionResponse(BaseModel):
    """
    Schema for subscription response data.

    WHY: Complete subscription data for display including:
    - Current plan and status
    - Billing period info
    - Trial and cancellation status
    """

    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    plan_id: int
    status: SubscriptionStatus

    current_period_start: datetime
    current_period_end: Optional[datetime] = Field(
        default=None,
        description="End of the paid period (null for the free tier)",
    )
    trial_start: Optional[datetime] = None
    trial_end: Optional[datetime] = None

    cancel_at_period_end: bool
    canceled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None

    price_amount: int
    currency: str
    billing_interval: BillingInterval
    billing_interval_count: int

    created_at: datetime
    updated_at: datetime

    # Derived views
    is_current: bool
    is_free: bool
    is_trialing: bool
    is_canceled: bool
    days_until_expiry: Optional[int] = None
    trial_days_remaining: Optional[int] = None

    @classmethod
    def from_subscription(cls, subscription: UserSubscription) -> "SubscriptionResponse":
        period_end = subscription.current_period_end
        return cls(
            id=subscription.id,
            user_id=subscription.user_id,
            plan_id=subscription.plan_id,
            status=SubscriptionStatus(subscription.status),
            current_period_start=subscription.current_period_start,
            current_period_end=None if period_end >= FREE_TIER_PERIOD_END else period_end,
            trial_start=subscription.trial_start,
            trial_end=subscription.trial_end,
            cancel_at_period_end=subscription.cancel_at_period_end,
            canceled_at=subscription.canceled_at,
            cancellation_reason=subscription.cancellation_reason,
            price_amount=subscription.price_amount,
            currency=subscription.currency,
            billing_interval=BillingInterval(subscription.billing_interval),
            billing_interval_count=subscription.billing_interval_count,
            created_at=subscription.created_at,
            updated_at=subscription.updated_at,
            is_current=subscription.is_current,
            is_free=subscription.is_free,
            is_trialing=subscription.is_trialing,
            is_canceled=subscription.is_canceled,
            days_until_expiry=subscription.days_until_expiry(),
            trial_days_remaining=subscription.trial_days_remaining(),
        )


class SubscriptionHistoryResponse(BaseModel):
    """All subscription rows for the caller, newest first."""

    items: List[SubscriptionResponse]
    total: int


# ============================================================================
# Checkout Schemas
# ============================================================================


class SubscriptionCheckoutRequest(BaseModel):
    """
    Request to start a subscription.

    WHY: Paid plans go through the processor's hosted checkout; the free
    plan is subscribed to directly.
    """

    plan_id: int = Field(gt=0, description="Plan to subscribe to")
    success_url: Optional[str] = Field(
        default=None,
        description="URL to redirect after successful checkout",
    )
    cancel_url: Optional[str] = Field(
        default=None,
        description="URL to redirect if checkout is cancelled",
    )


class SubscriptionCheckoutResponse(BaseModel):
    """Either a checkout page to redirect to or the new free subscription."""

    checkout_session_id: Optional[str] = Field(default=None, description="Checkout Session ID")
    checkout_url: Optional[str] = Field(default=None, description="URL to redirect user to")
    subscription: Optional[SubscriptionResponse] = None


class PendingCheckoutResponse(BaseModel):
    """
    Result of recording checkouts whose webhooks never applied.

    WHY: The subscription page calls this on return from checkout; a
    non-empty ``recovered`` list means the vendor's plan just changed.
    """

    completed_sessions: int
    recovered: List[SubscriptionResponse] = Field(default_factory=list)
    message: str


class BillingPortalRequest(BaseModel):
    return_url: Optional[str] = Field(
        default=None,
        description="Where the portal sends the vendor back to (defaults to the subscription page)",
    )


class BillingPortalResponse(BaseModel):
    url: str = Field(description="Hosted billing portal to redirect the vendor to")


# ============================================================================
# Lifecycle requests
# ============================================================================


class PlanChangeRequest(BaseModel):
    new_plan_id: int = Field(gt=0, description="Plan to change to")


class SubscriptionCancelRequest(BaseModel):
    """
    Request to cancel a subscription.

    WHY: Supports both cancellation types:
    - At period end: Access until paid period expires (default)
    - Immediate: Moved to the free tier now
    """

    cancel_immediately: bool = Field(
        default=False,
        description="If true, cancel immediately. If false, cancel at period end.",
    )
    cancellation_reason: Optional[str] = Field(
        default=None,
        max_length=500,
        description="Optional reason for cancellation (for analytics)",
    )


class SubscriptionCancelResponse(BaseModel):
    message: str
    subscription: SubscriptionResponse
    access_until: Optional[datetime] = Field(
        default=None,
        description="When paid access ends (null if immediate)",
    )


class SubscriptionReactivateResponse(BaseModel):
    message: str
    path: ReactivationPath
    subscription: SubscriptionResponse


# ============================================================================
# Admin Schemas
# ============================================================================


class SubscriptionAnalytics(BaseModel):
    """
    Subscription statistics for the admin dashboard.

    WHY: Provides metrics for revenue tracking and plan distribution.
    """

    by_status: Dict[str, int] = Field(description="Row count per status")
    by_plan: Dict[str, int] = Field(description="Current subscriptions per plan name")
    total_current: int
    paid_current: int
    monthly_recurring_revenue: int = Field(
        description="Monthly recurring revenue in minor units (trials excluded)"
    )


class SweepStats(BaseModel):
    processed: int
    downgraded: int
    skipped: int
    errors: int


# ============================================================================
# Webhook Schemas
# ============================================================================


class WebhookResponse(BaseModel):
    """
    Response for webhook processing.

    WHY: Confirms webhook was received; the outcome is informational.
    """

    received: bool = True
    outcome: Optional[str] = None
    message: str = "Webhook processed successfully"


def plan_to_response(plan: SubscriptionPlan) -> PlanResponse:
    return PlanResponse.model_validate(plan)
