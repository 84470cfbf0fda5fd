"""
User subscription model.

WHAT: One row per subscription a user has ever held, paid or free.

WHY: The row is the user's entitlement record and must agree with the
payment processor's view of the same subscription:
1. Vendors start on a free row created at signup
2. Checkout creates a paid row and closes the free one
3. Processor webhooks and the reconciliation sweep move the paid row
   through trialing/active/past_due and into a terminal status
4. Every terminal paid row is followed by a new free row

SECURITY:
- Processor identifiers come from verified webhooks or our own API calls,
  never from client-provided data

ARCHITECTURE:
- Rows are never deleted; terminal rows stay for audit and for the
  reactivation window
- At most one row per user is "current" (trialing, active, past_due);
  a partial unique index backs this up at the database level
- ``version`` is bumped on every write so concurrent writers (webhooks,
  sweep, API) detect each other instead of overwriting
"""

import enum
from dataclasses import dataclass, asdict, fields, replace
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import (
    Column,
    Integer,
    String,
    ForeignKey,
    DateTime,
    Boolean,
    JSON,
    Index,
    text,
)
from sqlalchemy.orm import relationship

from billing_engine.models.base import (
    Base,
    TimestampMixin,
    PrimaryKeyMixin,
    enum_type,
    utcnow,
)
from billing_engine.models.plan import BillingInterval


# Free-tier rows never expire on their own
FREE_TIER_PERIOD_END = datetime(9999, 12, 31, 23, 59, 59)


class SubscriptionStatus(str, enum.Enum):
    """
    Subscription status values (the processor's vocabulary).

    Statuses:
    - TRIALING: In a free trial, no successful charge yet
    - ACTIVE: Paid up
    - PAST_DUE: Latest charge failed, processor is retrying
    - CANCELED: Ended by the user, the processor or the sweep
    - UNPAID: Processor gave up retrying
    - INCOMPLETE_EXPIRED: Initial payment never completed
    """

    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    UNPAID = "unpaid"
    INCOMPLETE_EXPIRED = "incomplete_expired"


CURRENT_STATUSES = frozenset(
    {SubscriptionStatus.TRIALING, SubscriptionStatus.ACTIVE, SubscriptionStatus.PAST_DUE}
)
TERMINAL_STATUSES = frozenset(
    {
        SubscriptionStatus.CANCELED,
        SubscriptionStatus.UNPAID,
        SubscriptionStatus.INCOMPLETE_EXPIRED,
    }
)


class DowngradeReason(str, enum.Enum):
    """Why a paid subscription was replaced by the free tier."""

    SUBSCRIPTION_CANCELED = "subscription_canceled"
    PAYMENT_FAILED = "payment_failed"
    SUBSCRIPTION_EXPIRED = "subscription_expired"
    SUBSCRIPTION_UNPAID = "subscription_unpaid"
    INCOMPLETE_EXPIRED = "incomplete_expired"
    PAST_DUE_GRACE_EXPIRED = "past_due_grace_expired"


class ReactivationPath(str, enum.Enum):
    """How a reactivation was carried out."""

    FLAG_FLIP = "flag_flip"
    NEW_SUBSCRIPTION = "new_subscription"


def _parse_datetime(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


@dataclass
class SubscriptionMetadata:
    """
    Typed billing metadata carried on a subscription row.

    WHAT: Failure counters, downgrade audit fields and reactivation audit
    fields, persisted as JSON.

    WHY: Every key any code path reads or writes is declared here, so a
    typo is an AttributeError instead of a silently missing counter.
    """

    payment_failure_count: int = 0
    past_due_since: Optional[datetime] = None
    last_failed_invoice_id: Optional[str] = None
    last_failed_attempt: Optional[int] = None
    trial_ending_notified: bool = False

    downgrade_reason: Optional[DowngradeReason] = None
    original_plan_id: Optional[int] = None
    original_subscription_id: Optional[int] = None
    downgraded_at: Optional[datetime] = None
    downgraded_to_subscription_id: Optional[int] = None

    superseded_by_subscription_id: Optional[int] = None

    reactivated_at: Optional[datetime] = None
    reactivation_path: Optional[ReactivationPath] = None
    reactivated_from_subscription_id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for the JSON column, dropping unset keys."""
        data = {}
        for key, value in asdict(self).items():
            if value is None:
                continue
            if isinstance(value, datetime):
                value = value.isoformat()
            elif isinstance(value, enum.Enum):
                value = value.value
            data[key] = value
        return data

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "SubscriptionMetadata":
        """Build from the JSON column; unknown keys are ignored."""
        data = data or {}
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in data.items() if k in known}

        for key in ("past_due_since", "downgraded_at", "reactivated_at"):
            values[key] = _parse_datetime(values.get(key))
        if values.get("downgrade_reason") is not None:
            values["downgrade_reason"] = DowngradeReason(values["downgrade_reason"])
        if values.get("reactivation_path") is not None:
            values["reactivation_path"] = ReactivationPath(values["reactivation_path"])

        return cls(**values)

    def with_payment_reset(self) -> "SubscriptionMetadata":
        """Copy with failure tracking cleared after a successful charge."""
        return replace(
            self,
            payment_failure_count=0,
            past_due_since=None,
            last_failed_invoice_id=None,
            last_failed_attempt=None,
        )


class UserSubscription(Base, PrimaryKeyMixin, TimestampMixin):
    """
    Subscription row tying a user to a plan.

    RELATIONS:
    - Many-to-one with User (history of rows per user)
    - Many-to-one with SubscriptionPlan
    - Linked to the processor via stripe_subscription_id (NULL for free rows)

    LIFECYCLE:
    1. Vendor created -> free row (active, far-future period end)
    2. Checkout completes -> paid row (trialing or active), free row canceled
    3. Webhooks move the paid row through renewals and failures
    4. Paid row ends -> new free row with downgrade audit metadata
    """

    __tablename__ = "user_subscriptions"

    user_id = Column(
        Integer,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    plan_id = Column(
        Integer,
        ForeignKey("subscription_plans.id"),
        nullable=False,
        index=True,
    )

    status = Column(
        enum_type(SubscriptionStatus, "subscriptionstatus"),
        nullable=False,
        default=SubscriptionStatus.ACTIVE,
        index=True,
    )

    # Billing period
    current_period_start = Column(DateTime, nullable=False, default=utcnow)
    current_period_end = Column(DateTime, nullable=False, index=True)

    # Trial
    trial_start = Column(DateTime, nullable=True)
    trial_end = Column(DateTime, nullable=True)

    # Cancellation
    # WHY: cancel_at_period_end keeps access until the period ends;
    # canceled_at anchors the reactivation window
    cancel_at_period_end = Column(Boolean, nullable=False, default=False)
    canceled_at = Column(DateTime, nullable=True, index=True)
    cancellation_reason = Column(String(500), nullable=True)
    resumed_at = Column(DateTime, nullable=True)

    # Processor identifiers (all NULL for free rows)
    stripe_customer_id = Column(String(255), nullable=True, index=True)
    stripe_subscription_id = Column(String(255), nullable=True, unique=True, index=True)
    stripe_price_id = Column(String(255), nullable=True)
    default_payment_method = Column(String(255), nullable=True)
    latest_invoice_id = Column(String(255), nullable=True)

    # Price snapshot at subscription time
    price_amount = Column(Integer, nullable=False, default=0)
    currency = Column(String(3), nullable=False, default="USD")
    billing_interval = Column(
        enum_type(BillingInterval, "billinginterval"),
        nullable=False,
        default=BillingInterval.MONTH,
    )
    billing_interval_count = Column(Integer, nullable=False, default=1)

    billing_metadata = Column(JSON, nullable=False, default=dict)

    # Optimistic concurrency counter
    version = Column(Integer, nullable=False, default=1)

    user = relationship("User", lazy="raise")
    plan = relationship("SubscriptionPlan", lazy="raise")

    __table_args__ = (
        # One current subscription per user
        Index(
            "uq_user_subscriptions_current",
            "user_id",
            unique=True,
            postgresql_where=text("status IN ('trialing', 'active', 'past_due')"),
            sqlite_where=text("status IN ('trialing', 'active', 'past_due')"),
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<UserSubscription(id={self.id}, user_id={self.user_id}, "
            f"plan_id={self.plan_id}, status={self.status}, version={self.version})>"
        )

    @property
    def meta(self) -> SubscriptionMetadata:
        """Typed view of billing_metadata."""
        return SubscriptionMetadata.from_dict(self.billing_metadata)

    @property
    def is_current(self) -> bool:
        """Trialing, active and past_due rows grant access."""
        return self.status in CURRENT_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_free(self) -> bool:
        """Free rows carry no processor subscription."""
        return self.stripe_subscription_id is None

    @property
    def is_trialing(self) -> bool:
        return self.status == SubscriptionStatus.TRIALING

    @property
    def is_canceled(self) -> bool:
        """Canceled, or scheduled to cancel at period end."""
        return self.status == SubscriptionStatus.CANCELED or bool(self.cancel_at_period_end)

    def days_until_expiry(self, now: Optional[datetime] = None) -> Optional[int]:
        """
        Days remaining in the current period.

        Returns:
            Days until period end, or None for free rows
        """
        if self.is_free:
            return None
        delta = self.current_period_end - (now or utcnow())
        return max(0, delta.days)

    def trial_days_remaining(self, now: Optional[datetime] = None) -> Optional[int]:
        """Days left in the trial, or None when not trialing."""
        if not self.trial_end or self.status != SubscriptionStatus.TRIALING:
            return None
        delta = self.trial_end - (now or utcnow())
        return max(0, delta.days)
