"""
Subscription plan model.

WHAT: Catalog entry describing a purchasable tier of the vendor listing
product: price, billing cadence, trial length and feature caps.

WHY: Plans are the source of truth for what a subscription costs and how
long its periods are. A plan row is never edited once a subscription
references it; price changes ship as a new plan and subscriptions migrate
to the new plan id.

HOW: Prices are stored as integer minor units (cents) so period arithmetic
and revenue reporting never touch floating point. Feature caps use NULL for
unlimited.
"""

import enum
from typing import Optional

from sqlalchemy import Column, Integer, String, Boolean, Text, JSON

from billing_engine.models.base import Base, TimestampMixin, PrimaryKeyMixin, enum_type


class PlanType(str, enum.Enum):
    """
    Marketplace tiers.

    Plans:
    - FREE: Default tier every vendor starts on and falls back to
    - BASIC / STANDARD / PREMIUM: Paid tiers billed through the processor
    """

    FREE = "free"
    BASIC = "basic"
    STANDARD = "standard"
    PREMIUM = "premium"


class BillingInterval(str, enum.Enum):
    """Unit of a billing period; the count multiplier lives on the plan."""

    DAY = "day"
    WEEK = "week"
    MONTH = "month"
    YEAR = "year"


class SubscriptionPlan(Base, PrimaryKeyMixin, TimestampMixin):
    """
    Subscription plan in the catalog.

    RELATIONS:
    - Referenced by UserSubscription.plan_id (many subscriptions per plan)
    - Linked to the processor via stripe_price_id / stripe_product_id
    """

    __tablename__ = "subscription_plans"

    name = Column(String(100), nullable=False)
    description = Column(Text, nullable=True)
    plan_type = Column(enum_type(PlanType, "plantype"), nullable=False, index=True)

    # Pricing
    price = Column(Integer, nullable=False, default=0, doc="Price in minor units (cents)")
    currency = Column(String(3), nullable=False, default="USD")
    billing_interval = Column(
        enum_type(BillingInterval, "billinginterval"),
        nullable=False,
        default=BillingInterval.MONTH,
    )
    billing_interval_count = Column(Integer, nullable=False, default=1)
    trial_period_days = Column(Integer, nullable=False, default=0)

    # Entitlements
    features = Column(JSON, nullable=False, default=list)
    max_products = Column(Integer, nullable=True, doc="NULL means unlimited")
    max_reviews = Column(Integer, nullable=True, doc="NULL means unlimited")
    max_disputes = Column(Integer, nullable=True, doc="NULL means unlimited")

    # Processor identifiers (NULL for the free plan)
    stripe_price_id = Column(String(255), nullable=True, unique=True)
    stripe_product_id = Column(String(255), nullable=True)

    # Catalog presentation
    is_active = Column(Boolean, nullable=False, default=True, index=True)
    is_popular = Column(Boolean, nullable=False, default=False)
    sort_order = Column(Integer, nullable=False, default=0)

    def __repr__(self) -> str:
        return (
            f"<SubscriptionPlan(id={self.id}, name={self.name}, "
            f"type={self.plan_type}, price={self.price})>"
        )

    @property
    def is_free(self) -> bool:
        """Free plans are never billed and carry no processor references."""
        return self.plan_type == PlanType.FREE or self.price == 0

    @property
    def has_trial(self) -> bool:
        return (self.trial_period_days or 0) > 0

    @property
    def formatted_price(self) -> str:
        """
        Human readable price, e.g. "USD 49.00".

        WHY: Used in emails and the plan listing so every surface formats
        minor units the same way.
        """
        if self.is_free:
            return "Free"
        return f"{self.currency.upper()} {self.price / 100:.2f}"

    @property
    def billing_period_text(self) -> str:
        """
        Billing cadence in words ("monthly", "every 3 months", "for 14 days").

        WHY: Day-interval plans are fixed-length passes rather than recurring
        cadences, so they read as a duration.
        """
        count = self.billing_interval_count or 1
        interval = BillingInterval(self.billing_interval)

        if interval == BillingInterval.DAY:
            return f"for {count} day{'s' if count != 1 else ''}"
        if count == 1:
            return {
                BillingInterval.WEEK: "weekly",
                BillingInterval.MONTH: "monthly",
                BillingInterval.YEAR: "yearly",
            }[interval]
        return f"every {count} {interval.value}s"

    def limit_for(self, feature: str) -> Optional[int]:
        """Cap for a feature ("products", "reviews", "disputes"); None is unlimited."""
        return getattr(self, f"max_{feature}")
