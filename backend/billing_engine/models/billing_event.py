"""
Processed webhook event ledger.

WHAT: One row per processor event id the dispatcher has handled.

WHY: The processor delivers webhooks at least once. Recording the event id
in the same transaction as the state change it caused lets a redelivery be
acknowledged without re-applying it.
"""

import enum

from sqlalchemy import Column, String, DateTime

from billing_engine.models.base import Base, PrimaryKeyMixin, enum_type, utcnow


class BillingEventOutcome(str, enum.Enum):
    """What the dispatcher did with an event."""

    APPLIED = "applied"
    NO_OP = "no_op"
    IGNORED = "ignored"


class BillingEvent(Base, PrimaryKeyMixin):
    """Webhook event that has been processed."""

    __tablename__ = "billing_events"

    event_id = Column(String(255), nullable=False, unique=True, index=True)
    event_type = Column(String(100), nullable=False, index=True)
    stripe_subscription_id = Column(String(255), nullable=True, index=True)
    outcome = Column(
        enum_type(BillingEventOutcome, "billingeventoutcome"),
        nullable=False,
        default=BillingEventOutcome.APPLIED,
    )
    received_at = Column(DateTime, nullable=False, default=utcnow)

    def __repr__(self) -> str:
        return f"<BillingEvent(event_id={self.event_id}, type={self.event_type}, outcome={self.outcome})>"
