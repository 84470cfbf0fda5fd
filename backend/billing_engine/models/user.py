"""
User model.

WHY: Users are owned by the marketplace's identity service; the engine keeps
the subset it needs to bill them: contact details for emails, the role that
decides who gets a default subscription, and the payment processor's
customer handle.
"""

import enum
from sqlalchemy import Column, String, Boolean

from billing_engine.models.base import Base, TimestampMixin, PrimaryKeyMixin, enum_type


class UserRole(str, enum.Enum):
    """
    User role enumeration.

    WHY: Only vendors (who list products) hold subscriptions. Reviewers are
    plain users and admins operate the marketplace.
    """

    USER = "user"
    VENDOR = "vendor"
    ADMIN = "admin"


class User(Base, PrimaryKeyMixin, TimestampMixin):
    """User account as seen by the billing engine."""

    __tablename__ = "users"

    email = Column(String(255), unique=True, index=True, nullable=False)
    first_name = Column(String(100), nullable=True)
    last_name = Column(String(100), nullable=True)

    role = Column(enum_type(UserRole, "userrole"), nullable=False, default=UserRole.USER)
    is_active = Column(Boolean, default=True, nullable=False)

    # Payment processor customer handle (cus_xxx)
    # WHY: Resolved lazily the first time the user needs billing, then reused
    # for every later checkout, downgrade and reactivation.
    stripe_customer_id = Column(String(255), nullable=True, unique=True, index=True)

    def __repr__(self) -> str:
        return f"<User(id={self.id}, email={self.email}, role={self.role})>"

    @property
    def full_name(self) -> str:
        """Display name used in emails, falls back to the email address."""
        name = " ".join(part for part in (self.first_name, self.last_name) if part)
        return name or self.email
