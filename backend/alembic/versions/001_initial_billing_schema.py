"""Initial billing schema.

Revision ID: 001
Revises:
Create Date: 2026-10-19

WHAT: Creates users, subscription_plans, user_subscriptions,
billing_events and notifications.

WHY: Subscription rows are append-only history per user; the partial
unique index allows at most one trialing/active/past_due row per user so
concurrent writers cannot both grant access.

HOW: Enum columns store member values (matching the processor's status
strings). The version column backs the compare-and-swap writes.
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "001"
down_revision = None
branch_labels = None
depends_on = None


USER_ROLES = ("user", "vendor", "admin")
PLAN_TYPES = ("free", "basic", "standard", "premium")
BILLING_INTERVALS = ("day", "week", "month", "year")
SUBSCRIPTION_STATUSES = (
    "trialing", "active", "past_due", "canceled", "unpaid", "incomplete_expired",
)
EVENT_OUTCOMES = ("applied", "no_op", "ignored")
NOTIFICATION_KINDS = (
    "subscription_created",
    "subscription_activated",
    "subscription_renewed",
    "subscription_past_due",
    "subscription_canceled",
    "subscription_cancellation_scheduled",
    "subscription_resumed",
    "subscription_reactivated",
    "subscription_downgraded",
    "subscription_plan_changed",
    "payment_succeeded",
    "payment_failed",
    "trial_ending",
)


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
    ]


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("first_name", sa.String(length=100), nullable=True),
        sa.Column("last_name", sa.String(length=100), nullable=True),
        sa.Column("role", sa.Enum(*USER_ROLES, name="userrole"), nullable=False, server_default="user"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("stripe_customer_id", sa.String(length=255), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_users_id", "users", ["id"])
    op.create_index("ix_users_email", "users", ["email"], unique=True)
    op.create_index("ix_users_stripe_customer_id", "users", ["stripe_customer_id"], unique=True)

    op.create_table(
        "subscription_plans",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("plan_type", sa.Enum(*PLAN_TYPES, name="plantype"), nullable=False),
        sa.Column("price", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default="USD"),
        sa.Column(
            "billing_interval",
            sa.Enum(*BILLING_INTERVALS, name="billinginterval"),
            nullable=False,
            server_default="month",
        ),
        sa.Column("billing_interval_count", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("trial_period_days", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("features", sa.JSON(), nullable=False),
        sa.Column("max_products", sa.Integer(), nullable=True),
        sa.Column("max_reviews", sa.Integer(), nullable=True),
        sa.Column("max_disputes", sa.Integer(), nullable=True),
        sa.Column("stripe_price_id", sa.String(length=255), nullable=True, unique=True),
        sa.Column("stripe_product_id", sa.String(length=255), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("is_popular", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("sort_order", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(),
    )
    op.create_index("ix_subscription_plans_id", "subscription_plans", ["id"])
    op.create_index("ix_subscription_plans_plan_type", "subscription_plans", ["plan_type"])
    op.create_index("ix_subscription_plans_is_active", "subscription_plans", ["is_active"])

    op.create_table(
        "user_subscriptions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("plan_id", sa.Integer(), sa.ForeignKey("subscription_plans.id"), nullable=False),
        sa.Column(
            "status",
            sa.Enum(*SUBSCRIPTION_STATUSES, name="subscriptionstatus"),
            nullable=False,
            server_default="active",
        ),
        sa.Column("current_period_start", sa.DateTime(), nullable=False),
        sa.Column("current_period_end", sa.DateTime(), nullable=False),
        sa.Column("trial_start", sa.DateTime(), nullable=True),
        sa.Column("trial_end", sa.DateTime(), nullable=True),
        sa.Column("cancel_at_period_end", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("canceled_at", sa.DateTime(), nullable=True),
        sa.Column("cancellation_reason", sa.String(length=500), nullable=True),
        sa.Column("resumed_at", sa.DateTime(), nullable=True),
        sa.Column("stripe_customer_id", sa.String(length=255), nullable=True),
        sa.Column("stripe_subscription_id", sa.String(length=255), nullable=True),
        sa.Column("stripe_price_id", sa.String(length=255), nullable=True),
        sa.Column("default_payment_method", sa.String(length=255), nullable=True),
        sa.Column("latest_invoice_id", sa.String(length=255), nullable=True),
        sa.Column("price_amount", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default="USD"),
        sa.Column(
            "billing_interval",
            sa.Enum(*BILLING_INTERVALS, name="billinginterval", create_type=False),
            nullable=False,
            server_default="month",
        ),
        sa.Column("billing_interval_count", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("billing_metadata", sa.JSON(), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        *_timestamps(),
    )
    op.create_index("ix_user_subscriptions_id", "user_subscriptions", ["id"])
    op.create_index("ix_user_subscriptions_user_id", "user_subscriptions", ["user_id"])
    op.create_index("ix_user_subscriptions_plan_id", "user_subscriptions", ["plan_id"])
    op.create_index("ix_user_subscriptions_status", "user_subscriptions", ["status"])
    op.create_index("ix_user_subscriptions_current_period_end", "user_subscriptions", ["current_period_end"])
    op.create_index("ix_user_subscriptions_canceled_at", "user_subscriptions", ["canceled_at"])
    op.create_index("ix_user_subscriptions_stripe_customer_id", "user_subscriptions", ["stripe_customer_id"])
    op.create_index(
        "ix_user_subscriptions_stripe_subscription_id",
        "user_subscriptions",
        ["stripe_subscription_id"],
        unique=True,
    )

    # One current subscription per user
    op.create_index(
        "uq_user_subscriptions_current",
        "user_subscriptions",
        ["user_id"],
        unique=True,
        postgresql_where=sa.text("status IN ('trialing', 'active', 'past_due')"),
    )

    op.create_table(
        "billing_events",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("event_id", sa.String(length=255), nullable=False),
        sa.Column("event_type", sa.String(length=100), nullable=False),
        sa.Column("stripe_subscription_id", sa.String(length=255), nullable=True),
        sa.Column(
            "outcome",
            sa.Enum(*EVENT_OUTCOMES, name="billingeventoutcome"),
            nullable=False,
            server_default="applied",
        ),
        sa.Column("received_at", sa.DateTime(), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
    )
    op.create_index("ix_billing_events_id", "billing_events", ["id"])
    op.create_index("ix_billing_events_event_id", "billing_events", ["event_id"], unique=True)
    op.create_index("ix_billing_events_event_type", "billing_events", ["event_type"])
    op.create_index("ix_billing_events_stripe_subscription_id", "billing_events", ["stripe_subscription_id"])

    op.create_table(
        "notifications",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("kind", sa.Enum(*NOTIFICATION_KINDS, name="notificationkind"), nullable=False),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("action_url", sa.String(length=500), nullable=True),
        sa.Column("is_read", sa.Boolean(), nullable=False, server_default=sa.false()),
        *_timestamps(),
    )
    op.create_index("ix_notifications_id", "notifications", ["id"])
    op.create_index("ix_notifications_user_id", "notifications", ["user_id"])


def downgrade() -> None:
    op.drop_table("notifications")
    op.drop_table("billing_events")
    op.drop_index("uq_user_subscriptions_current", table_name="user_subscriptions")
    op.drop_table("user_subscriptions")
    op.drop_table("subscription_plans")
    op.drop_table("users")

    for enum_name in (
        "notificationkind",
        "billingeventoutcome",
        "subscriptionstatus",
        "billinginterval",
        "plantype",
        "userrole",
    ):
        op.execute(f"DROP TYPE IF EXISTS {enum_name}")
