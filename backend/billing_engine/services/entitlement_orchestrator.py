"""
Entitlement orchestrator.

WHAT: Cross-cutting subscription policy that spans several rows and the
payment processor: free-tier bootstrap, checkout and its recovery, plan changes,
cancellation, downgrade to the free tier, reactivation and the billing portal.

WHY: The state machine moves one row at a time. Moving a vendor between
the free tier and a paid plan touches two rows (close one, open another),
the vendor's processor customer and sometimes the processor subscription.
Keeping that choreography here means webhooks, the reconciliation sweep
and the API all downgrade and reactivate the same way.

HOW:
1. Processor mutations happen before local writes, so a rejected call
   leaves the local record untouched
2. Local writes go through SubscriptionLifecycle (version-checked)
3. Old and new rows are never merged; they are linked through
   SubscriptionMetadata audit fields
4. Nothing here commits; callers commit, then dispatch ``drain_notices()``

Design decisions:
- Best-effort processor calls during downgrade (customer resolution,
  cancelling a subscription that may still bill) are logged on failure and
  never block moving the vendor to the free tier
- Reactivation picks its path from the latest paid row: scheduled
  cancellation flips the flag back, a recent terminal cancellation creates
  a new processor subscription
"""

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from billing_engine.core.config import settings
from billing_engine.core.exceptions import (
    AlreadyActiveError,
    DuplicateActiveSubscriptionError,
    ExternalGatewayError,
    InvalidGatewayRequestError,
    NoPaymentMethodError,
    NotReactivatableError,
    SubscriptionNotFoundError,
    UserNotFoundError,
    ValidationError,
)
from billing_engine.dao.subscription import SubscriptionDAO
from billing_engine.dao.user import UserDAO
from billing_engine.models.base import utcnow
from billing_engine.models.notification import NotificationKind
from billing_engine.models.plan import BillingInterval, SubscriptionPlan
from billing_engine.models.subscription import (
    CURRENT_STATUSES,
    FREE_TIER_PERIOD_END,
    DowngradeReason,
    ReactivationPath,
    SubscriptionMetadata,
    SubscriptionStatus,
    UserSubscription,
)
from billing_engine.models.user import User
from billing_engine.services.billing_periods import (
    add_billing_interval,
    resolve_period_end,
    trial_end_for,
)
from billing_engine.services.payment_gateway import (
    BillingPortalSessionResult,
    CheckoutSessionResult,
    GatewaySubscription,
    PaymentGateway,
    get_payment_gateway,
)
from billing_engine.services.plan_catalog import PlanCatalog
from billing_engine.services.subscription_lifecycle import LifecycleNotice, SubscriptionLifecycle
from billing_engine.services.subscription_state import Transition, check_transition

logger = logging.getLogger(__name__)


# Downgrades where the processor may keep billing unless we cancel there too
GATEWAY_CANCEL_REASONS = frozenset(
    {
        DowngradeReason.PAYMENT_FAILED,
        DowngradeReason.SUBSCRIPTION_EXPIRED,
        DowngradeReason.PAST_DUE_GRACE_EXPIRED,
    }
)

# Monthly-equivalent multipliers for revenue figures
_MONTHLY_FACTOR = {
    BillingInterval.DAY: 365 / 12,
    BillingInterval.WEEK: 52 / 12,
    BillingInterval.MONTH: 1,
    BillingInterval.YEAR: 1 / 12,
}


@dataclass
class CheckoutStart:
    """
    Result of starting a checkout.

    Free plans are subscribed to directly (``subscription`` set); paid
    plans return the hosted checkout page (``session`` set).
    """

    session: Optional[CheckoutSessionResult] = None
    subscription: Optional[UserSubscription] = None


@dataclass
class CheckoutRecovery:
    """Outcome of recording checkouts whose webhooks never applied."""

    completed_sessions: int = 0
    recovered: List[UserSubscription] = field(default_factory=list)


@dataclass
class ReactivationResult:
    subscription: UserSubscription
    path: ReactivationPath


class EntitlementOrchestrator:
    """
    Moves vendors between the free tier and paid plans.

    Example:
        orchestrator = EntitlementOrchestrator(db, gateway)
        free_row = await orchestrator.downgrade_to_free(sub.id, DowngradeReason.PAYMENT_FAILED)
        await db.commit()
        await notifier.dispatch(orchestrator.drain_notices())
    """

    def __init__(
        self,
        db: AsyncSession,
        gateway: Optional[PaymentGateway] = None,
        lifecycle: Optional[SubscriptionLifecycle] = None,
    ):
        self.db = db
        self.gateway = gateway or get_payment_gateway()
        self.lifecycle = lifecycle or SubscriptionLifecycle(db)
        self.subscriptions = SubscriptionDAO(db)
        self.users = UserDAO(db)
        self.catalog = PlanCatalog(db)

    def drain_notices(self) -> List[LifecycleNotice]:
        return self.lifecycle.drain_notices()

    # ========================================================================
    # Helpers
    # ========================================================================

    async def _get_user(self, user_id: int) -> User:
        user = await self.users.get_by_id(user_id)
        if user is None:
            raise UserNotFoundError(user_id=user_id)
        return user

    async def _get_current_paid(self, user_id: int) -> UserSubscription:
        current = await self.subscriptions.get_current_for_user(user_id)
        if current is None or current.is_free:
            raise SubscriptionNotFoundError(
                message="No paid subscription found",
                user_id=user_id,
            )
        return current

    @staticmethod
    def _free_row_values(
        user_id: int,
        plan: SubscriptionPlan,
        now: datetime,
        meta: Optional[SubscriptionMetadata] = None,
    ) -> Dict[str, Any]:
        """Column values for a free-tier row (no processor references)."""
        return {
            "user_id": user_id,
            "plan_id": plan.id,
            "status": SubscriptionStatus.ACTIVE,
            "current_period_start": now,
            "current_period_end": FREE_TIER_PERIOD_END,
            "price_amount": 0,
            "currency": plan.currency,
            "billing_interval": plan.billing_interval,
            "billing_interval_count": plan.billing_interval_count,
            "cancel_at_period_end": False,
            "billing_metadata": (meta or SubscriptionMetadata()).to_dict(),
        }

    async def _supersede_current(self, user_id: int, now: datetime) -> Optional[UserSubscription]:
        """
        Close the user's current free row ahead of creating a paid one.

        Raises:
            DuplicateActiveSubscriptionError: If the current row is a paid one
        """
        current = await self.subscriptions.get_current_for_user(user_id)
        if current is None:
            return None
        if not current.is_free:
            raise DuplicateActiveSubscriptionError(
                message="User already has a paid subscription",
                user_id=user_id,
                current_subscription_id=current.id,
            )

        await self.lifecycle.apply(
            current.id,
            Transition.SUPERSEDE,
            {"canceled_at": now, "cancellation_reason": "superseded"},
        )
        return current

    async def _link_superseded(self, old_id: int, new_id: int) -> None:
        await self.lifecycle.update_metadata(
            old_id,
            lambda meta: replace(meta, superseded_by_subscription_id=new_id),
        )

    # ========================================================================
    # Free tier and customers
    # ========================================================================

    async def bootstrap_free_subscription(
        self,
        user_id: int,
        now: Optional[datetime] = None,
    ) -> UserSubscription:
        """
        Give a new vendor the default free subscription.

        WHAT: Creates an active free row with a far-future period end and no
        processor references. Returns the existing current row when there is
        one, so repeated calls are harmless.

        Raises:
            UserNotFoundError: If the user does not exist
            PlanNotFoundError: If no free plan is configured
        """
        user = await self._get_user(user_id)
        existing = await self.subscriptions.get_current_for_user(user.id)
        if existing is not None:
            return existing

        plan = await self.catalog.get_free_plan()
        return await self.lifecycle.create(
            notice=NotificationKind.SUBSCRIPTION_CREATED,
            **self._free_row_values(user.id, plan, now or utcnow()),
        )

    async def ensure_customer(self, user: User) -> str:
        """
        Resolve the user's processor customer handle, creating one if needed.

        HOW: Verify the stored handle, then look the customer up by email,
        then create it. The result is stored on the user.

        Raises:
            ExternalGatewayError: If the processor cannot be reached
        """
        if user.stripe_customer_id:
            customer = await self.gateway.retrieve_customer(user.stripe_customer_id)
            if customer is not None:
                return customer.id
            logger.warning(
                f"Stored customer {user.stripe_customer_id} for user {user.id} "
                f"no longer exists, resolving again",
                extra={"user_id": user.id},
            )

        customer = await self.gateway.find_customer_by_email(user.email)
        if customer is None:
            customer = await self.gateway.create_customer(
                email=user.email,
                name=user.full_name,
                metadata={"user_id": str(user.id)},
                idempotency_key=f"customer-{user.id}",
            )

        if customer.id != user.stripe_customer_id:
            await self.users.set_stripe_customer_id(user.id, customer.id)
        return customer.id

    # ========================================================================
    # Checkout and paid rows
    # ========================================================================

    async def start_checkout(
        self,
        user_id: int,
        plan_id: int,
        success_url: Optional[str] = None,
        cancel_url: Optional[str] = None,
    ) -> CheckoutStart:
        """
        Start a subscription to ``plan_id``.

        Raises:
            PlanNotFoundError, PlanNotActiveError: If the plan cannot be sold
            DuplicateActiveSubscriptionError: If the user already pays for a plan
            ValidationError: If the plan has no processor price, or a paying
                user asks for the free plan
            ExternalGatewayError: If the processor rejects the session
        """
        user = await self._get_user(user_id)
        plan = await self.catalog.get_plan(plan_id)
        current = await self.subscriptions.get_current_for_user(user.id)

        if plan.is_free:
            if current is not None and not current.is_free:
                raise ValidationError(
                    message="Cancel your paid subscription to move to the free plan",
                    plan_id=plan.id,
                )
            return CheckoutStart(subscription=await self.bootstrap_free_subscription(user.id))

        if not plan.stripe_price_id:
            raise ValidationError(
                message="Plan is not available for purchase",
                plan_id=plan.id,
            )
        if current is not None and not current.is_free:
            raise DuplicateActiveSubscriptionError(
                message="You already have a paid subscription; change plan instead",
                user_id=user.id,
                current_subscription_id=current.id,
            )

        customer_id = await self.ensure_customer(user)
        session = await self.gateway.create_checkout_session(
            customer_id=customer_id,
            price_id=plan.stripe_price_id,
            success_url=success_url or f"{settings.subscription_url}?checkout=success",
            cancel_url=cancel_url or f"{settings.subscription_url}?checkout=canceled",
            trial_period_days=plan.trial_period_days if plan.has_trial else None,
            metadata={"user_id": str(user.id), "plan_id": str(plan.id)},
        )
        logger.info(
            f"Checkout session {session.id} started for user {user.id} on plan {plan.id}",
            extra={"user_id": user.id, "plan_id": plan.id},
        )
        return CheckoutStart(session=session)

    async def start_paid_subscription(
        self,
        user_id: int,
        plan_id: int,
        gateway_subscription: GatewaySubscription,
        now: Optional[datetime] = None,
    ) -> UserSubscription:
        """
        Record a processor subscription that started through checkout.

        WHAT: Closes the current free row and creates the paid row, with the
        period end computed from the trial end when a trial applies.

        WHY: Right after checkout the processor reports the trial end as the
        period end; entitlement runs one full billing period past it.

        Returns:
            The paid row (the existing one if this processor subscription
            was already recorded)

        Raises:
            ValidationError: If the processor status cannot start a subscription
            DuplicateActiveSubscriptionError: If the user already has another paid row
        """
        gs = gateway_subscription
        existing = await self.subscriptions.get_by_stripe_subscription_id(gs.id)
        if existing is not None:
            logger.info(
                f"Processor subscription {gs.id} already recorded as {existing.id}",
                extra={"subscription_id": existing.id},
            )
            return existing

        try:
            status = SubscriptionStatus(gs.status)
        except ValueError:
            status = None
        if status not in (SubscriptionStatus.TRIALING, SubscriptionStatus.ACTIVE):
            raise ValidationError(
                message=f"Cannot start a subscription in status {gs.status}",
                stripe_subscription_id=gs.id,
            )

        user = await self._get_user(user_id)
        plan = await self.catalog.get_plan(plan_id, require_active=False)
        now = now or utcnow()

        period_start = gs.current_period_start or now
        trial_start = None
        trial_end = None
        if status == SubscriptionStatus.TRIALING:
            trial_start = gs.trial_start or period_start
            trial_end = gs.trial_end or trial_end_for(trial_start, plan.trial_period_days)

        gateway_period_end = gs.current_period_end or add_billing_interval(
            period_start, plan.billing_interval, plan.billing_interval_count
        )
        period_end = resolve_period_end(
            gateway_period_end,
            plan.billing_interval,
            plan.billing_interval_count,
            trial_end,
        )

        previous = await self._supersede_current(user.id, now)
        subscription = await self.lifecycle.create(
            notice=(
                NotificationKind.SUBSCRIPTION_CREATED
                if status == SubscriptionStatus.TRIALING
                else NotificationKind.SUBSCRIPTION_ACTIVATED
            ),
            email=status == SubscriptionStatus.ACTIVE,
            user_id=user.id,
            plan_id=plan.id,
            status=status,
            current_period_start=period_start,
            current_period_end=period_end,
            trial_start=trial_start,
            trial_end=trial_end,
            cancel_at_period_end=gs.cancel_at_period_end,
            stripe_customer_id=gs.customer_id,
            stripe_subscription_id=gs.id,
            stripe_price_id=gs.price_id or plan.stripe_price_id,
            default_payment_method=gs.default_payment_method,
            latest_invoice_id=gs.latest_invoice_id,
            price_amount=plan.price,
            currency=plan.currency,
            billing_interval=plan.billing_interval,
            billing_interval_count=plan.billing_interval_count,
        )

        if previous is not None:
            await self._link_superseded(previous.id, subscription.id)
        if gs.customer_id and user.stripe_customer_id != gs.customer_id:
            await self.users.set_stripe_customer_id(user.id, gs.customer_id)

        return subscription

    async def recover_pending_checkouts(
        self,
        user_id: int,
        now: Optional[datetime] = None,
    ) -> CheckoutRecovery:
        """
        Record paid subscriptions whose checkout webhooks never applied.

        WHAT: Lists the customer's recent checkout sessions and records every
        completed subscription-mode session of this user that has no local
        row yet, oldest first.

        WHY: Webhook processing errors are acknowledged to avoid redelivery
        storms, and the sweeps only ever downgrade. Without this a vendor who
        paid could stay on the free tier. The subscription page calls it when
        the vendor returns from checkout.

        Sessions whose processor subscription can no longer start (ended
        since, or the user already holds another paid row) are skipped.

        Raises:
            UserNotFoundError: If the user does not exist
            ExternalGatewayError: If the processor cannot be reached
        """
        now = now or utcnow()
        user = await self._get_user(user_id)

        customer_id = user.stripe_customer_id
        if not customer_id:
            customer = await self.gateway.find_customer_by_email(user.email)
            if customer is None:
                return CheckoutRecovery()
            customer_id = customer.id

        sessions = await self.gateway.list_checkout_sessions(customer_id)
        completed = [
            session
            for session in sessions
            if session.status == "complete"
            and session.mode == "subscription"
            and session.subscription_id
            and session.metadata.get("user_id") == str(user.id)
        ]

        recovery = CheckoutRecovery(completed_sessions=len(completed))
        for session in reversed(completed):
            if await self.subscriptions.get_by_stripe_subscription_id(session.subscription_id):
                continue
            try:
                plan_id = int(session.metadata.get("plan_id"))
            except (TypeError, ValueError):
                logger.warning(
                    f"Checkout session {session.id} has no plan_id, cannot recover it",
                    extra={"user_id": user.id},
                )
                continue

            try:
                gs = await self.gateway.retrieve_subscription(session.subscription_id)
                subscription = await self.start_paid_subscription(user.id, plan_id, gs, now=now)
            except (
                InvalidGatewayRequestError,
                ValidationError,
                DuplicateActiveSubscriptionError,
            ) as e:
                logger.info(
                    f"Skipping checkout session {session.id}: {e.message}",
                    extra={"user_id": user.id, "stripe_subscription_id": session.subscription_id},
                )
                continue

            recovery.recovered.append(subscription)
            logger.warning(
                f"Recovered checkout session {session.id} for user {user.id} "
                f"as subscription {subscription.id}",
                extra={"user_id": user.id, "subscription_id": subscription.id},
            )

        return recovery

    async def create_billing_portal_session(
        self,
        user_id: int,
        return_url: Optional[str] = None,
    ) -> BillingPortalSessionResult:
        """
        Open the processor's billing portal for the vendor.

        WHY: This is where a vendor adds or replaces a card, which is the
        remediation for NoPaymentMethodError and for past-due payments.

        Raises:
            SubscriptionNotFoundError: If the vendor has no current subscription
            ExternalGatewayError: If the processor rejects the session
        """
        user = await self._get_user(user_id)
        current = await self.subscriptions.get_current_for_user(user.id)
        if current is None:
            raise SubscriptionNotFoundError(
                message="No current subscription",
                user_id=user.id,
            )

        customer_id = await self.ensure_customer(user)
        session = await self.gateway.create_billing_portal_session(
            customer_id=customer_id,
            return_url=return_url or settings.subscription_url,
        )
        logger.info(
            f"Billing portal session {session.id} opened for user {user.id}",
            extra={"user_id": user.id},
        )
        return session

    async def change_plan(self, user_id: int, plan_id: int) -> UserSubscription:
        """
        Move the user's paid subscription to another plan.

        WHAT: Swaps the processor price (with proration) and points the row
        at the new plan id. Plan rows themselves are never edited.

        Raises:
            SubscriptionNotFoundError: If the user has no paid subscription
            ValidationError: If the target is the free plan or has no price
            InvalidStateTransitionError: If the subscription is past_due
            ExternalGatewayError: If the processor rejects the change
        """
        current = await self._get_current_paid(user_id)
        plan = await self.catalog.get_plan(plan_id)

        if plan.id == current.plan_id:
            return current
        if plan.is_free:
            raise ValidationError(
                message="Cancel your subscription to move to the free plan",
                plan_id=plan.id,
            )
        if not plan.stripe_price_id:
            raise ValidationError(message="Plan is not available for purchase", plan_id=plan.id)

        check_transition(current.status, Transition.CHANGE_PLAN)
        previous_plan = await self.catalog.get_plan(current.plan_id, require_active=False)

        gs = await self.gateway.retrieve_subscription(current.stripe_subscription_id)
        gs = await self.gateway.update_subscription(
            current.stripe_subscription_id,
            idempotency_key=f"change-plan-{current.id}-{plan.id}-{current.version}",
            items=[{"id": gs.item_id, "price": plan.stripe_price_id}],
            proration_behavior="create_prorations",
        )

        def _changes(subscription: UserSubscription) -> Optional[Dict[str, Any]]:
            if subscription.plan_id == plan.id:
                return None
            trial_end = subscription.trial_end if subscription.is_trialing else None
            period_end = subscription.current_period_end
            if gs.current_period_end is not None:
                period_end = resolve_period_end(
                    gs.current_period_end,
                    plan.billing_interval,
                    plan.billing_interval_count,
                    trial_end,
                )
            return {
                "plan_id": plan.id,
                "stripe_price_id": plan.stripe_price_id,
                "price_amount": plan.price,
                "currency": plan.currency,
                "billing_interval": plan.billing_interval,
                "billing_interval_count": plan.billing_interval_count,
                "current_period_start": gs.current_period_start or subscription.current_period_start,
                "current_period_end": period_end,
            }

        result = await self.lifecycle.apply(
            current.id,
            Transition.CHANGE_PLAN,
            _changes,
            previous_plan_name=previous_plan.name,
        )
        return result.subscription

    # ========================================================================
    # Cancellation and downgrade
    # ========================================================================

    async def cancel_subscription(
        self,
        user_id: int,
        reason: Optional[str] = None,
        immediately: bool = False,
        now: Optional[datetime] = None,
    ) -> UserSubscription:
        """
        Cancel the user's paid subscription.

        WHAT: By default the subscription is flagged to end with the current
        period and access continues until then. With ``immediately`` the
        processor subscription is cancelled now and the user is moved to
        the free tier.

        Returns:
            The flagged paid row, or the new free row when immediate

        Raises:
            SubscriptionNotFoundError: If the user has no paid subscription
            InvalidStateTransitionError: If a past_due subscription is scheduled
            ExternalGatewayError: If the processor rejects the cancellation
        """
        now = now or utcnow()
        current = await self._get_current_paid(user_id)

        if immediately:
            await self.gateway.cancel_subscription(
                current.stripe_subscription_id,
                idempotency_key=f"cancel-{current.id}",
            )
            free = await self.downgrade_to_free(
                current.id,
                DowngradeReason.SUBSCRIPTION_CANCELED,
                now=now,
                note=reason,
            )
            return free or await self.subscriptions.get_fresh(current.id)

        if current.cancel_at_period_end:
            return current

        check_transition(current.status, Transition.SCHEDULE_CANCEL)
        await self.gateway.update_subscription(
            current.stripe_subscription_id,
            idempotency_key=f"schedule-cancel-{current.id}-{current.version}",
            cancel_at_period_end=True,
        )

        result = await self.lifecycle.apply(
            current.id,
            Transition.SCHEDULE_CANCEL,
            lambda s: None
            if s.cancel_at_period_end
            else {"cancel_at_period_end": True, "cancellation_reason": reason},
        )
        return result.subscription

    async def downgrade_to_free(
        self,
        subscription_id: int,
        reason: DowngradeReason,
        now: Optional[datetime] = None,
        note: Optional[str] = None,
    ) -> Optional[UserSubscription]:
        """
        Replace a paid subscription with a new free-tier row.

        WHAT:
        1. Close the paid row (canceled) with the reason; a row that is
           already terminal only gets the reason stamped
        2. Resolve the user's processor customer (best effort)
        3. Cancel at the processor when it may still bill (best effort)
        4. Create a new free row carrying the downgrade audit metadata
        5. Point the old row at the new one

        WHY: Safe to call repeatedly (webhook redelivery, sweep and webhook
        racing): a row that was already downgraded, or a user who already
        holds another current row, results in no new free row.

        Returns:
            The new free row, or None when there was nothing to do

        Raises:
            SubscriptionNotFoundError: If the row does not exist
            PlanNotFoundError: If no free plan is configured
        """
        reason = DowngradeReason(reason)
        now = now or utcnow()

        subscription = await self.subscriptions.get_fresh(subscription_id)
        if subscription is None:
            raise SubscriptionNotFoundError(subscription_id=subscription_id)
        if subscription.is_free:
            logger.info(
                f"Subscription {subscription_id} is already free, nothing to downgrade",
                extra={"subscription_id": subscription_id},
            )
            return None
        if subscription.meta.downgraded_to_subscription_id is not None:
            logger.info(
                f"Subscription {subscription_id} was already downgraded to "
                f"{subscription.meta.downgraded_to_subscription_id}",
                extra={"subscription_id": subscription_id},
            )
            return None

        # 1. Close the paid row
        if subscription.is_current:
            transition = (
                Transition.EXPIRE
                if reason == DowngradeReason.SUBSCRIPTION_EXPIRED
                else Transition.CANCEL
            )
            await self.lifecycle.apply(
                subscription.id,
                transition,
                lambda s: {
                    "canceled_at": now,
                    "cancellation_reason": note or reason.value,
                    "billing_metadata": replace(s.meta, downgrade_reason=reason).to_dict(),
                },
                reason=reason.value,
            )
        else:
            # Already terminal (unpaid, incomplete_expired): record why it ended
            def _stamp(s: UserSubscription) -> Optional[Dict[str, Any]]:
                values: Dict[str, Any] = {}
                if s.cancellation_reason is None:
                    values["cancellation_reason"] = note or reason.value
                if s.canceled_at is None:
                    values["canceled_at"] = now
                return values or None

            await self.lifecycle.apply(subscription.id, Transition.ANNOTATE, _stamp)

        # 2. Customer handle (best effort)
        user = await self._get_user(subscription.user_id)
        try:
            await self.ensure_customer(user)
        except ExternalGatewayError as e:
            logger.warning(
                f"Could not resolve customer for user {user.id} during downgrade: {e.message}",
                extra={"user_id": user.id, "subscription_id": subscription.id},
            )

        # 3. Stop processor billing (best effort)
        if reason in GATEWAY_CANCEL_REASONS and subscription.stripe_subscription_id:
            try:
                await self.gateway.cancel_subscription(
                    subscription.stripe_subscription_id,
                    idempotency_key=f"downgrade-{subscription.id}",
                )
            except ExternalGatewayError as e:
                logger.warning(
                    f"Could not cancel processor subscription "
                    f"{subscription.stripe_subscription_id}: {e.message}",
                    extra={"subscription_id": subscription.id},
                )

        # 4. Free row, unless the user already moved on to another current row
        current = await self.subscriptions.get_current_for_user(user.id)
        if current is not None:
            logger.info(
                f"User {user.id} already has current subscription {current.id}, "
                f"no free row created for downgrade of {subscription.id}",
                extra={"user_id": user.id, "subscription_id": subscription.id},
            )
            free = current if current.is_free else None
        else:
            free_plan = await self.catalog.get_free_plan()
            previous_plan = await self.catalog.get_plan(subscription.plan_id, require_active=False)
            free = await self.lifecycle.create(
                notice=NotificationKind.SUBSCRIPTION_DOWNGRADED,
                email=True,
                notice_context={
                    "previous_plan_name": previous_plan.name,
                    "reason": reason.value,
                },
                **self._free_row_values(
                    user.id,
                    free_plan,
                    now,
                    SubscriptionMetadata(
                        downgrade_reason=reason,
                        original_plan_id=subscription.plan_id,
                        original_subscription_id=subscription.id,
                        downgraded_at=now,
                    ),
                ),
            )
            logger.info(
                f"Downgraded user {user.id} from subscription {subscription.id} "
                f"to free subscription {free.id} ({reason.value})",
                extra={
                    "user_id": user.id,
                    "subscription_id": subscription.id,
                    "free_subscription_id": free.id,
                },
            )

        # 5. Audit link on the old row
        if free is not None:
            await self.lifecycle.update_metadata(
                subscription.id,
                lambda meta: replace(
                    meta,
                    downgrade_reason=meta.downgrade_reason or reason,
                    downgraded_at=meta.downgraded_at or now,
                    downgraded_to_subscription_id=free.id,
                ),
            )

        return free

    # ========================================================================
    # Reactivation
    # ========================================================================

    async def reactivate(
        self,
        user_id: int,
        now: Optional[datetime] = None,
    ) -> ReactivationResult:
        """
        Reactivate the user's most recent paid subscription.

        Paths:
        1. Scheduled cancellation (flag set, still active/trialing): clear the
           flag at the processor and locally
        2. Canceled within REACTIVATION_WINDOW_DAYS: create a new processor
           subscription on the same plan and a new local row

        Raises:
            SubscriptionNotFoundError: If the user never had a paid subscription
            AlreadyActiveError: If the subscription is current with no pending cancellation
            NotReactivatableError: If the cancellation is outside the window
            NoPaymentMethodError: If a new subscription is needed and no card is on file
            ExternalGatewayError: If the processor rejects the call
        """
        now = now or utcnow()
        user = await self._get_user(user_id)

        latest = await self.subscriptions.get_latest_paid_for_user(user.id)
        if latest is None:
            raise SubscriptionNotFoundError(
                message="No paid subscription to reactivate",
                user_id=user.id,
            )

        status = SubscriptionStatus(latest.status)
        if status in CURRENT_STATUSES:
            if latest.cancel_at_period_end and status != SubscriptionStatus.PAST_DUE:
                return await self._resume(latest, now)
            raise AlreadyActiveError(subscription_id=latest.id, status=status.value)

        window = timedelta(days=settings.REACTIVATION_WINDOW_DAYS)
        if (
            status == SubscriptionStatus.CANCELED
            and latest.canceled_at is not None
            and now - latest.canceled_at <= window
        ):
            return await self._recreate(user, latest, now)

        raise NotReactivatableError(
            message=(
                f"Subscriptions can only be reactivated within "
                f"{settings.REACTIVATION_WINDOW_DAYS} days of cancellation"
            ),
            subscription_id=latest.id,
            status=status.value,
        )

    async def _resume(self, subscription: UserSubscription, now: datetime) -> ReactivationResult:
        await self.gateway.update_subscription(
            subscription.stripe_subscription_id,
            idempotency_key=f"resume-{subscription.id}-{subscription.version}",
            cancel_at_period_end=False,
        )

        result = await self.lifecycle.apply(
            subscription.id,
            Transition.RESUME,
            lambda s: None
            if not s.cancel_at_period_end
            else {
                "cancel_at_period_end": False,
                "cancellation_reason": None,
                "resumed_at": now,
                "billing_metadata": replace(
                    s.meta,
                    reactivated_at=now,
                    reactivation_path=ReactivationPath.FLAG_FLIP,
                ).to_dict(),
            },
        )
        return ReactivationResult(result.subscription, ReactivationPath.FLAG_FLIP)

    async def _recreate(
        self,
        user: User,
        latest: UserSubscription,
        now: datetime,
    ) -> ReactivationResult:
        plan = await self.catalog.get_plan(latest.plan_id, require_active=False)
        price_id = latest.stripe_price_id or plan.stripe_price_id

        customer_id = latest.stripe_customer_id or await self.ensure_customer(user)
        payment_methods = await self.gateway.list_payment_methods(customer_id)
        if not payment_methods:
            raise NoPaymentMethodError(
                redirect_url=settings.subscription_url,
                user_id=user.id,
                subscription_id=latest.id,
            )

        gs = await self.gateway.create_subscription(
            customer_id=customer_id,
            price_id=price_id,
            idempotency_key=f"reactivate-{latest.id}",
            default_payment_method=payment_methods[0].id,
            metadata={
                "user_id": str(user.id),
                "plan_id": str(plan.id),
                "reactivated_from": str(latest.id),
            },
        )

        try:
            status = SubscriptionStatus(gs.status)
        except ValueError:
            status = None
        if status not in CURRENT_STATUSES:
            logger.warning(
                f"New processor subscription {gs.id} reported {gs.status}, "
                f"recording as past_due until the processor confirms payment",
                extra={"user_id": user.id},
            )
            status = SubscriptionStatus.PAST_DUE

        period_start = gs.current_period_start or now
        period_end = gs.current_period_end or add_billing_interval(
            period_start, plan.billing_interval, plan.billing_interval_count
        )

        previous = await self._supersede_current(user.id, now)
        subscription = await self.lifecycle.create(
            notice=NotificationKind.SUBSCRIPTION_REACTIVATED,
            email=True,
            user_id=user.id,
            plan_id=plan.id,
            status=status,
            current_period_start=period_start,
            current_period_end=period_end,
            stripe_customer_id=customer_id,
            stripe_subscription_id=gs.id,
            stripe_price_id=gs.price_id or price_id,
            default_payment_method=gs.default_payment_method or payment_methods[0].id,
            latest_invoice_id=gs.latest_invoice_id,
            price_amount=plan.price,
            currency=plan.currency,
            billing_interval=plan.billing_interval,
            billing_interval_count=plan.billing_interval_count,
            billing_metadata=SubscriptionMetadata(
                reactivated_at=now,
                reactivation_path=ReactivationPath.NEW_SUBSCRIPTION,
                reactivated_from_subscription_id=latest.id,
            ).to_dict(),
        )
        if previous is not None:
            await self._link_superseded(previous.id, subscription.id)

        logger.info(
            f"Reactivated user {user.id} with new subscription {subscription.id} "
            f"(from {latest.id})",
            extra={"user_id": user.id, "subscription_id": subscription.id},
        )
        return ReactivationResult(subscription, ReactivationPath.NEW_SUBSCRIPTION)

    # ========================================================================
    # Read models
    # ========================================================================

    async def get_history(self, user_id: int, limit: int = 50) -> List[UserSubscription]:
        return await self.subscriptions.list_for_user(user_id, limit=limit)

    async def get_analytics(self) -> Dict[str, Any]:
        """
        Subscription totals for the admin dashboard.

        Returns:
            Counts by status and by plan (current rows only), number of paid
            current subscriptions and monthly recurring revenue in minor units
        """
        by_status = await self.subscriptions.count_by_status()
        by_plan = await self.subscriptions.count_current_by_plan()
        paid = await self.subscriptions.list_current_paid()

        monthly_revenue = 0.0
        for subscription in paid:
            if subscription.status == SubscriptionStatus.TRIALING:
                continue
            factor = _MONTHLY_FACTOR[BillingInterval(subscription.billing_interval)]
            monthly_revenue += subscription.price_amount * factor / subscription.billing_interval_count

        return {
            "by_status": by_status,
            "by_plan": by_plan,
            "total_current": sum(by_plan.values()),
            "paid_current": len(paid),
            "monthly_recurring_revenue": int(round(monthly_revenue)),
        }
