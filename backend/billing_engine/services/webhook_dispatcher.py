"""
Webhook event dispatcher.

WHAT: Routes verified payment processor events to the subscription
transition each one represents.

WHY: The processor delivers events at least once, out of order, and adds
new event types over time. The dispatcher therefore:
1. Short-circuits redeliveries through the ``billing_events`` ledger
2. Routes through a closed ``WebhookEventKind`` enum with one handler per
   kind (checked when this module is imported); types we do not handle map
   to an explicit IGNORED kind and are acknowledged
3. Compares each event with the row it refers to, so a semantically
   repeated event (same invoice attempt, status already reflected) is a
   no-op even under a new event id

HOW: Signature verification happens before dispatch (PaymentGateway.
construct_event). Each handler reads the row, picks a transition and
applies it through SubscriptionLifecycle; downgrades are delegated to
EntitlementOrchestrator. Nothing here commits.

Event payloads follow the pinned processor API version:
- checkout.session.completed: object is the checkout session
- customer.subscription.*: object is the subscription
- invoice.payment_*: object is the invoice
"""

import enum
import logging
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from billing_engine.core.config import settings
from billing_engine.core.exceptions import InvalidStateTransitionError, ValidationError
from billing_engine.dao.billing_event import BillingEventDAO
from billing_engine.dao.plan import PlanDAO
from billing_engine.dao.subscription import SubscriptionDAO
from billing_engine.models.base import from_unix_timestamp, utcnow
from billing_engine.models.billing_event import BillingEventOutcome
from billing_engine.models.subscription import (
    DowngradeReason,
    SubscriptionStatus,
    UserSubscription,
)
from billing_engine.services.billing_periods import resolve_period_end
from billing_engine.services.entitlement_orchestrator import EntitlementOrchestrator
from billing_engine.services.payment_gateway import GatewaySubscription, PaymentGateway
from billing_engine.services.subscription_lifecycle import (
    LifecycleNotice,
    TransitionResult,
)
from billing_engine.services.subscription_state import (
    PAID_UP,
    Transition,
    transition_for_reported_status,
)

logger = logging.getLogger(__name__)


class WebhookEventKind(str, enum.Enum):
    """Processor event types the dispatcher understands."""

    CHECKOUT_COMPLETED = "checkout.session.completed"
    SUBSCRIPTION_CREATED = "customer.subscription.created"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"
    PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
    PAYMENT_FAILED = "invoice.payment_failed"
    TRIAL_WILL_END = "customer.subscription.trial_will_end"
    IGNORED = "ignored"

    @classmethod
    def from_type(cls, event_type: str) -> "WebhookEventKind":
        try:
            kind = cls(event_type)
        except ValueError:
            return cls.IGNORED
        return kind


# Known types we deliberately do not act on (logged at debug level)
IGNORED_EVENT_TYPES = frozenset(
    {
        "invoice.created",
        "invoice.finalized",
        "invoice.paid",
        "invoice.upcoming",
        "customer.created",
        "customer.updated",
        "payment_method.attached",
        "payment_intent.succeeded",
        "payment_intent.created",
        "charge.succeeded",
    }
)

# Statuses whose report triggers a downgrade
_DOWNGRADE_ON_STATUS = {
    SubscriptionStatus.UNPAID: DowngradeReason.SUBSCRIPTION_UNPAID,
    SubscriptionStatus.INCOMPLETE_EXPIRED: DowngradeReason.INCOMPLETE_EXPIRED,
}


def _as_int(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _ref_id(value: Any) -> Optional[str]:
    """Processor references arrive either as ids or expanded objects."""
    if isinstance(value, Mapping):
        return value.get("id")
    return value


@dataclass
class WebhookEnvelope:
    """
    A verified processor event.

    Attributes:
        event_id: Processor event id (evt_xxx)
        event_type: Raw event type
        kind: Routed kind
        created: When the processor created the event
        data: The event's ``data.object``
        external_subscription_id: Processor subscription the event refers to
        external_session_id: Checkout session id for checkout events
    """

    event_id: str
    event_type: str
    kind: WebhookEventKind
    created: Optional[datetime]
    data: Dict[str, Any]
    external_subscription_id: Optional[str] = None
    external_session_id: Optional[str] = None

    @classmethod
    def from_event(cls, event: Mapping[str, Any]) -> "WebhookEnvelope":
        """
        Raises:
            ValidationError: If the event lacks an id, type or object
        """
        try:
            event_id = event["id"]
            event_type = event["type"]
            data = dict(event["data"]["object"])
        except (KeyError, TypeError) as e:
            raise ValidationError(message="Malformed webhook event") from e

        kind = WebhookEventKind.from_type(event_type)
        subscription_id = None
        session_id = None

        if kind == WebhookEventKind.CHECKOUT_COMPLETED:
            session_id = data.get("id")
            subscription_id = _ref_id(data.get("subscription"))
        elif event_type.startswith("customer.subscription."):
            subscription_id = data.get("id")
        elif event_type.startswith("invoice."):
            subscription_id = _ref_id(data.get("subscription"))

        return cls(
            event_id=event_id,
            event_type=event_type,
            kind=kind,
            created=from_unix_timestamp(event.get("created")),
            data=data,
            external_subscription_id=subscription_id,
            external_session_id=session_id,
        )


class WebhookDispatcher:
    """
    Applies processor events to subscription rows.

    Example:
        dispatcher = WebhookDispatcher(db, gateway)
        outcome = await dispatcher.dispatch(event)
        await db.commit()
        await notifier.dispatch(dispatcher.drain_notices())
    """

    HANDLERS: Dict[WebhookEventKind, Callable[["WebhookDispatcher", WebhookEnvelope], Awaitable[BillingEventOutcome]]] = {}

    def __init__(
        self,
        db: AsyncSession,
        gateway: Optional[PaymentGateway] = None,
        orchestrator: Optional[EntitlementOrchestrator] = None,
    ):
        self.db = db
        self.orchestrator = orchestrator or EntitlementOrchestrator(db, gateway)
        self.gateway = self.orchestrator.gateway
        self.lifecycle = self.orchestrator.lifecycle
        self.subscriptions = SubscriptionDAO(db)
        self.plans = PlanDAO(db)
        self.events = BillingEventDAO(db)
        self.failure_threshold = settings.PAYMENT_FAILURE_THRESHOLD

    def drain_notices(self) -> List[LifecycleNotice]:
        return self.lifecycle.drain_notices()

    async def dispatch(self, event: Mapping[str, Any]) -> BillingEventOutcome:
        """
        Process one verified event.

        Returns:
            What was done: applied, no-op (already reflected or a
            redelivery) or ignored (not relevant to any row)
        """
        envelope = WebhookEnvelope.from_event(event)
        log_extra = {
            "event_id": envelope.event_id,
            "event_type": envelope.event_type,
            "stripe_subscription_id": envelope.external_subscription_id,
        }

        if await self.events.get_by_event_id(envelope.event_id) is not None:
            logger.info(f"Duplicate webhook event {envelope.event_id}, skipping", extra=log_extra)
            return BillingEventOutcome.NO_OP

        handler = self.HANDLERS[envelope.kind]
        try:
            outcome = await handler(self, envelope)
        except InvalidStateTransitionError as e:
            logger.info(
                f"Event {envelope.event_id} does not apply to the subscription's "
                f"current state: {e.message}",
                extra=log_extra,
            )
            outcome = BillingEventOutcome.IGNORED

        await self.events.record(
            envelope.event_id,
            envelope.event_type,
            outcome,
            envelope.external_subscription_id,
        )
        logger.info(
            f"Webhook {envelope.event_type} ({envelope.event_id}): {outcome.value}",
            extra=log_extra,
        )
        return outcome

    # ========================================================================
    # Helpers
    # ========================================================================

    async def _find_row(self, envelope: WebhookEnvelope) -> Optional[UserSubscription]:
        if not envelope.external_subscription_id:
            return None
        row = await self.subscriptions.get_by_stripe_subscription_id(
            envelope.external_subscription_id
        )
        if row is None:
            logger.info(
                f"No subscription for {envelope.external_subscription_id} "
                f"({envelope.event_type}), ignoring",
                extra={"event_id": envelope.event_id},
            )
        return row

    async def _apply_by_status(
        self,
        subscription_id: int,
        choose: Callable[[UserSubscription], Transition],
        changes: Callable[[UserSubscription], Optional[Dict[str, Any]]],
        **notice_context: Any,
    ) -> Tuple[Transition, TransitionResult]:
        """
        Apply a transition chosen from the row's current status.

        WHY: The right transition depends on the status (a failed charge on
        an active row marks it past_due, on a past_due row it records one
        more failure). If the status moves between the choice and the write,
        the choice is made again.
        """
        for _ in range(self.lifecycle.max_attempts):
            row = await self.subscriptions.get_fresh(subscription_id)
            transition = choose(row)
            result = await self.lifecycle.apply(
                subscription_id, transition, changes, **notice_context
            )
            if result.applied or result.previous_status == SubscriptionStatus(row.status):
                return transition, result
        return transition, result

    def _sync_changes(
        self,
        gs: GatewaySubscription,
        reported: SubscriptionStatus,
        now: datetime,
    ) -> Callable[[UserSubscription], Dict[str, Any]]:
        """Field values mirrored from the processor's subscription object."""

        def _changes(row: UserSubscription) -> Dict[str, Any]:
            values: Dict[str, Any] = {
                "cancel_at_period_end": gs.cancel_at_period_end,
            }
            if gs.current_period_start is not None:
                values["current_period_start"] = gs.current_period_start
            if gs.current_period_end is not None:
                trial_end = gs.trial_end if reported == SubscriptionStatus.TRIALING else None
                values["current_period_end"] = resolve_period_end(
                    gs.current_period_end,
                    row.billing_interval,
                    row.billing_interval_count,
                    trial_end,
                )
            if gs.trial_end is not None:
                values["trial_end"] = gs.trial_end
            if gs.default_payment_method:
                values["default_payment_method"] = gs.default_payment_method
            if gs.latest_invoice_id:
                values["latest_invoice_id"] = gs.latest_invoice_id

            meta = row.meta
            if reported == SubscriptionStatus.ACTIVE and row.status == SubscriptionStatus.PAST_DUE:
                values["billing_metadata"] = meta.with_payment_reset().to_dict()
            elif reported == SubscriptionStatus.PAST_DUE and meta.past_due_since is None:
                values["billing_metadata"] = replace(meta, past_due_since=now).to_dict()
            elif reported == SubscriptionStatus.CANCELED:
                values["canceled_at"] = gs.canceled_at or now
            return values

        return _changes

    async def _downgrade(
        self,
        subscription_id: int,
        reason: DowngradeReason,
        now: datetime,
    ) -> bool:
        free = await self.orchestrator.downgrade_to_free(subscription_id, reason, now=now)
        return free is not None

    # ========================================================================
    # Handlers
    # ========================================================================

    async def _on_checkout_completed(self, envelope: WebhookEnvelope) -> BillingEventOutcome:
        """
        Record the paid subscription a checkout created.

        Skips when a row already exists for the processor subscription
        (redelivery, or subscription.created got there first).
        """
        session = envelope.data
        if session.get("mode") not in (None, "subscription"):
            return BillingEventOutcome.IGNORED

        subscription_id = envelope.external_subscription_id
        if not subscription_id:
            logger.warning(
                f"Checkout session {envelope.external_session_id} has no subscription",
                extra={"event_id": envelope.event_id},
            )
            return BillingEventOutcome.IGNORED

        if await self.subscriptions.get_by_stripe_subscription_id(subscription_id):
            return BillingEventOutcome.NO_OP

        gs = await self.gateway.retrieve_subscription(subscription_id)

        metadata = {**gs.metadata, **(session.get("metadata") or {})}
        user_id = _as_int(metadata.get("user_id"))
        plan_id = _as_int(metadata.get("plan_id"))
        if plan_id is None and gs.price_id:
            plan = await self.plans.get_by_stripe_price_id(gs.price_id)
            plan_id = plan.id if plan else None

        if user_id is None or plan_id is None:
            logger.error(
                f"Cannot attribute checkout {envelope.external_session_id} "
                f"(user_id={user_id}, plan_id={plan_id})",
                extra={"event_id": envelope.event_id},
            )
            return BillingEventOutcome.IGNORED

        await self.orchestrator.start_paid_subscription(user_id, plan_id, gs, now=utcnow())
        return BillingEventOutcome.APPLIED

    async def _on_subscription_created(self, envelope: WebhookEnvelope) -> BillingEventOutcome:
        """
        Adopt a subscription created outside checkout, or sync a known one.

        WHY: A reactivation creates the processor subscription before the
        local row is written; if that write failed, this event still carries
        the user and plan in metadata.
        """
        if await self.subscriptions.get_by_stripe_subscription_id(envelope.external_subscription_id):
            return await self._on_subscription_updated(envelope)

        gs = GatewaySubscription.from_stripe(envelope.data)
        user_id = _as_int(gs.metadata.get("user_id"))
        plan_id = _as_int(gs.metadata.get("plan_id"))
        if user_id is None or plan_id is None:
            return BillingEventOutcome.IGNORED
        if gs.status not in (SubscriptionStatus.TRIALING.value, SubscriptionStatus.ACTIVE.value):
            return BillingEventOutcome.IGNORED

        await self.orchestrator.start_paid_subscription(user_id, plan_id, gs, now=utcnow())
        return BillingEventOutcome.APPLIED

    async def _on_subscription_updated(self, envelope: WebhookEnvelope) -> BillingEventOutcome:
        """Bring the row in line with the processor's full subscription object."""
        row = await self._find_row(envelope)
        if row is None:
            return BillingEventOutcome.IGNORED

        gs = GatewaySubscription.from_stripe(envelope.data)
        try:
            reported = SubscriptionStatus(gs.status)
        except ValueError:
            logger.warning(
                f"Unrecognized status {gs.status!r} for {gs.id}, ignoring",
                extra={"event_id": envelope.event_id, "subscription_id": row.id},
            )
            return BillingEventOutcome.IGNORED

        now = utcnow()
        current = SubscriptionStatus(row.status)
        transition = transition_for_reported_status(current, reported)

        if transition is None:
            if reported in _DOWNGRADE_ON_STATUS and row.is_current:
                applied = await self._downgrade(row.id, _DOWNGRADE_ON_STATUS[reported], now)
                return BillingEventOutcome.APPLIED if applied else BillingEventOutcome.NO_OP
            logger.info(
                f"No transition from {current.value} for reported {reported.value}",
                extra={"event_id": envelope.event_id, "subscription_id": row.id},
            )
            return BillingEventOutcome.IGNORED

        # Flag changes made at the processor (customer portal) carry notices
        if transition == Transition.SYNC and current in PAID_UP:
            if gs.cancel_at_period_end and not row.cancel_at_period_end:
                transition = Transition.SCHEDULE_CANCEL
            elif not gs.cancel_at_period_end and row.cancel_at_period_end:
                transition = Transition.RESUME

        sync_changes = self._sync_changes(gs, reported, now)

        def _changes(subscription: UserSubscription) -> Dict[str, Any]:
            values = sync_changes(subscription)
            if transition == Transition.RESUME:
                values["resumed_at"] = now
            return values

        result = await self.lifecycle.apply(row.id, transition, _changes)

        downgraded = False
        if transition == Transition.CANCEL:
            downgraded = await self._downgrade(row.id, DowngradeReason.SUBSCRIPTION_CANCELED, now)
        elif reported in _DOWNGRADE_ON_STATUS:
            downgraded = await self._downgrade(row.id, _DOWNGRADE_ON_STATUS[reported], now)

        if result.applied or downgraded:
            return BillingEventOutcome.APPLIED
        return BillingEventOutcome.NO_OP

    async def _on_subscription_deleted(self, envelope: WebhookEnvelope) -> BillingEventOutcome:
        """
        The processor ended the subscription: cancel and downgrade.

        A row the sweep already expired and downgraded makes this a no-op.
        """
        row = await self._find_row(envelope)
        if row is None:
            return BillingEventOutcome.IGNORED

        applied = await self._downgrade(row.id, DowngradeReason.SUBSCRIPTION_CANCELED, utcnow())
        return BillingEventOutcome.APPLIED if applied else BillingEventOutcome.NO_OP

    async def _on_payment_failed(self, envelope: WebhookEnvelope) -> BillingEventOutcome:
        """
        Count a failed charge; downgrade once the threshold is reached.

        Each (invoice, attempt) pair is counted once. A payload without an
        invoice id is counted once per event id, which the ledger already
        guarantees.
        """
        row = await self._find_row(envelope)
        if row is None:
            return BillingEventOutcome.IGNORED
        if row.is_terminal:
            return BillingEventOutcome.NO_OP

        invoice = envelope.data
        invoice_id = invoice.get("id")
        attempt = _as_int(invoice.get("attempt_count"))
        now = utcnow()

        def _already_counted(meta) -> bool:
            if invoice_id is None:
                return False
            return meta.last_failed_invoice_id == invoice_id and meta.last_failed_attempt == attempt

        if _already_counted(row.meta):
            return BillingEventOutcome.NO_OP

        def _changes(subscription: UserSubscription) -> Optional[Dict[str, Any]]:
            meta = subscription.meta
            if _already_counted(meta):
                return None
            meta = replace(
                meta,
                payment_failure_count=meta.payment_failure_count + 1,
                past_due_since=meta.past_due_since or now,
                last_failed_invoice_id=invoice_id,
                last_failed_attempt=attempt,
            )
            values: Dict[str, Any] = {"billing_metadata": meta.to_dict()}
            if invoice_id is not None:
                values["latest_invoice_id"] = invoice_id
            return values

        _, result = await self._apply_by_status(
            row.id,
            lambda r: Transition.MARK_PAST_DUE
            if r.status in PAID_UP
            else Transition.RECORD_PAYMENT_FAILURE,
            _changes,
        )
        if not result.applied:
            return BillingEventOutcome.NO_OP

        failures = result.subscription.meta.payment_failure_count
        logger.info(
            f"Payment failure {failures}/{self.failure_threshold} for subscription {row.id}",
            extra={"subscription_id": row.id, "invoice_id": invoice_id},
        )
        if failures >= self.failure_threshold:
            await self._downgrade(row.id, DowngradeReason.PAYMENT_FAILED, now)
        return BillingEventOutcome.APPLIED

    async def _on_payment_succeeded(self, envelope: WebhookEnvelope) -> BillingEventOutcome:
        """
        A charge went through: reset failure tracking and move the row on.

        past_due -> active (recover), trialing -> active on the first paid
        invoice, active -> renewed on a cycle invoice. The zero-amount
        invoice issued when a trial starts leaves the status alone.
        """
        row = await self._find_row(envelope)
        if row is None:
            return BillingEventOutcome.IGNORED
        if row.is_terminal:
            return BillingEventOutcome.NO_OP

        invoice = envelope.data
        invoice_id = invoice.get("id")
        amount_paid = _as_int(invoice.get("amount_paid")) or 0
        billing_reason = invoice.get("billing_reason")

        period_start = period_end = None
        lines = (invoice.get("lines") or {}).get("data") or []
        if lines and lines[0].get("period"):
            period_start = from_unix_timestamp(lines[0]["period"].get("start"))
            period_end = from_unix_timestamp(lines[0]["period"].get("end"))

        def _choose(subscription: UserSubscription) -> Transition:
            status = SubscriptionStatus(subscription.status)
            if status == SubscriptionStatus.PAST_DUE:
                return Transition.RECOVER
            if status == SubscriptionStatus.TRIALING:
                return Transition.ACTIVATE if amount_paid > 0 else Transition.SYNC
            if billing_reason == "subscription_cycle":
                return Transition.RENEW
            return Transition.SYNC

        def _changes(subscription: UserSubscription) -> Dict[str, Any]:
            values: Dict[str, Any] = {
                "billing_metadata": subscription.meta.with_payment_reset().to_dict(),
                "latest_invoice_id": invoice_id,
            }
            paid_period = amount_paid > 0 or subscription.status != SubscriptionStatus.TRIALING
            if paid_period and period_end is not None and period_end > subscription.current_period_start:
                values["current_period_start"] = period_start or subscription.current_period_start
                values["current_period_end"] = period_end
            return values

        transition, result = await self._apply_by_status(row.id, _choose, _changes)
        return BillingEventOutcome.APPLIED if result.applied else BillingEventOutcome.NO_OP

    async def _on_trial_will_end(self, envelope: WebhookEnvelope) -> BillingEventOutcome:
        """Warn the vendor once before the first charge."""
        row = await self._find_row(envelope)
        if row is None:
            return BillingEventOutcome.IGNORED
        if row.status != SubscriptionStatus.TRIALING or row.meta.trial_ending_notified:
            return BillingEventOutcome.NO_OP

        result = await self.lifecycle.apply(
            row.id,
            Transition.NOTIFY_TRIAL_ENDING,
            lambda s: None
            if s.meta.trial_ending_notified
            else {"billing_metadata": replace(s.meta, trial_ending_notified=True).to_dict()},
        )
        return BillingEventOutcome.APPLIED if result.applied else BillingEventOutcome.NO_OP

    async def _on_ignored(self, envelope: WebhookEnvelope) -> BillingEventOutcome:
        if envelope.event_type in IGNORED_EVENT_TYPES:
            logger.debug(f"Ignoring webhook {envelope.event_type}")
        else:
            logger.info(
                f"Unhandled webhook event type {envelope.event_type}, acknowledging",
                extra={"event_id": envelope.event_id},
            )
        return BillingEventOutcome.IGNORED


WebhookDispatcher.HANDLERS = {
    WebhookEventKind.CHECKOUT_COMPLETED: WebhookDispatcher._on_checkout_completed,
    WebhookEventKind.SUBSCRIPTION_CREATED: WebhookDispatcher._on_subscription_created,
    WebhookEventKind.SUBSCRIPTION_UPDATED: WebhookDispatcher._on_subscription_updated,
    WebhookEventKind.SUBSCRIPTION_DELETED: WebhookDispatcher._on_subscription_deleted,
    WebhookEventKind.PAYMENT_SUCCEEDED: WebhookDispatcher._on_payment_succeeded,
    WebhookEventKind.PAYMENT_FAILED: WebhookDispatcher._on_payment_failed,
    WebhookEventKind.TRIAL_WILL_END: WebhookDispatcher._on_trial_will_end,
    WebhookEventKind.IGNORED: WebhookDispatcher._on_ignored,
}

_unhandled = set(WebhookEventKind) - set(WebhookDispatcher.HANDLERS)
if _unhandled:
    raise RuntimeError(
        f"Webhook event kinds without a handler: {sorted(k.value for k in _unhandled)}"
    )
