"""
Subscription state machine.

WHAT: The table of transitions a subscription row may go through, which
statuses each one is allowed from, what status it leads to, and which
notification it produces.

WHY: Webhooks, the reconciliation sweep and user actions all move the same
rows. Keeping the rules in one table means they cannot disagree about
whether, say, a past_due row may be reactivated, and makes "this event is
already reflected" a lookup instead of ad-hoc checks.

HOW: ``TRANSITIONS`` maps each ``Transition`` to a ``TransitionRule``.
``SubscriptionLifecycle`` (subscription_lifecycle.py) applies them to
persisted rows; this module has no I/O.

Statuses:
    trialing -> active              trial converted on first paid invoice
    active | trialing -> past_due   charge failed
    past_due -> active              recovered, failure counters reset
    active | trialing | past_due -> canceled
                                    user, processor or sweep ended it
    past_due -> unpaid | incomplete_expired
                                    processor gave up
"""

import enum
from dataclasses import dataclass
from typing import FrozenSet, Optional

from billing_engine.core.exceptions import InvalidStateTransitionError
from billing_engine.models.notification import NotificationKind
from billing_engine.models.subscription import (
    SubscriptionStatus,
    CURRENT_STATUSES,
    TERMINAL_STATUSES,
)


ALL_STATUSES = frozenset(SubscriptionStatus)
PAID_UP = frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING})


class Transition(str, enum.Enum):
    """Named transitions applied to subscription rows."""

    # Status-changing
    ACTIVATE = "activate"
    RECOVER = "recover"
    MARK_PAST_DUE = "mark_past_due"
    CANCEL = "cancel"
    EXPIRE = "expire"
    MARK_UNPAID = "mark_unpaid"
    MARK_INCOMPLETE_EXPIRED = "mark_incomplete_expired"
    SUPERSEDE = "supersede"

    # Status-preserving
    SCHEDULE_CANCEL = "schedule_cancel"
    RESUME = "resume"
    RENEW = "renew"
    CHANGE_PLAN = "change_plan"
    RECORD_PAYMENT_FAILURE = "record_payment_failure"
    NOTIFY_TRIAL_ENDING = "notify_trial_ending"
    SYNC = "sync"
    ANNOTATE = "annotate"


@dataclass(frozen=True)
class TransitionRule:
    """
    How a transition behaves.

    Attributes:
        sources: Statuses the row may be in
        target: Resulting status, or None when the status is unchanged
        notice: Notification produced when the transition is applied
        email: Whether the notification is also emailed
    """

    sources: FrozenSet[SubscriptionStatus]
    target: Optional[SubscriptionStatus] = None
    notice: Optional[NotificationKind] = None
    email: bool = False


TRANSITIONS = {
    Transition.ACTIVATE: TransitionRule(
        sources=frozenset({SubscriptionStatus.TRIALING}),
        target=SubscriptionStatus.ACTIVE,
        notice=NotificationKind.SUBSCRIPTION_ACTIVATED,
        email=True,
    ),
    Transition.RECOVER: TransitionRule(
        sources=frozenset({SubscriptionStatus.PAST_DUE}),
        target=SubscriptionStatus.ACTIVE,
        notice=NotificationKind.PAYMENT_SUCCEEDED,
    ),
    Transition.MARK_PAST_DUE: TransitionRule(
        sources=PAID_UP,
        target=SubscriptionStatus.PAST_DUE,
        notice=NotificationKind.SUBSCRIPTION_PAST_DUE,
        email=True,
    ),
    Transition.CANCEL: TransitionRule(
        sources=CURRENT_STATUSES,
        target=SubscriptionStatus.CANCELED,
        notice=NotificationKind.SUBSCRIPTION_CANCELED,
        email=True,
    ),
    Transition.EXPIRE: TransitionRule(
        sources=CURRENT_STATUSES,
        target=SubscriptionStatus.CANCELED,
        notice=NotificationKind.SUBSCRIPTION_CANCELED,
        email=True,
    ),
    Transition.MARK_UNPAID: TransitionRule(
        sources=frozenset({SubscriptionStatus.PAST_DUE}),
        target=SubscriptionStatus.UNPAID,
        notice=NotificationKind.SUBSCRIPTION_CANCELED,
        email=True,
    ),
    Transition.MARK_INCOMPLETE_EXPIRED: TransitionRule(
        sources=frozenset({SubscriptionStatus.PAST_DUE}),
        target=SubscriptionStatus.INCOMPLETE_EXPIRED,
        notice=NotificationKind.SUBSCRIPTION_CANCELED,
        email=True,
    ),
    # Closing a current row because a new one replaces it; the new row's
    # creation carries the notification
    Transition.SUPERSEDE: TransitionRule(
        sources=CURRENT_STATUSES,
        target=SubscriptionStatus.CANCELED,
    ),
    Transition.SCHEDULE_CANCEL: TransitionRule(
        sources=PAID_UP,
        notice=NotificationKind.SUBSCRIPTION_CANCELLATION_SCHEDULED,
        email=True,
    ),
    Transition.RESUME: TransitionRule(
        sources=PAID_UP,
        notice=NotificationKind.SUBSCRIPTION_RESUMED,
        email=True,
    ),
    Transition.RENEW: TransitionRule(
        sources=frozenset({SubscriptionStatus.ACTIVE}),
        notice=NotificationKind.SUBSCRIPTION_RENEWED,
    ),
    Transition.CHANGE_PLAN: TransitionRule(
        sources=PAID_UP,
        notice=NotificationKind.SUBSCRIPTION_PLAN_CHANGED,
    ),
    Transition.RECORD_PAYMENT_FAILURE: TransitionRule(
        sources=frozenset({SubscriptionStatus.PAST_DUE}),
        notice=NotificationKind.PAYMENT_FAILED,
    ),
    Transition.NOTIFY_TRIAL_ENDING: TransitionRule(
        sources=frozenset({SubscriptionStatus.TRIALING}),
        notice=NotificationKind.TRIAL_ENDING,
        email=True,
    ),
    # Field sync from the processor without a status change
    Transition.SYNC: TransitionRule(sources=CURRENT_STATUSES),
    # Audit metadata on any row, including terminal ones
    Transition.ANNOTATE: TransitionRule(sources=ALL_STATUSES),
}


def rule_for(transition: Transition) -> TransitionRule:
    return TRANSITIONS[Transition(transition)]


def is_already_applied(current: SubscriptionStatus, transition: Transition) -> bool:
    """
    Whether the row already sits in the transition's target status.

    WHY: A redelivered or late event (the sweep already canceled, then the
    processor's deletion webhook arrives) must be a no-op, not an error.
    """
    rule = rule_for(transition)
    return rule.target is not None and SubscriptionStatus(current) == rule.target


def check_transition(current: SubscriptionStatus, transition: Transition) -> Optional[SubscriptionStatus]:
    """
    Validate a transition against the current status.

    Returns:
        The resulting status (None for status-preserving transitions)

    Raises:
        InvalidStateTransitionError: If the transition is not allowed
    """
    rule = rule_for(transition)
    current = SubscriptionStatus(current)
    if current not in rule.sources:
        raise InvalidStateTransitionError(
            message=f"Cannot {Transition(transition).value} a {current.value} subscription",
            current_status=current.value,
            transition=Transition(transition).value,
        )
    return rule.target


def transition_for_reported_status(
    current: SubscriptionStatus,
    reported: SubscriptionStatus,
) -> Optional[Transition]:
    """
    Transition that brings a row in line with the status the processor reports.

    WHAT: Maps (our status, processor status) to a transition, or None when
    no move applies.

    WHY: ``customer.subscription.updated`` carries the full object rather
    than a delta; we derive the delta here. Terminal rows never move again
    because a reactivation always creates a new row.

    Returns:
        Transition to apply, SYNC when statuses already agree, or None
    """
    current = SubscriptionStatus(current)
    reported = SubscriptionStatus(reported)

    if current in TERMINAL_STATUSES:
        return None
    if reported == current:
        return Transition.SYNC
    if reported == SubscriptionStatus.ACTIVE:
        if current == SubscriptionStatus.TRIALING:
            return Transition.ACTIVATE
        if current == SubscriptionStatus.PAST_DUE:
            return Transition.RECOVER
    if reported == SubscriptionStatus.PAST_DUE:
        return Transition.MARK_PAST_DUE
    if reported == SubscriptionStatus.CANCELED:
        return Transition.CANCEL
    if reported == SubscriptionStatus.UNPAID and current == SubscriptionStatus.PAST_DUE:
        return Transition.MARK_UNPAID
    if reported == SubscriptionStatus.INCOMPLETE_EXPIRED and current == SubscriptionStatus.PAST_DUE:
        return Transition.MARK_INCOMPLETE_EXPIRED
    return None
