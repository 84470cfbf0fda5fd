"""
Subscription lifecycle service.

WHAT: Applies state-machine transitions to persisted subscription rows and
collects the notifications they produce.

WHY: Three writers touch the same rows concurrently (processor webhooks,
the reconciliation sweep, user actions). None of them holds a lock while
calling the processor, so each write is a read-decide-write cycle guarded
by the row's version:

1. Read the row fresh
2. Validate the transition and compute the new field values from what was read
3. Conditionally write (``WHERE version = :read_version``)
4. On a miss, go back to 1; after the last attempt, raise StaleWriteError

Notifications are queued as ``LifecycleNotice`` objects and only handed to
the notifier after the caller commits, so a rolled-back transaction never
emails anyone.

HOW: Callers pass either a dict of field changes or a function computing
them from the fresh row. Returning None from that function means "nothing
to do" and makes the call a no-op.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Union

from sqlalchemy.ext.asyncio import AsyncSession

from billing_engine.core.config import settings
from billing_engine.core.exceptions import (
    DuplicateActiveSubscriptionError,
    StaleWriteError,
    SubscriptionNotFoundError,
)
from billing_engine.dao.subscription import SubscriptionDAO
from billing_engine.models.notification import NotificationKind
from billing_engine.models.subscription import (
    UserSubscription,
    SubscriptionStatus,
    SubscriptionMetadata,
)
from billing_engine.services.subscription_state import (
    Transition,
    check_transition,
    is_already_applied,
    rule_for,
)

logger = logging.getLogger(__name__)


ChangeSet = Dict[str, Any]
ChangeFn = Callable[[UserSubscription], Optional[ChangeSet]]


@dataclass
class LifecycleNotice:
    """
    A notification owed to a user because a transition was applied.

    Attributes:
        user_id: Recipient
        subscription_id: Row the transition was applied to
        kind: What happened
        email: Whether to send an email in addition to the in-app notification
        context: Extra values for the notification text and email template
    """

    user_id: int
    subscription_id: int
    kind: NotificationKind
    email: bool = False
    context: Dict[str, Any] = field(default_factory=dict)


@dataclass
class TransitionResult:
    """Outcome of ``SubscriptionLifecycle.apply``."""

    subscription: UserSubscription
    applied: bool
    previous_status: SubscriptionStatus


class SubscriptionLifecycle:
    """
    Applies transitions to subscription rows with optimistic concurrency.

    Example:
        lifecycle = SubscriptionLifecycle(db)
        await lifecycle.apply(sub.id, Transition.CANCEL, {"canceled_at": now})
        await db.commit()
        await notifier.dispatch(lifecycle.drain_notices())
    """

    def __init__(self, db: AsyncSession, max_attempts: Optional[int] = None):
        self.db = db
        self.dao = SubscriptionDAO(db)
        self.max_attempts = max_attempts or settings.SUBSCRIPTION_WRITE_MAX_ATTEMPTS
        self._notices: List[LifecycleNotice] = []

    # ========================================================================
    # Notice outbox
    # ========================================================================

    @property
    def pending_notices(self) -> List[LifecycleNotice]:
        return list(self._notices)

    def drain_notices(self) -> List[LifecycleNotice]:
        """Hand over queued notices (call after commit) and clear the outbox."""
        notices, self._notices = self._notices, []
        return notices

    def discard_notices(self) -> None:
        """Drop queued notices (call after rollback)."""
        self._notices = []

    def enqueue(
        self,
        subscription: UserSubscription,
        kind: NotificationKind,
        email: bool = False,
        **context: Any,
    ) -> None:
        self._notices.append(
            LifecycleNotice(
                user_id=subscription.user_id,
                subscription_id=subscription.id,
                kind=kind,
                email=email,
                context=context,
            )
        )

    # ========================================================================
    # Transitions
    # ========================================================================

    async def apply(
        self,
        subscription_id: int,
        transition: Transition,
        changes: Union[ChangeSet, ChangeFn, None] = None,
        **notice_context: Any,
    ) -> TransitionResult:
        """
        Apply a transition to a row, retrying on concurrent modification.

        Args:
            subscription_id: Row to transition
            transition: Transition to apply
            changes: Field values to set, or a function computing them from
                the fresh row (return None to skip the write)
            **notice_context: Extra values for the notification

        Returns:
            TransitionResult; ``applied`` is False when the row already
            reflected the change

        Raises:
            SubscriptionNotFoundError: If the row does not exist
            InvalidStateTransitionError: If the row's status forbids the transition
            StaleWriteError: If the row kept changing underneath us
        """
        transition = Transition(transition)
        rule = rule_for(transition)

        for attempt in range(1, self.max_attempts + 1):
            subscription = await self.dao.get_fresh(subscription_id)
            if subscription is None:
                raise SubscriptionNotFoundError(subscription_id=subscription_id)

            previous_status = SubscriptionStatus(subscription.status)

            if is_already_applied(previous_status, transition):
                logger.debug(
                    f"Subscription {subscription_id} already {previous_status.value}, "
                    f"{transition.value} is a no-op",
                    extra={"subscription_id": subscription_id},
                )
                return TransitionResult(subscription, False, previous_status)

            target = check_transition(previous_status, transition)

            values = changes(subscription) if callable(changes) else dict(changes or {})
            if values is None:
                return TransitionResult(subscription, False, previous_status)
            if target is not None:
                values["status"] = target
            if not values or self._matches(subscription, values):
                return TransitionResult(subscription, False, previous_status)

            updated = await self.dao.compare_and_swap(
                subscription.id, subscription.version, **values
            )
            if updated is not None:
                logger.info(
                    f"Subscription {subscription_id}: {transition.value} "
                    f"({previous_status.value} -> {SubscriptionStatus(updated.status).value})",
                    extra={
                        "subscription_id": subscription_id,
                        "user_id": updated.user_id,
                    },
                )
                if rule.notice is not None:
                    self.enqueue(updated, rule.notice, rule.email, **notice_context)
                return TransitionResult(updated, True, previous_status)

            logger.info(
                f"Concurrent update on subscription {subscription_id} "
                f"(attempt {attempt}/{self.max_attempts}), re-evaluating {transition.value}",
                extra={"subscription_id": subscription_id},
            )

        logger.warning(
            f"Giving up on {transition.value} for subscription {subscription_id} "
            f"after {self.max_attempts} conflicting writes",
            extra={"subscription_id": subscription_id},
        )
        raise StaleWriteError(subscription_id=subscription_id, transition=transition.value)

    async def update_metadata(
        self,
        subscription_id: int,
        mutate: Callable[[SubscriptionMetadata], Optional[SubscriptionMetadata]],
        transition: Transition = Transition.ANNOTATE,
    ) -> TransitionResult:
        """
        Rewrite a row's billing metadata through ``mutate``.

        WHY: Metadata updates are read-modify-write too; running them
        through ``apply`` gives them the same version check.
        """

        def _changes(subscription: UserSubscription) -> Optional[ChangeSet]:
            updated = mutate(subscription.meta)
            if updated is None:
                return None
            return {"billing_metadata": updated.to_dict()}

        return await self.apply(subscription_id, transition, _changes)

    async def create(
        self,
        notice: Optional[NotificationKind] = NotificationKind.SUBSCRIPTION_CREATED,
        email: bool = False,
        notice_context: Optional[Dict[str, Any]] = None,
        **values: Any,
    ) -> UserSubscription:
        """
        Insert a new subscription row.

        Raises:
            DuplicateActiveSubscriptionError: If the new row would be a second
                current subscription for the user
        """
        status = SubscriptionStatus(values.get("status", SubscriptionStatus.ACTIVE))
        if status != SubscriptionStatus.CANCELED:
            existing = await self.dao.get_current_for_user(values["user_id"])
            if existing is not None:
                raise DuplicateActiveSubscriptionError(
                    user_id=values["user_id"],
                    current_subscription_id=existing.id,
                )

        values.setdefault("billing_metadata", {})
        values.setdefault("version", 1)
        subscription = await self.dao.create(**values)

        logger.info(
            f"Created subscription {subscription.id} for user {subscription.user_id} "
            f"on plan {subscription.plan_id} ({status.value})",
            extra={"subscription_id": subscription.id, "user_id": subscription.user_id},
        )
        if notice is not None:
            self.enqueue(subscription, notice, email, **(notice_context or {}))
        return subscription

    @staticmethod
    def _matches(subscription: UserSubscription, values: ChangeSet) -> bool:
        """True when every value already equals what the row holds."""
        for key, value in values.items():
            current = getattr(subscription, key)
            if key == "billing_metadata":
                if SubscriptionMetadata.from_dict(current) != SubscriptionMetadata.from_dict(value):
                    return False
            elif current != value:
                return False
        return True
