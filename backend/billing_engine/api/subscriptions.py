"""
Subscription API endpoints.

WHAT: REST API endpoints for vendor subscription management:
1. GET /subscriptions/plans - List purchasable plans
2. GET /subscriptions/current - Current subscription
3. POST /subscriptions/checkout - Start a subscription
4. POST /subscriptions/process-pending - Record checkouts whose webhooks were lost
5. POST /subscriptions/billing-portal - Hosted card and invoice management
6. PUT /subscriptions/plan - Change plan
7. POST /subscriptions/cancel - Cancel (at period end or immediately)
8. POST /subscriptions/reactivate - Undo or reverse a cancellation
9. GET /subscriptions/history - Past and present rows
10. POST /webhooks/stripe/subscription - Processor webhooks
11. /admin/subscriptions/... - Manual sweeps and analytics

WHY: The routes stay thin; every rule lives in the services so the same
behaviour is reachable from webhooks and the scheduler.

HOW: Each mutating route commits explicitly, then hands the queued
lifecycle notices to the notifier, so notifications only describe
committed state.

SECURITY (OWASP):
- A01: Callers only ever see their own subscriptions
- A02: Webhooks are rejected unless the Stripe-Signature header verifies
- A07: Every route except the webhook requires a bearer token
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from billing_engine.core.deps import require_admin, require_vendor
from billing_engine.core.exceptions import SubscriptionNotFoundError
from billing_engine.db.session import get_db
from billing_engine.models.user import User
from billing_engine.schemas.subscription import (
    BillingPortalRequest,
    BillingPortalResponse,
    PendingCheckoutResponse,
    PlanChangeRequest,
    PlansResponse,
    SubscriptionAnalytics,
    SubscriptionCancelRequest,
    SubscriptionCancelResponse,
    SubscriptionCheckoutRequest,
    SubscriptionCheckoutResponse,
    SubscriptionHistoryResponse,
    SubscriptionReactivateResponse,
    SubscriptionResponse,
    SweepStats,
    WebhookResponse,
    plan_to_response,
)
from billing_engine.services.entitlement_orchestrator import EntitlementOrchestrator
from billing_engine.services.payment_gateway import PaymentGateway, get_payment_gateway
from billing_engine.services.plan_catalog import PlanCatalog
from billing_engine.services.reconciliation_sweep import ReconciliationSweep
from billing_engine.services.scheduler import get_sweep
from billing_engine.services.subscription_notifier import SubscriptionNotifier
from billing_engine.services.webhook_dispatcher import WebhookDispatcher

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/subscriptions", tags=["Subscriptions"])


def get_notifier() -> SubscriptionNotifier:
    """Dependency for the post-commit notifier."""
    return SubscriptionNotifier()


async def get_orchestrator(
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
) -> EntitlementOrchestrator:
    return EntitlementOrchestrator(db, gateway)


# ============================================================================
# Plan Information
# ============================================================================


@router.get(
    "/plans",
    response_model=PlansResponse,
    summary="List available subscription plans",
    description="Returns all active plans with pricing and limits.",
)
async def list_plans(db: AsyncSession = Depends(get_db)):
    """
    List all purchasable plans.

    WHY: Public pricing page; retired plans are hidden here but existing
    subscribers keep them.
    """
    plans = await PlanCatalog(db).list_active_plans()
    return PlansResponse(plans=[plan_to_response(plan) for plan in plans])


# ============================================================================
# Subscription Status
# ============================================================================


@router.get(
    "/current",
    response_model=SubscriptionResponse,
    summary="Get current subscription",
)
async def get_current_subscription(
    orchestrator: EntitlementOrchestrator = Depends(get_orchestrator),
    current_user: User = Depends(require_vendor),
):
    """
    Get the caller's current subscription.

    Raises:
        SubscriptionNotFoundError: If the vendor has no current row
    """
    subscription = await orchestrator.subscriptions.get_current_for_user(current_user.id)
    if subscription is None:
        raise SubscriptionNotFoundError(
            message="No current subscription",
            user_id=current_user.id,
        )
    return SubscriptionResponse.from_subscription(subscription)


@router.get(
    "/history",
    response_model=SubscriptionHistoryResponse,
    summary="Get subscription history",
)
async def get_subscription_history(
    limit: int = Query(50, ge=1, le=200),
    orchestrator: EntitlementOrchestrator = Depends(get_orchestrator),
    current_user: User = Depends(require_vendor),
):
    rows = await orchestrator.get_history(current_user.id, limit=limit)
    return SubscriptionHistoryResponse(
        items=[SubscriptionResponse.from_subscription(row) for row in rows],
        total=len(rows),
    )


# ============================================================================
# Checkout & Management
# ============================================================================


@router.post(
    "/checkout",
    response_model=SubscriptionCheckoutResponse,
    summary="Start a subscription",
    description="Creates a checkout session for paid plans or subscribes to the free plan.",
)
async def create_checkout(
    request: SubscriptionCheckoutRequest,
    db: AsyncSession = Depends(get_db),
    orchestrator: EntitlementOrchestrator = Depends(get_orchestrator),
    notifier: SubscriptionNotifier = Depends(get_notifier),
    current_user: User = Depends(require_vendor),
):
    """
    Start a subscription to a plan.

    WHY: Paid subscriptions are only created once the processor confirms
    checkout (via webhook), so this route never writes a paid row.
    """
    started = await orchestrator.start_checkout(
        current_user.id,
        request.plan_id,
        success_url=request.success_url,
        cancel_url=request.cancel_url,
    )
    await db.commit()
    await notifier.dispatch(orchestrator.drain_notices())

    if started.session is not None:
        return SubscriptionCheckoutResponse(
            checkout_session_id=started.session.id,
            checkout_url=started.session.url,
        )
    return SubscriptionCheckoutResponse(
        subscription=SubscriptionResponse.from_subscription(started.subscription),
    )


@router.post(
    "/process-pending",
    response_model=PendingCheckoutResponse,
    summary="Record completed checkouts",
    description="Records paid checkouts that have no subscription yet.",
)
async def process_pending_checkouts(
    db: AsyncSession = Depends(get_db),
    orchestrator: EntitlementOrchestrator = Depends(get_orchestrator),
    notifier: SubscriptionNotifier = Depends(get_notifier),
    current_user: User = Depends(require_vendor),
):
    """
    Catch up on checkouts whose webhooks were not applied.

    WHY: Called when the vendor lands back on the subscription page after
    checkout, so a lost webhook never leaves a paying vendor on the free tier.
    """
    recovery = await orchestrator.recover_pending_checkouts(current_user.id)
    await db.commit()
    await notifier.dispatch(orchestrator.drain_notices())

    return PendingCheckoutResponse(
        completed_sessions=recovery.completed_sessions,
        recovered=[SubscriptionResponse.from_subscription(s) for s in recovery.recovered],
        message=f"Recorded {len(recovery.recovered)} pending checkout(s)",
    )


@router.post(
    "/billing-portal",
    response_model=BillingPortalResponse,
    summary="Open the billing portal",
    description="Returns a hosted page where the vendor manages cards and invoices.",
)
async def create_billing_portal_session(
    request: Optional[BillingPortalRequest] = None,
    db: AsyncSession = Depends(get_db),
    orchestrator: EntitlementOrchestrator = Depends(get_orchestrator),
    current_user: User = Depends(require_vendor),
):
    session = await orchestrator.create_billing_portal_session(
        current_user.id,
        return_url=request.return_url if request else None,
    )
    # The customer handle may have just been resolved and stored
    await db.commit()
    return BillingPortalResponse(url=session.url)


@router.put(
    "/plan",
    response_model=SubscriptionResponse,
    summary="Change plan",
    description="Moves the paid subscription to another plan with proration.",
)
async def change_plan(
    request: PlanChangeRequest,
    db: AsyncSession = Depends(get_db),
    orchestrator: EntitlementOrchestrator = Depends(get_orchestrator),
    notifier: SubscriptionNotifier = Depends(get_notifier),
    current_user: User = Depends(require_vendor),
):
    subscription = await orchestrator.change_plan(current_user.id, request.new_plan_id)
    await db.commit()
    await notifier.dispatch(orchestrator.drain_notices())
    return SubscriptionResponse.from_subscription(subscription)


@router.post(
    "/cancel",
    response_model=SubscriptionCancelResponse,
    summary="Cancel subscription",
)
async def cancel_subscription(
    request: SubscriptionCancelRequest,
    db: AsyncSession = Depends(get_db),
    orchestrator: EntitlementOrchestrator = Depends(get_orchestrator),
    notifier: SubscriptionNotifier = Depends(get_notifier),
    current_user: User = Depends(require_vendor),
):
    """
    Cancel the caller's paid subscription.

    WHY: Allows users to:
    - Cancel at period end (keep access until paid time expires)
    - Cancel immediately (moved to the free tier now)
    """
    subscription = await orchestrator.cancel_subscription(
        current_user.id,
        reason=request.cancellation_reason,
        immediately=request.cancel_immediately,
    )
    await db.commit()
    await notifier.dispatch(orchestrator.drain_notices())

    return SubscriptionCancelResponse(
        message="Subscription cancelled successfully",
        subscription=SubscriptionResponse.from_subscription(subscription),
        access_until=None if request.cancel_immediately else subscription.current_period_end,
    )


@router.post(
    "/reactivate",
    response_model=SubscriptionReactivateResponse,
    summary="Reactivate subscription",
    description="Undoes a scheduled cancellation or restarts a recently canceled subscription.",
)
async def reactivate_subscription(
    db: AsyncSession = Depends(get_db),
    orchestrator: EntitlementOrchestrator = Depends(get_orchestrator),
    notifier: SubscriptionNotifier = Depends(get_notifier),
    current_user: User = Depends(require_vendor),
):
    result = await orchestrator.reactivate(current_user.id)
    await db.commit()
    await notifier.dispatch(orchestrator.drain_notices())

    return SubscriptionReactivateResponse(
        message="Subscription reactivated successfully",
        path=result.path,
        subscription=SubscriptionResponse.from_subscription(result.subscription),
    )


# ============================================================================
# Admin Endpoints
# ============================================================================


admin_router = APIRouter(prefix="/admin/subscriptions", tags=["Admin"])


@admin_router.get(
    "/analytics",
    response_model=SubscriptionAnalytics,
    summary="Get subscription analytics",
)
async def get_subscription_analytics(
    orchestrator: EntitlementOrchestrator = Depends(get_orchestrator),
    admin: User = Depends(require_admin),
):
    return SubscriptionAnalytics(**await orchestrator.get_analytics())


@admin_router.post(
    "/sweeps/expired",
    response_model=SweepStats,
    summary="Run the expired-period sweep now",
)
async def run_expired_sweep(
    sweep: ReconciliationSweep = Depends(get_sweep),
    admin: User = Depends(require_admin),
):
    logger.info(f"Expired-period sweep triggered by admin {admin.id}")
    return SweepStats(**await sweep.run_expired_sweep())


@admin_router.post(
    "/sweeps/past-due",
    response_model=SweepStats,
    summary="Run the stale past-due sweep now",
)
async def run_past_due_sweep(
    sweep: ReconciliationSweep = Depends(get_sweep),
    admin: User = Depends(require_admin),
):
    logger.info(f"Past-due sweep triggered by admin {admin.id}")
    return SweepStats(**await sweep.run_past_due_sweep())


# ============================================================================
# Stripe Webhooks
# ============================================================================


# Separate router for webhooks (no auth required)
webhooks_router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


@webhooks_router.post(
    "/stripe/subscription",
    response_model=WebhookResponse,
    summary="Stripe subscription webhook",
)
async def stripe_subscription_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    notifier: SubscriptionNotifier = Depends(get_notifier),
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
):
    """
    Handle Stripe subscription webhooks.

    SECURITY (OWASP A02):
    - Verifies webhook signature before processing; failures are a 400
      so the payload is never retried or trusted

    Processing errors after verification are logged and acknowledged.
    Reconciliation sweeps and the process-pending route recover anything
    that was not applied.
    """
    payload = await request.body()
    event = gateway.construct_event(payload, stripe_signature)
    event_type = event.get("type", "unknown")

    dispatcher = WebhookDispatcher(db, gateway)
    try:
        outcome = await dispatcher.dispatch(event)
        await db.commit()
    except Exception as e:
        logger.error(
            f"Error processing webhook {event_type}: {e}",
            extra={"event_id": event.get("id"), "event_type": event_type},
            exc_info=True,
        )
        await db.rollback()
        return WebhookResponse(received=True, message=f"Webhook {event_type} not applied")

    await notifier.dispatch(dispatcher.drain_notices())
    return WebhookResponse(
        received=True,
        outcome=outcome.value,
        message=f"Webhook {event_type} processed",
    )
