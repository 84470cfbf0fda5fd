"""
Integration tests for the Stripe webhook endpoint.

WHAT: Signed webhook deliveries posted to the API, end to end.

WHY: The webhook route is the only unauthenticated endpoint. These tests
ensure:
1. Unsigned or tampered payloads are rejected before any processing
2. A checkout followed by its completion webhook produces a trialing
   paid row with the period running one interval past the trial
3. Redelivered events are acknowledged without being applied twice
4. Processing failures after verification are acknowledged, not retried

HOW: Payloads are signed with the test webhook secret and verified with
the real Stripe verification code.
"""

import pytest
from datetime import datetime, timedelta
from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from billing_engine.dao.billing_event import BillingEventDAO
from billing_engine.dao.subscription import SubscriptionDAO
from billing_engine.models.base import utcnow
from billing_engine.models.plan import BillingInterval
from billing_engine.models.subscription import SubscriptionStatus
from billing_engine.services.billing_periods import resolve_period_end
from billing_engine.services.entitlement_orchestrator import EntitlementOrchestrator
from billing_engine.services.webhook_dispatcher import WebhookDispatcher

from tests.factories import (
    SubscriptionFactory,
    checkout_session_object,
    invoice_object,
    make_event,
)
from tests.fakes import encode_event, sign_payload


WEBHOOK_URL = "/api/webhooks/stripe/subscription"


async def _post_event(client: AsyncClient, event: dict, signature: str = None):
    payload = encode_event(event)
    return await client.post(
        WEBHOOK_URL,
        content=payload,
        headers={
            "Content-Type": "application/json",
            "Stripe-Signature": signature if signature is not None else sign_payload(payload),
        },
    )


class TestWebhookSignature:
    """Integration tests for signature verification."""

    @pytest.mark.asyncio
    async def test_missing_signature_rejected(self, client: AsyncClient):
        response = await client.post(WEBHOOK_URL, content=b"{}")

        assert response.status_code == 400
        assert response.json()["error_code"] == "INVALID_SIGNATURE"

    @pytest.mark.asyncio
    async def test_wrong_secret_rejected(self, client: AsyncClient, db_session: AsyncSession):
        event = make_event("invoice.payment_failed", invoice_object("sub_1"), event_id="evt_forged")
        payload = encode_event(event)

        response = await _post_event(
            client, event, signature=sign_payload(payload, secret="whsec_attacker")
        )

        assert response.status_code == 400
        # Nothing was recorded for the forged event
        assert await BillingEventDAO(db_session).get_by_event_id("evt_forged") is None


class TestCheckoutFlow:
    """End-to-end checkout: API call, processor confirmation, webhook."""

    @pytest.mark.asyncio
    async def test_checkout_then_completion_webhook(
        self,
        client: AsyncClient,
        db_session: AsyncSession,
        gateway,
        vendor,
        vendor_headers,
        free_plan,
        standard_plan,
    ):
        """
        Test the full signup-to-trial path.

        WHY: Right after checkout the processor reports the trial end as
        the period end; the local row must run one billing interval past it.
        """
        free = await EntitlementOrchestrator(db_session, gateway).bootstrap_free_subscription(vendor.id)
        await db_session.commit()

        checkout = await client.post(
            "/api/subscriptions/checkout",
            headers=vendor_headers,
            json={"plan_id": standard_plan.id},
        )
        assert checkout.status_code == 200
        session_id = checkout.json()["checkout_session_id"]
        customer_id = gateway.checkout_sessions[0]["customer_id"]

        # The vendor completes the hosted checkout
        trial_end = utcnow().replace(microsecond=0) + timedelta(days=7)
        gs = gateway.add_subscription(
            customer_id,
            "price_standard",
            status="trialing",
            trial_end=trial_end,
            metadata=gateway.checkout_sessions[0]["metadata"],
        )
        event = make_event(
            "checkout.session.completed",
            checkout_session_object(
                gs.id,
                vendor.id,
                standard_plan.id,
                session_id=session_id,
                customer=customer_id,
            ),
            event_id="evt_checkout",
        )

        response = await _post_event(client, event)

        assert response.status_code == 200
        assert response.json()["outcome"] == "applied"

        current = await client.get("/api/subscriptions/current", headers=vendor_headers)
        data = current.json()
        assert data["status"] == "trialing"
        assert data["plan_id"] == standard_plan.id
        assert datetime.fromisoformat(data["trial_end"]) == trial_end
        assert datetime.fromisoformat(data["current_period_end"]) == resolve_period_end(
            trial_end, BillingInterval.MONTH, 1, trial_end
        )

        old_free = await SubscriptionDAO(db_session).get_fresh(free.id)
        assert old_free.status == SubscriptionStatus.CANCELED
        assert old_free.meta.superseded_by_subscription_id == data["id"]

        # Redelivery is acknowledged but not applied again
        again = await _post_event(client, event)
        assert again.status_code == 200
        assert again.json()["outcome"] == "no_op"
        rows = await SubscriptionDAO(db_session).list_for_user(vendor.id)
        assert len(rows) == 2


class TestPaymentFailureWebhooks:
    """Integration tests for dunning through the webhook endpoint."""

    @pytest.mark.asyncio
    async def test_failure_marks_past_due(
        self, client: AsyncClient, db_session: AsyncSession, vendor, standard_plan
    ):
        sub = await SubscriptionFactory.create_paid(db_session, vendor, standard_plan)

        response = await _post_event(
            client,
            make_event(
                "invoice.payment_failed",
                invoice_object(sub.stripe_subscription_id, invoice_id="in_1", attempt_count=1),
            ),
        )

        assert response.status_code == 200
        assert response.json()["outcome"] == "applied"
        fresh = await SubscriptionDAO(db_session).get_fresh(sub.id)
        assert fresh.status == SubscriptionStatus.PAST_DUE
        assert fresh.meta.payment_failure_count == 1

    @pytest.mark.asyncio
    async def test_unknown_event_type_ignored(self, client: AsyncClient):
        response = await _post_event(
            client, make_event("customer.updated", {"id": "cus_1", "object": "customer"})
        )

        assert response.status_code == 200
        assert response.json()["outcome"] == "ignored"


class TestWebhookProcessingErrors:
    """Integration tests for failures after verification."""

    @pytest.mark.asyncio
    async def test_processing_error_is_acknowledged(
        self, client: AsyncClient, db_session: AsyncSession, monkeypatch, vendor, standard_plan
    ):
        """
        Test that a failing handler does not cause endless redelivery.

        WHY: The reconciliation sweeps repair whatever a failed webhook
        would have applied.
        """
        sub = await SubscriptionFactory.create_paid(db_session, vendor, standard_plan)
        # The route rolls back the shared session, expiring loaded rows
        sub_id = sub.id
        stripe_subscription_id = sub.stripe_subscription_id

        async def broken(self, event):
            raise RuntimeError("database unavailable")

        monkeypatch.setattr(WebhookDispatcher, "dispatch", broken)

        response = await _post_event(
            client,
            make_event("invoice.payment_failed", invoice_object(stripe_subscription_id)),
        )

        assert response.status_code == 200
        data = response.json()
        assert data["received"] is True
        assert data["outcome"] is None
        assert data["message"] == "Webhook invoice.payment_failed not applied"
        fresh = await SubscriptionDAO(db_session).get_fresh(sub_id)
        assert fresh.status == SubscriptionStatus.ACTIVE
