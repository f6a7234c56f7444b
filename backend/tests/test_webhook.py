"""Stripe webhook ingestion tests"""
import json
import time
import pytest
from unittest.mock import AsyncMock

from backoffice.models.design_order import DesignOrder
from backoffice.models.processed_event import ProcessedEvent
from backoffice.models.notification_queue import QueueItem
from backoffice.models.subscription import Subscription
from backoffice.services.notification_service import build_dedup_key
from backoffice.services.webhook_service import EVENT_HANDLERS, WebhookEventHandler

from conftest import RESEND_TEST_DELIVERED, sign_payload


def _invoice(email=RESEND_TEST_DELIVERED, customer="cus_test123"):
    return {
        "id": "in_test123",
        "customer": customer,
        "customer_email": email,
        "customer_name": "Ana",
        "amount_paid": 4990,
        "amount_due": 4990,
        "lines": {"data": [{"description": "Plano Essencial"}]},
    }


@pytest.mark.critical
class TestWebhookSignature:
    @pytest.mark.asyncio
    async def test_missing_signature_is_rejected(self, db_session, signed_event):
        body, _ = signed_event("invoice.payment_succeeded", _invoice())

        result = await WebhookEventHandler(db_session).handle(body, None)

        assert result.status_code == 400
        assert result.accepted is False
        assert db_session.query(ProcessedEvent).count() == 0

    @pytest.mark.asyncio
    async def test_wrong_secret_is_rejected(self, db_session, signed_event):
        body, signature = signed_event("invoice.payment_succeeded", _invoice(), secret="whsec_other")

        result = await WebhookEventHandler(db_session).handle(body, signature)

        assert result.status_code == 400
        assert db_session.query(ProcessedEvent).count() == 0
        assert db_session.query(QueueItem).count() == 0

    @pytest.mark.asyncio
    async def test_tampered_body_is_rejected(self, db_session, signed_event):
        body, signature = signed_event("invoice.payment_succeeded", _invoice())
        tampered = body.replace(b"4990", b"1")

        result = await WebhookEventHandler(db_session).handle(tampered, signature)

        assert result.status_code == 400

    @pytest.mark.asyncio
    async def test_expired_timestamp_is_rejected(self, db_session):
        payload = json.dumps({"id": "evt_old", "type": "invoice.payment_succeeded", "data": {"object": {}}})
        signature = sign_payload(payload, timestamp=int(time.time()) - 3600)

        result = await WebhookEventHandler(db_session).handle(payload.encode(), signature)

        assert result.status_code == 400

    @pytest.mark.asyncio
    async def test_unconfigured_secret_rejects_everything(self, db_session, signed_event):
        body, signature = signed_event("invoice.payment_succeeded", _invoice())

        result = await WebhookEventHandler(db_session, secret="").handle(body, signature)

        assert result.status_code == 400

    @pytest.mark.asyncio
    async def test_signed_payload_without_event_id_is_rejected(self, db_session):
        payload = json.dumps({"type": "invoice.payment_succeeded"})

        result = await WebhookEventHandler(db_session).handle(payload.encode(), sign_payload(payload))

        assert result.status_code == 400
        assert db_session.query(ProcessedEvent).count() == 0


@pytest.mark.critical
class TestWebhookIdempotency:
    @pytest.mark.asyncio
    async def test_duplicate_delivery_runs_effects_once(self, db_session, signed_event):
        body, signature = signed_event("invoice.payment_succeeded", _invoice(), event_id="evt_dup")
        handler = WebhookEventHandler(db_session)

        first = await handler.handle(body, signature)
        second = await handler.handle(body, signature)

        assert (first.status_code, first.detail) == (200, "processed")
        assert (second.status_code, second.detail) == (200, "already_processed")
        assert db_session.query(ProcessedEvent).filter(ProcessedEvent.event_id == "evt_dup").count() == 1
        assert db_session.query(QueueItem).count() == 1

    @pytest.mark.asyncio
    async def test_handler_error_returns_500_and_keeps_claim(self, db_session, signed_event):
        failing = AsyncMock(side_effect=RuntimeError("database exploded"))
        handler = WebhookEventHandler(db_session, handlers={"invoice.payment_succeeded": failing})
        body, signature = signed_event("invoice.payment_succeeded", _invoice(), event_id="evt_fail")

        first = await handler.handle(body, signature)
        redelivery = await handler.handle(body, signature)

        assert first.status_code == 500
        assert db_session.query(ProcessedEvent).filter(ProcessedEvent.event_id == "evt_fail").count() == 1
        # The claim survives the failure, so the redelivery is acknowledged without re-running
        assert (redelivery.status_code, redelivery.detail) == (200, "already_processed")
        assert failing.await_count == 1

    @pytest.mark.asyncio
    async def test_unmapped_event_is_acknowledged_noop(self, db_session, signed_event):
        body, signature = signed_event("charge.refund.updated", {"id": "re_1"})

        result = await WebhookEventHandler(db_session).handle(body, signature)

        assert (result.status_code, result.detail) == (200, "ignored")
        assert db_session.query(QueueItem).count() == 0

    def test_event_mapping_is_explicit(self):
        assert set(EVENT_HANDLERS) == {
            "checkout.session.completed",
            "customer.subscription.created",
            "customer.subscription.updated",
            "customer.subscription.deleted",
            "invoice.payment_succeeded",
            "invoice.payment_failed",
            "invoice.upcoming",
        }


@pytest.mark.high
class TestBusinessHandlers:
    @pytest.mark.asyncio
    async def test_invoice_paid_queues_payment_success(self, db_session, signed_event):
        body, signature = signed_event("invoice.payment_succeeded", _invoice(), event_id="evt_paid")

        await WebhookEventHandler(db_session).handle(body, signature)

        item = db_session.query(QueueItem).one()
        assert item.template_slug == "payment_success"
        assert item.recipients == [RESEND_TEST_DELIVERED]
        assert item.variables["amount"] == "49.90"
        assert item.dedup_key == build_dedup_key("payment_success", [RESEND_TEST_DELIVERED], "evt_paid")
        assert item.meta["stripe_event_id"] == "evt_paid"

    @pytest.mark.asyncio
    async def test_invoice_without_email_falls_back_to_subscription_owner(self, db_session, signed_event, make_user):
        user = make_user("owner")
        db_session.add(Subscription(user_id=user.id, stripe_customer_id="cus_owner"))
        db_session.commit()
        body, signature = signed_event("invoice.payment_failed", _invoice(email=None, customer="cus_owner"))

        await WebhookEventHandler(db_session).handle(body, signature)

        item = db_session.query(QueueItem).one()
        assert item.template_slug == "payment_failed"
        assert item.recipients == [user.id]

    @pytest.mark.asyncio
    async def test_invoice_without_any_recipient_queues_nothing(self, db_session, signed_event):
        body, signature = signed_event("invoice.upcoming", _invoice(email=None, customer="cus_unknown"))

        result = await WebhookEventHandler(db_session).handle(body, signature)

        assert result.status_code == 200
        assert db_session.query(QueueItem).count() == 0

    @pytest.mark.asyncio
    async def test_checkout_creates_subscription_and_notifies(self, db_session, signed_event, make_user, admin_user):
        client = make_user("newclient")
        session = {
            "id": "cs_test123",
            "mode": "subscription",
            "customer": "cus_new",
            "subscription": "sub_new",
            "customer_details": {"email": client.email, "name": "Nova Cliente"},
            "metadata": {"user_id": client.id, "plan_id": "essencial"},
        }
        body, signature = signed_event("checkout.session.completed", session, event_id="evt_checkout")

        result = await WebhookEventHandler(db_session).handle(body, signature)

        assert result.status_code == 200
        sub = db_session.query(Subscription).filter(Subscription.user_id == client.id).one()
        assert (sub.stripe_customer_id, sub.status, sub.billing_type) == ("cus_new", "active", "recurring")

        slugs = {i.template_slug: i for i in db_session.query(QueueItem).all()}
        assert set(slugs) == {"welcome_client", "admin_new_client"}
        assert slugs["welcome_client"].recipients == [client.email]
        assert slugs["admin_new_client"].recipients == [admin_user.id]

    @pytest.mark.asyncio
    async def test_design_order_checkout_marks_order_paid(self, db_session, signed_event, make_user, admin_user):
        client = make_user("designclient")
        order = DesignOrder(client_id=client.id, package_name="Logo Premium")
        db_session.add(order)
        db_session.commit()
        session = {
            "id": "cs_design",
            "mode": "payment",
            "customer_details": {"email": client.email, "name": "Cliente Design"},
            "metadata": {"package_type": "design_order", "order_id": order.id, "user_id": client.id},
        }
        body, signature = signed_event("checkout.session.completed", session)

        await WebhookEventHandler(db_session).handle(body, signature)

        db_session.refresh(order)
        assert (order.payment_status, order.status, order.stripe_session_id) == ("paid", "pending_briefing", "cs_design")
        slugs = sorted(i.template_slug for i in db_session.query(QueueItem).all())
        assert slugs == ["admin_new_design_order", "design_order_paid"]

    @pytest.mark.asyncio
    async def test_subscription_deleted_cancels_and_notifies(self, db_session, signed_event, make_user):
        user = make_user("leaving")
        db_session.add(Subscription(user_id=user.id, stripe_customer_id="cus_leaving", status="active"))
        db_session.commit()
        body, signature = signed_event("customer.subscription.deleted", {
            "id": "sub_leaving", "customer": "cus_leaving", "current_period_end": 1767225600,
        })

        await WebhookEventHandler(db_session).handle(body, signature)

        sub = db_session.query(Subscription).filter(Subscription.user_id == user.id).one()
        assert sub.status == "cancelled"
        item = db_session.query(QueueItem).one()
        assert item.template_slug == "subscription_cancelled"
        assert item.recipients == [user.id]

    @pytest.mark.asyncio
    async def test_subscription_updated_changes_status_without_notification(self, db_session, signed_event, make_user):
        user = make_user("updating")
        db_session.add(Subscription(user_id=user.id, stripe_customer_id="cus_upd", status="active"))
        db_session.commit()
        body, signature = signed_event("customer.subscription.updated", {
            "id": "sub_upd", "customer": "cus_upd", "status": "past_due", "current_period_end": 1767225600,
        })

        await WebhookEventHandler(db_session).handle(body, signature)

        sub = db_session.query(Subscription).filter(Subscription.user_id == user.id).one()
        assert (sub.status, sub.stripe_subscription_id) == ("past_due", "sub_upd")
        assert db_session.query(QueueItem).count() == 0


@pytest.mark.critical
class TestWebhookEndpoint:
    def test_webhook_route_processes_signed_event(self, client, db_session, signed_event):
        body, signature = signed_event("invoice.payment_succeeded", _invoice(), event_id="evt_http")

        response = client.post("/webhook", content=body, headers={"stripe-signature": signature})

        assert response.status_code == 200
        assert response.json()["status"] == "processed"
        assert db_session.query(ProcessedEvent).count() == 1

    def test_stripe_alias_route_rejects_bad_signature(self, client, signed_event):
        body, _ = signed_event("invoice.payment_succeeded", _invoice())

        response = client.post("/api/stripe/webhook", content=body, headers={"stripe-signature": "t=1,v1=bad"})

        assert response.status_code == 400

    def test_missing_signature_header_returns_400(self, client, signed_event):
        body, _ = signed_event("invoice.payment_succeeded", _invoice())

        response = client.post("/webhook", content=body)

        assert response.status_code == 400
        assert response.json()["error"] == "Missing stripe-signature header"
