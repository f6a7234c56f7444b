"""Stripe webhook ingestion

Order of operations for a delivery:
    1. verify the signature over the raw body (400 on failure, no state change)
    2. claim the event id in processed_webhook_events (200 if already claimed)
    3. run the business handler mapped to the event type (500 if it raises)

The claim is committed before the handler runs and is kept when the handler
fails, so a redelivery of a failed event is acknowledged without re-running
its effects. Operators recover those through the notification queue
endpoints.
"""
import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

import stripe
from sqlalchemy.orm import Session

from backoffice.core.config import settings
from backoffice.core.metrics import webhook_events_counter
from backoffice.core.otel import pipeline_span
from backoffice.db.event_store import claim_event
from backoffice.services import billing_service

logger = logging.getLogger("webhook")

EventHandler = Callable[[Dict[str, Any], Session], Awaitable[None]]

# Stripe event type -> business handler. Anything else is acknowledged and ignored.
EVENT_HANDLERS: Dict[str, EventHandler] = {
    "checkout.session.completed": billing_service.handle_checkout_completed,
    "customer.subscription.created": billing_service.handle_subscription_changed,
    "customer.subscription.updated": billing_service.handle_subscription_changed,
    "customer.subscription.deleted": billing_service.handle_subscription_deleted,
    "invoice.payment_succeeded": billing_service.handle_invoice_payment_succeeded,
    "invoice.payment_failed": billing_service.handle_invoice_payment_failed,
    "invoice.upcoming": billing_service.handle_invoice_upcoming,
}


@dataclass
class WebhookResult:
    accepted: bool
    status_code: int
    detail: str
    event_id: Optional[str] = None
    event_type: Optional[str] = None


class WebhookEventHandler:
    """Verifies, claims and dispatches signed Stripe events"""

    def __init__(
        self,
        db: Session,
        handlers: Optional[Dict[str, EventHandler]] = None,
        secret: Optional[str] = None,
        tolerance: Optional[int] = None
    ):
        self.db = db
        self.handlers = EVENT_HANDLERS if handlers is None else handlers
        self.secret = secret if secret is not None else settings.STRIPE_WEBHOOK_SECRET
        self.tolerance = tolerance if tolerance is not None else settings.STRIPE_WEBHOOK_TOLERANCE

    def _reject(self, detail: str) -> WebhookResult:
        webhook_events_counter.labels(outcome='rejected').inc()
        return WebhookResult(accepted=False, status_code=400, detail=detail)

    def _verify(self, raw_body: bytes, signature: Optional[str]):
        """Return (event, None) or (None, rejection)"""
        if not signature:
            logger.warning("Webhook received without stripe-signature header")
            return None, self._reject("Missing stripe-signature header")

        if not self.secret:
            logger.error("Webhook secret not configured")
            return None, self._reject("Webhook secret not configured")

        try:
            payload = raw_body.decode("utf-8")
            stripe.WebhookSignature.verify_header(payload, signature, self.secret, self.tolerance)
        except UnicodeDecodeError:
            logger.error("Invalid webhook payload encoding")
            return None, self._reject("Invalid payload")
        except stripe.SignatureVerificationError as e:
            logger.error(f"Invalid webhook signature: {e}")
            return None, self._reject("Invalid signature")

        try:
            event = json.loads(payload)
        except ValueError as e:
            logger.error(f"Invalid webhook payload: {e}")
            return None, self._reject("Invalid payload")

        if (
            not isinstance(event, dict)
            or not isinstance(event.get("id"), str)
            or not isinstance(event.get("type"), str)
        ):
            logger.error("Webhook payload missing event id or type")
            return None, self._reject("Invalid payload")

        return event, None

    async def handle(self, raw_body: bytes, signature: Optional[str]) -> WebhookResult:
        event, rejection = self._verify(raw_body, signature)
        if rejection is not None:
            return rejection

        event_id = event["id"]
        event_type = event["type"]
        logger.info(f"Processing webhook event {event_id} ({event_type})")

        if not claim_event(self.db, event_id, event_type):
            logger.info(f"Webhook event {event_id} already processed")
            webhook_events_counter.labels(outcome='duplicate').inc()
            return WebhookResult(True, 200, "already_processed", event_id, event_type)

        handler = self.handlers.get(event_type)
        if handler is None:
            logger.info(f"Unhandled webhook event type: {event_type}")
            webhook_events_counter.labels(outcome='ignored').inc()
            return WebhookResult(True, 200, "ignored", event_id, event_type)

        try:
            with pipeline_span("webhook.handle", event_id=event_id, event_type=event_type):
                await handler(event, self.db)
        except Exception as e:
            self.db.rollback()
            logger.error(
                f"Error processing webhook event {event_id} ({event_type}); "
                f"event stays marked processed: {e}",
                exc_info=True
            )
            webhook_events_counter.labels(outcome='error').inc()
            return WebhookResult(False, 500, "processing_error", event_id, event_type)

        webhook_events_counter.labels(outcome='processed').inc()
        return WebhookResult(True, 200, "processed", event_id, event_type)
