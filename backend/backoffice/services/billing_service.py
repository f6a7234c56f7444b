"""Business effects of Stripe events: subscription records, design orders, notifications"""
import logging
from datetime import datetime, timezone, timedelta
from typing import Any, Dict, Optional, Tuple

from sqlalchemy.orm import Session

from backoffice.core.config import settings
from backoffice.models.design_order import DesignOrder
from backoffice.models.subscription import Subscription
from backoffice.services.notification_service import enqueue, notify_admins

logger = logging.getLogger(__name__)

# Stripe event type -> customer email template
EVENT_TEMPLATES: Dict[str, str] = {
    "invoice.payment_succeeded": "payment_success",
    "invoice.payment_failed": "payment_failed",
    "customer.subscription.deleted": "subscription_cancelled",
    "invoice.upcoming": "subscription_expiring",
    "checkout.session.completed": "welcome_client",
}

DESIGN_ORDER_PAID_TEMPLATE = "design_order_paid"
ADMIN_NEW_DESIGN_ORDER_TEMPLATE = "admin_new_design_order"
ADMIN_NEW_CLIENT_TEMPLATE = "admin_new_client"


def _get_stripe_value(obj: Any, key: str, default=None):
    """Safely extract value from Stripe object (supports both dict and attribute access)."""
    if obj is None:
        return default
    if isinstance(obj, dict):
        value = obj.get(key, default)
        return default if value is None else value
    value = getattr(obj, key, None)
    return default if value is None else value


def _event_object(event: Dict) -> Dict:
    return _get_stripe_value(_get_stripe_value(event, "data", {}), "object", {})


def _format_date(ts: Optional[int]) -> str:
    if ts:
        return datetime.fromtimestamp(ts, tz=timezone.utc).strftime("%d/%m/%Y")
    return datetime.now(timezone.utc).strftime("%d/%m/%Y")


def _format_amount(cents: Optional[int]) -> str:
    return f"{(cents or 0) / 100:.2f}"


def _normalize_status(status: Optional[str]) -> str:
    # Trials count as active access
    if status in ("active", "trialing"):
        return "active"
    return status or "active"


def _plan_name_from_invoice(invoice: Any) -> str:
    lines = _get_stripe_value(_get_stripe_value(invoice, "lines", {}), "data", []) or []
    if lines:
        return _get_stripe_value(lines[0], "description", "Plano WebQ")
    return "Plano WebQ"


def _find_subscription_by_customer(db: Session, customer_id: Optional[str]) -> Optional[Subscription]:
    if not customer_id:
        return None
    return db.query(Subscription).filter(Subscription.stripe_customer_id == customer_id).first()


def _customer_recipient(db: Session, email: Optional[str], customer_id: Optional[str]) -> Optional[str]:
    """Customer address from the event, else the subscription owner's user id"""
    if email:
        return email
    sub = _find_subscription_by_customer(db, customer_id)
    if sub:
        return sub.user_id
    return None


def _event_metadata(event: Dict) -> Dict[str, Any]:
    return {
        "stripe_event_id": _get_stripe_value(event, "id"),
        "stripe_event_type": _get_stripe_value(event, "type"),
    }


async def _notify_customer(db: Session, event: Dict, recipient: Optional[str], variables: Dict[str, Any]):
    event_type = _get_stripe_value(event, "type")
    template_slug = EVENT_TEMPLATES[event_type]
    if not recipient:
        logger.info(f"Could not determine customer email for {event_type}, skipping notification")
        return
    await enqueue(
        db,
        template_slug,
        [recipient],
        variables,
        metadata=_event_metadata(event),
        reference_id=_get_stripe_value(event, "id"),
    )


# ============================================================================
# CHECKOUT
# ============================================================================

async def _handle_design_order_paid(event: Dict, session: Any, metadata: Any, db: Session):
    order_id = _get_stripe_value(metadata, "order_id")
    user_id = _get_stripe_value(metadata, "user_id")
    order = db.query(DesignOrder).filter(
        DesignOrder.id == order_id,
        DesignOrder.client_id == user_id
    ).first()
    if not order:
        logger.error(f"Design order {order_id} not found for user {user_id}")
        return

    order.payment_status = "paid"
    order.status = "pending_briefing"
    order.stripe_session_id = _get_stripe_value(session, "id")
    db.commit()
    logger.info(f"Design order {order.id} marked paid, pending briefing")

    customer_details = _get_stripe_value(session, "customer_details", {})
    client_name = _get_stripe_value(customer_details, "name", "Cliente")
    package_name = order.package_name or "Design"
    customer_email = (
        _get_stripe_value(customer_details, "email") or _get_stripe_value(session, "customer_email")
    )
    reference_id = _get_stripe_value(event, "id")

    await enqueue(
        db,
        DESIGN_ORDER_PAID_TEMPLATE,
        [customer_email or order.client_id],
        {
            "client_name": client_name,
            "package_name": package_name,
            "order_id": order.id[:8],
            "briefing_url": f"{settings.FRONTEND_URL}/cliente/design/briefing?order={order.id}",
        },
        metadata=_event_metadata(event),
        reference_id=reference_id,
    )
    await notify_admins(
        db,
        ADMIN_NEW_DESIGN_ORDER_TEMPLATE,
        {
            "client_name": client_name,
            "package_name": package_name,
            "order_url": f"{settings.FRONTEND_URL}/admin/design/pedidos/{order.id}",
        },
        reference_id=reference_id,
        metadata=_event_metadata(event),
    )


async def handle_checkout_completed(event: Dict, db: Session):
    session = _event_object(event)
    metadata = _get_stripe_value(session, "metadata", {})

    if _get_stripe_value(metadata, "package_type") == "design_order":
        await _handle_design_order_paid(event, session, metadata, db)
        return

    user_id = _get_stripe_value(metadata, "user_id")
    if not user_id:
        logger.info(f"Checkout session {_get_stripe_value(session, 'id')} has no user_id metadata, ignoring")
        return

    plan_id = _get_stripe_value(metadata, "plan_id")
    sub = db.query(Subscription).filter(Subscription.user_id == user_id).first()
    if not sub:
        sub = Subscription(user_id=user_id)
        db.add(sub)
    sub.stripe_customer_id = _get_stripe_value(session, "customer")
    sub.stripe_subscription_id = _get_stripe_value(session, "subscription")
    sub.status = "active"
    sub.plan_id = plan_id
    sub.billing_type = "recurring" if _get_stripe_value(session, "mode") == "subscription" else "one_time"
    db.commit()
    logger.info(f"Subscription upserted for user {user_id} (plan: {plan_id}, billing: {sub.billing_type})")

    customer_details = _get_stripe_value(session, "customer_details", {})
    client_name = _get_stripe_value(customer_details, "name", "Cliente")
    plan_name = _get_stripe_value(metadata, "plan_name") or f"Plano {(plan_id or 'essencial').capitalize()}"
    customer_email = (
        _get_stripe_value(customer_details, "email") or _get_stripe_value(session, "customer_email")
    )

    await _notify_customer(db, event, customer_email or user_id, {
        "client_name": client_name,
        "plan_name": plan_name,
        "dashboard_url": f"{settings.FRONTEND_URL}/cliente/onboarding",
    })
    await notify_admins(
        db,
        ADMIN_NEW_CLIENT_TEMPLATE,
        {"client_name": client_name, "plan_name": plan_name},
        reference_id=_get_stripe_value(event, "id"),
        metadata=_event_metadata(event),
    )


# ============================================================================
# SUBSCRIPTION HANDLERS
# ============================================================================

async def handle_subscription_changed(event: Dict, db: Session):
    """customer.subscription.created / customer.subscription.updated"""
    subscription = _event_object(event)
    sub = _find_subscription_by_customer(db, _get_stripe_value(subscription, "customer"))
    if not sub:
        logger.info(f"No local subscription for customer {_get_stripe_value(subscription, 'customer')}")
        return

    sub.stripe_subscription_id = _get_stripe_value(subscription, "id")
    sub.status = _normalize_status(_get_stripe_value(subscription, "status"))
    period_end = _get_stripe_value(subscription, "current_period_end")
    if period_end:
        sub.current_period_end = datetime.fromtimestamp(period_end, tz=timezone.utc)
    db.commit()
    logger.info(f"Subscription status updated for user {sub.user_id}: {sub.status}")


async def handle_subscription_deleted(event: Dict, db: Session):
    subscription = _event_object(event)
    customer_id = _get_stripe_value(subscription, "customer")
    sub = _find_subscription_by_customer(db, customer_id)
    if sub:
        sub.status = "cancelled"
        db.commit()
        logger.info(f"Subscription marked as cancelled for user {sub.user_id}")

    items = _get_stripe_value(_get_stripe_value(subscription, "items", {}), "data", []) or []
    price = _get_stripe_value(items[0], "price", {}) if items else {}
    await _notify_customer(db, event, _customer_recipient(db, None, customer_id), {
        "client_name": "Cliente",
        "plan_name": _get_stripe_value(price, "nickname", "Plano WebQ"),
        "access_until_date": _format_date(_get_stripe_value(subscription, "current_period_end")),
        "reactivate_url": f"{settings.FRONTEND_URL}/cliente/assinatura",
    })


# ============================================================================
# INVOICE HANDLERS
# ============================================================================

def _invoice_context(db: Session, invoice: Any) -> Tuple[Optional[str], Dict[str, Any]]:
    recipient = _customer_recipient(
        db,
        _get_stripe_value(invoice, "customer_email"),
        _get_stripe_value(invoice, "customer")
    )
    variables = {
        "client_name": _get_stripe_value(invoice, "customer_name", "Cliente"),
        "plan_name": _plan_name_from_invoice(invoice),
    }
    return recipient, variables


async def handle_invoice_payment_succeeded(event: Dict, db: Session):
    invoice = _event_object(event)
    recipient, variables = _invoice_context(db, invoice)
    variables.update({
        "amount": _format_amount(_get_stripe_value(invoice, "amount_paid") or _get_stripe_value(invoice, "amount_due")),
        "payment_date": _format_date(None),
        "dashboard_url": f"{settings.FRONTEND_URL}/cliente/dashboard",
    })
    await _notify_customer(db, event, recipient, variables)


async def handle_invoice_payment_failed(event: Dict, db: Session):
    invoice = _event_object(event)
    logger.warning(f"Payment failed for invoice {_get_stripe_value(invoice, 'id', 'unknown')}")
    recipient, variables = _invoice_context(db, invoice)
    variables.update({
        "failure_reason": "Cartão recusado ou limite insuficiente",
        "payment_url": f"{settings.FRONTEND_URL}/cliente/assinatura",
    })
    await _notify_customer(db, event, recipient, variables)


async def handle_invoice_upcoming(event: Dict, db: Session):
    invoice = _event_object(event)
    recipient, variables = _invoice_context(db, invoice)
    due_date = _get_stripe_value(invoice, "due_date")
    if not due_date:
        due_date = int((datetime.now(timezone.utc) + timedelta(days=7)).timestamp())
    variables.update({
        "renewal_date": _format_date(due_date),
        "amount": _format_amount(_get_stripe_value(invoice, "amount_due")),
        "manage_subscription_url": f"{settings.FRONTEND_URL}/cliente/assinatura",
    })
    await _notify_customer(db, event, recipient, variables)
