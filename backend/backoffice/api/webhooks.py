"""Stripe webhook routes"""
import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from backoffice.db.session import get_db
from backoffice.services.webhook_service import WebhookEventHandler

router = APIRouter(tags=["webhooks"])
logger = logging.getLogger(__name__)


@router.post("/webhook")
@router.post("/api/stripe/webhook")
async def stripe_webhook(request: Request, db: Session = Depends(get_db)):
    """Handle Stripe webhook events

    The body is read as raw bytes: signature verification needs it exactly
    as sent.
    """
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")

    result = await WebhookEventHandler(db).handle(payload, sig_header)

    if result.status_code == 200:
        content = {"received": True, "status": result.detail}
    else:
        content = {"error": result.detail}
    if result.event_id:
        content["event_id"] = result.event_id
    return JSONResponse(status_code=result.status_code, content=content)
