"""Notification enqueuer - the entry point business logic uses to request emails"""
import hashlib
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from backoffice.core.config import settings
from backoffice.core.metrics import notifications_enqueued_counter
from backoffice.db.notification_queue import insert_item
from backoffice.services.dispatch import NotificationDispatcher, REASON_DUPLICATE
from backoffice.services.email_service import ResendTransport
from backoffice.services.recipients import get_admin_user_ids

logger = logging.getLogger("notification_queue")


def build_dedup_key(template_slug: str, recipients: List[str], reference_id: str) -> str:
    """Deterministic key for one logical notification.

    Repeated calls caused by the same upstream event (same template, same
    recipient set, same causal reference) produce the same key. Recipients
    and reference are hashed so the key fits the indexed column however
    many admins a notification fans out to.
    """
    digest = hashlib.sha256(
        f"{','.join(sorted(recipients))}|{reference_id}".encode("utf-8")
    ).hexdigest()
    return f"{template_slug}:{digest}"


async def enqueue(
    db: Session,
    template_slug: str,
    recipients: List[str],
    variables: Dict[str, Any],
    dedup_key: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
    reference_id: Optional[str] = None,
    created_by: Optional[str] = None,
    transport: Optional[ResendTransport] = None
) -> bool:
    """Queue a notification for delivery by the queue processor.

    If the queue write fails the notification is sent directly instead of
    being lost; the fallback's outcome is returned.

    Args:
        db: Database session
        template_slug: Template to render
        recipients: User ids and/or literal email addresses
        variables: Placeholder values for the template
        dedup_key: Explicit dedup key (takes precedence over reference_id)
        metadata: Free-form metadata stored with the item
        reference_id: Causal reference used to derive the dedup key
        created_by: Id of the user that triggered the notification
        transport: Transport used by the fallback path

    Returns:
        bool: True if queued (or delivered by the fallback), False otherwise
    """
    if dedup_key is None and reference_id:
        dedup_key = build_dedup_key(template_slug, recipients, reference_id)

    metadata = dict(metadata or {})
    if reference_id:
        metadata.setdefault("reference_id", reference_id)
    if dedup_key:
        metadata["dedup_key"] = dedup_key

    try:
        item = insert_item(
            db,
            template_slug=template_slug,
            recipients=recipients,
            variables=variables,
            metadata=metadata,
            dedup_key=dedup_key,
            max_attempts=settings.QUEUE_MAX_ATTEMPTS,
            created_by=created_by,
        )
    except SQLAlchemyError as e:
        db.rollback()
        logger.warning(f"Failed to queue {template_slug}, falling back to direct send: {e}")
        notifications_enqueued_counter.labels(path='fallback').inc()
        try:
            outcome = await NotificationDispatcher(db, transport).deliver(
                template_slug, recipients, variables,
                metadata=metadata, triggered_by="fallback",
                dedup_window_minutes=settings.QUEUE_DEDUP_WINDOW_MINUTES
            )
        except SQLAlchemyError as fallback_error:
            # Store is down entirely; nothing left to record the attempt in
            db.rollback()
            logger.error(
                f"Direct send of {template_slug} failed: {fallback_error}", exc_info=True
            )
            return False
        # A duplicate was already delivered by an earlier call
        return outcome.ok or outcome.reason == REASON_DUPLICATE

    notifications_enqueued_counter.labels(path='queue').inc()
    logger.info(f"Queued {template_slug} for {len(recipients)} recipient(s) (id: {item.id})")
    return True


async def notify_admins(
    db: Session,
    template_slug: str,
    variables: Dict[str, Any],
    reference_id: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None
) -> bool:
    """Queue a notification to every current admin"""
    admin_ids = get_admin_user_ids(db)
    if not admin_ids:
        logger.warning(f"No admin users found for {template_slug}")
        return False
    return await enqueue(
        db, template_slug, admin_ids, variables,
        metadata=metadata, reference_id=reference_id
    )
