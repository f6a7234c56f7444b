"""Delivery log access"""
from datetime import datetime, timezone, timedelta
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from backoffice.models.email_log import EmailLog

LOG_SENT = "sent"
LOG_FAILED = "failed"
LOG_SKIPPED = "skipped"


def append_log(
    db: Session,
    status: str,
    recipient_email: str,
    template_slug: Optional[str] = None,
    template_name: Optional[str] = None,
    subject: Optional[str] = None,
    error_message: Optional[str] = None,
    resend_id: Optional[str] = None,
    variables: Optional[Dict[str, Any]] = None,
    metadata: Optional[Dict[str, Any]] = None,
    triggered_by: str = "queue"
) -> EmailLog:
    """Append one delivery log entry and commit.

    The dedup key travels inside metadata and is copied into its own
    indexed column for lookups.
    """
    metadata = dict(metadata or {})
    entry = EmailLog(
        template_slug=template_slug,
        template_name=template_name,
        recipient_email=recipient_email,
        subject=subject,
        status=status,
        error_message=error_message,
        resend_id=resend_id,
        variables=dict(variables or {}),
        meta=metadata,
        dedup_key=metadata.get("dedup_key"),
        triggered_by=triggered_by,
    )
    db.add(entry)
    db.commit()
    return entry


def find_recent_duplicate(
    db: Session,
    template_slug: str,
    dedup_key: str,
    window_minutes: int,
    now: Optional[datetime] = None
) -> Optional[EmailLog]:
    """Sent entry for the same template and dedup key inside the window"""
    now = now or datetime.now(timezone.utc)
    since = now - timedelta(minutes=window_minutes)
    return db.query(EmailLog).filter(
        EmailLog.template_slug == template_slug,
        EmailLog.dedup_key == dedup_key,
        EmailLog.status == LOG_SENT,
        EmailLog.created_at >= since
    ).first()


def has_sent_with_dedup_key(db: Session, dedup_key: str) -> bool:
    return db.query(EmailLog.id).filter(
        EmailLog.dedup_key == dedup_key,
        EmailLog.status == LOG_SENT
    ).first() is not None
