"""Notification queue store access

Every status transition goes through a conditional UPDATE keyed on the
expected prior status, so a terminal item is never moved again and two
overlapping processor runs cannot both own the same item.
"""
import logging
from datetime import datetime, timezone, timedelta
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import func, update
from sqlalchemy.orm import Session

from backoffice.models.notification_queue import (
    QueueItem,
    STATUS_PENDING,
    STATUS_PROCESSING,
    STATUS_FAILED,
    TERMINAL_STATUSES,
    ALL_STATUSES,
)

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def insert_item(
    db: Session,
    template_slug: str,
    recipients: List[str],
    variables: Dict[str, Any],
    metadata: Optional[Dict[str, Any]] = None,
    dedup_key: Optional[str] = None,
    max_attempts: int = 3,
    created_by: Optional[str] = None
) -> QueueItem:
    """Insert a pending item and commit"""
    item = QueueItem(
        template_slug=template_slug,
        recipients=list(recipients),
        variables=dict(variables or {}),
        meta=dict(metadata or {}),
        status=STATUS_PENDING,
        attempts=0,
        max_attempts=max_attempts,
        dedup_key=dedup_key,
        created_by=created_by,
    )
    db.add(item)
    db.commit()
    db.refresh(item)
    return item


def get_item(db: Session, item_id: str) -> Optional[QueueItem]:
    return db.query(QueueItem).filter(QueueItem.id == item_id).first()


def fetch_pending(db: Session, limit: int) -> List[QueueItem]:
    """Pending items with attempts left, oldest first"""
    return db.query(QueueItem).filter(
        QueueItem.status == STATUS_PENDING,
        QueueItem.attempts < QueueItem.max_attempts
    ).order_by(QueueItem.created_at.asc()).limit(limit).all()


def claim_item(db: Session, item_id: str, now: Optional[datetime] = None) -> bool:
    """Compare-and-swap pending -> processing, incrementing attempts.

    Returns:
        bool: True when this caller owns the item, False when another run
        claimed it first (or it is no longer pending)
    """
    now = now or _utcnow()
    result = db.execute(
        update(QueueItem)
        .where(
            QueueItem.id == item_id,
            QueueItem.status == STATUS_PENDING,
            QueueItem.attempts < QueueItem.max_attempts
        )
        .values(
            status=STATUS_PROCESSING,
            attempts=QueueItem.attempts + 1,
            claimed_at=now
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount == 1


def finish_item(
    db: Session,
    item_id: str,
    status: str,
    error_message: Optional[str] = None,
    now: Optional[datetime] = None
) -> bool:
    """Move a claimed item to a terminal status"""
    if status not in TERMINAL_STATUSES:
        raise ValueError(f"Not a terminal status: {status}")
    result = db.execute(
        update(QueueItem)
        .where(QueueItem.id == item_id, QueueItem.status == STATUS_PROCESSING)
        .values(status=status, error_message=error_message, processed_at=now or _utcnow())
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount == 1


def release_item(db: Session, item_id: str, error_message: Optional[str] = None) -> bool:
    """Return a claimed item to pending so a later run retries it"""
    result = db.execute(
        update(QueueItem)
        .where(QueueItem.id == item_id, QueueItem.status == STATUS_PROCESSING)
        .values(status=STATUS_PENDING, error_message=error_message, claimed_at=None)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount == 1


def release_stale_claims(
    db: Session,
    timeout_minutes: int,
    now: Optional[datetime] = None
) -> Tuple[int, int]:
    """Recover items left in processing by a run that never finished.

    Returns:
        Tuple of (items returned to pending, items failed because their
        attempts were already exhausted)
    """
    now = now or _utcnow()
    cutoff = now - timedelta(minutes=timeout_minutes)
    stale = (
        QueueItem.status == STATUS_PROCESSING,
        QueueItem.claimed_at < cutoff,
    )

    failed = db.execute(
        update(QueueItem)
        .where(*stale, QueueItem.attempts >= QueueItem.max_attempts)
        .values(
            status=STATUS_FAILED,
            processed_at=now,
            error_message="Claim expired after final attempt"
        )
        .execution_options(synchronize_session=False)
    ).rowcount
    released = db.execute(
        update(QueueItem)
        .where(*stale, QueueItem.attempts < QueueItem.max_attempts)
        .values(status=STATUS_PENDING, claimed_at=None)
        .execution_options(synchronize_session=False)
    ).rowcount
    db.commit()

    if released or failed:
        logger.warning(f"Recovered stale claims: {released} released, {failed} failed")
    return released, failed


def cleanup_queue(
    db: Session,
    retention_days: int,
    max_pending_age_hours: int,
    now: Optional[datetime] = None
) -> int:
    """Delete old terminal items and pending items past the age ceiling"""
    now = now or _utcnow()
    terminal_cutoff = now - timedelta(days=retention_days)
    pending_cutoff = now - timedelta(hours=max_pending_age_hours)

    terminal_deleted = db.query(QueueItem).filter(
        QueueItem.status.in_(TERMINAL_STATUSES),
        func.coalesce(QueueItem.processed_at, QueueItem.created_at) < terminal_cutoff
    ).delete(synchronize_session=False)
    pending_deleted = db.query(QueueItem).filter(
        QueueItem.status == STATUS_PENDING,
        QueueItem.created_at < pending_cutoff
    ).delete(synchronize_session=False)
    db.commit()

    if pending_deleted:
        logger.warning(f"Dropped {pending_deleted} pending items older than {max_pending_age_hours}h")
    return terminal_deleted + pending_deleted


def purge_terminal(db: Session) -> int:
    """Delete every terminal item regardless of age (operator action)"""
    deleted = db.query(QueueItem).filter(
        QueueItem.status.in_(TERMINAL_STATUSES)
    ).delete(synchronize_session=False)
    db.commit()
    return deleted


def recent_terminal_items(db: Session, limit: int) -> List[QueueItem]:
    """Most recently finished items, newest first"""
    return db.query(QueueItem).filter(
        QueueItem.status.in_(TERMINAL_STATUSES),
        QueueItem.processed_at.isnot(None)
    ).order_by(QueueItem.processed_at.desc()).limit(limit).all()


def status_counts(db: Session) -> Dict[str, int]:
    counts = {status: 0 for status in ALL_STATUSES}
    rows = db.query(QueueItem.status, func.count(QueueItem.id)).group_by(QueueItem.status).all()
    for status, count in rows:
        counts[status] = count
    return counts


def list_items(db: Session, status: Optional[str] = None, limit: int = 50) -> List[QueueItem]:
    query = db.query(QueueItem)
    if status:
        query = query.filter(QueueItem.status == status)
    return query.order_by(QueueItem.created_at.desc()).limit(limit).all()
