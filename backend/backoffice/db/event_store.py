"""Event idempotency store access"""
import logging
from datetime import datetime, timezone, timedelta

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from backoffice.models.processed_event import ProcessedEvent

logger = logging.getLogger(__name__)


def claim_event(db: Session, event_id: str, event_type: str) -> bool:
    """Record an event as processed before any of its effects run.

    Returns:
        bool: True if this call inserted the row, False if the event id was
        already present (a prior run or a concurrent duplicate delivery)
    """
    db.add(ProcessedEvent(event_id=event_id, event_type=event_type))
    try:
        db.commit()
        return True
    except IntegrityError:
        db.rollback()
        logger.info(f"Event {event_id} ({event_type}) already claimed")
        return False


def purge_processed_events(db: Session, retention_days: int) -> int:
    """Delete claims older than the retention window. Returns rows removed."""
    cutoff = datetime.now(timezone.utc) - timedelta(days=retention_days)
    deleted = db.query(ProcessedEvent).filter(
        ProcessedEvent.processed_at < cutoff
    ).delete(synchronize_session=False)
    db.commit()
    return deleted
