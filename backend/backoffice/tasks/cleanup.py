"""Background cleanup task for the notification queue and idempotency records"""
import asyncio
import logging
from typing import Dict

from sqlalchemy.orm import Session

from backoffice.core.config import settings
from backoffice.core.metrics import cleanup_runs_counter, cleanup_rows_removed_counter
from backoffice.db.event_store import purge_processed_events
from backoffice.db.notification_queue import cleanup_queue, release_stale_claims
from backoffice.db.session import SessionLocal

cleanup_logger = logging.getLogger("cleanup")


def run_cleanup(db: Session) -> Dict[str, int]:
    """One cleanup pass. Returns rows affected per table."""
    released, failed = release_stale_claims(db, settings.QUEUE_CLAIM_TIMEOUT_MINUTES)
    queue_removed = cleanup_queue(
        db, settings.QUEUE_RETENTION_DAYS, settings.QUEUE_MAX_PENDING_AGE_HOURS
    )
    events_removed = purge_processed_events(db, settings.PROCESSED_EVENT_RETENTION_DAYS)

    cleanup_rows_removed_counter.labels(table='notification_queue').inc(queue_removed)
    cleanup_rows_removed_counter.labels(table='processed_webhook_events').inc(events_removed)

    return {
        "stale_claims_released": released,
        "stale_claims_failed": failed,
        "notification_queue": queue_removed,
        "processed_webhook_events": events_removed,
    }


async def cleanup_task():
    """Background task that prunes old queue items and processed event claims

    Runs every hour to:
    1. Recover items stuck in processing by a crashed run
    2. Delete terminal items past retention and pending items past the age ceiling
    3. Delete processed event claims past their retention window
    """
    while True:
        try:
            await asyncio.sleep(3600)  # Run every hour

            db = SessionLocal()
            try:
                cleanup_logger.info("Starting cleanup task...")
                removed = run_cleanup(db)
                cleanup_logger.info(f"Cleanup complete: {removed}")
                cleanup_runs_counter.labels(status='success').inc()
            finally:
                db.close()

        except asyncio.CancelledError:
            raise
        except Exception as e:
            cleanup_logger.error(f"Error in cleanup task: {e}", exc_info=True)
            cleanup_runs_counter.labels(status='failure').inc()
            await asyncio.sleep(60)
