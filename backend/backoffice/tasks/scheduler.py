"""In-process scheduler for the notification queue

Deployments normally trigger POST /api/notifications/process-queue from an
external scheduler; this loop is for single-instance setups
(QUEUE_SCHEDULER_ENABLED). Running both is safe because items are claimed
with a compare-and-swap update.
"""
import asyncio
import logging

from backoffice.core.config import settings
from backoffice.core.metrics import queue_runs_counter
from backoffice.db.session import SessionLocal
from backoffice.services.escalation import FailureEscalationMonitor
from backoffice.services.queue_processor import QueueProcessor

logger = logging.getLogger("notification_queue")


async def run_queue_once() -> dict:
    """One processor pass plus escalation check with its own session"""
    db = SessionLocal()
    try:
        result = await QueueProcessor(db).run(settings.QUEUE_BATCH_LIMIT)
        escalated = await FailureEscalationMonitor(db).check()
        return {**result.to_summary(), "escalated": escalated}
    finally:
        db.close()


async def notification_queue_task():
    """Background task that processes the notification queue on a fixed interval"""
    interval = settings.QUEUE_SCHEDULER_INTERVAL_SECONDS
    logger.info(f"Notification queue scheduler started (every {interval}s)")
    while True:
        try:
            await asyncio.sleep(interval)
            summary = await run_queue_once()
            if summary["processed"]:
                logger.info(f"Scheduled queue run: {summary}")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Error in notification queue scheduler: {e}", exc_info=True)
            queue_runs_counter.labels(status='failure').inc()
