"""Notification queue routes for the scheduler and operators"""
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from backoffice.core.config import settings
from backoffice.core.metrics import queue_runs_counter
from backoffice.core.security import require_internal_key
from backoffice.db import notification_queue as queue_store
from backoffice.db.session import get_db
from backoffice.models.notification_queue import ALL_STATUSES, STATUS_FAILED, STATUS_SKIPPED
from backoffice.schemas.notifications import (
    EnqueueRequest,
    EnqueueResponse,
    ProcessQueueResponse,
    QueueItemResponse,
    QueueStatsResponse,
)
from backoffice.services.escalation import FailureEscalationMonitor
from backoffice.services.notification_service import enqueue
from backoffice.services.queue_processor import QueueProcessor

router = APIRouter(
    prefix="/api/notifications",
    tags=["notifications"],
    dependencies=[Depends(require_internal_key)]
)
logger = logging.getLogger("notification_queue")


@router.post("/process-queue", response_model=ProcessQueueResponse)
async def process_queue(
    limit: Optional[int] = Query(None, ge=1, le=500),
    db: Session = Depends(get_db)
):
    """Run one queue processor pass followed by the escalation check"""
    try:
        result = await QueueProcessor(db).run(limit or settings.QUEUE_BATCH_LIMIT)
    except Exception as e:
        db.rollback()
        queue_runs_counter.labels(status='failure').inc()
        logger.error(f"Error processing queue: {e}", exc_info=True)
        raise HTTPException(500, "Queue processing failed")

    try:
        escalated = await FailureEscalationMonitor(db).check()
    except Exception as e:
        db.rollback()
        logger.error(f"Failure escalation check failed: {e}", exc_info=True)
        escalated = False

    return {**result.to_summary(), "escalated": escalated}


@router.post("/enqueue", response_model=EnqueueResponse)
async def enqueue_notification(request_data: EnqueueRequest, db: Session = Depends(get_db)):
    """Queue a notification on behalf of an external caller"""
    queued = await enqueue(
        db,
        request_data.template_slug,
        request_data.recipients,
        request_data.variables,
        dedup_key=request_data.dedup_key,
        metadata=request_data.metadata,
        reference_id=request_data.reference_id,
        created_by=request_data.created_by,
    )
    return {"queued": queued}


@router.get("/queue/stats", response_model=QueueStatsResponse)
def queue_stats(db: Session = Depends(get_db)):
    """Counts per status plus the current consecutive failure streak"""
    counts = queue_store.status_counts(db)
    monitor = FailureEscalationMonitor(db)
    return {
        "counts": counts,
        "total": sum(counts.values()),
        "consecutive_failures": monitor.consecutive_failures(),
        "escalation_threshold": monitor.threshold,
    }


@router.get("/queue", response_model=List[QueueItemResponse])
def list_queue(
    status: Optional[str] = None,
    limit: int = Query(50, ge=1, le=500),
    db: Session = Depends(get_db)
):
    """Most recent queue items, optionally filtered by status"""
    if status and status not in ALL_STATUSES:
        raise HTTPException(400, f"Invalid status: {status}")
    return queue_store.list_items(db, status=status, limit=limit)


@router.post("/queue/{item_id}/requeue")
async def requeue_item(item_id: str, db: Session = Depends(get_db)):
    """Manually re-enqueue a failed or skipped item as a new pending item

    The terminal item is left untouched so its history stays intact.
    """
    item = queue_store.get_item(db, item_id)
    if not item:
        raise HTTPException(404, "Queue item not found")
    if item.status not in (STATUS_FAILED, STATUS_SKIPPED):
        raise HTTPException(409, f"Only failed or skipped items can be requeued (status: {item.status})")

    new_item = queue_store.insert_item(
        db,
        template_slug=item.template_slug,
        recipients=item.recipients,
        variables=item.variables,
        metadata={**(item.meta or {}), "requeued_from": item.id},
        dedup_key=item.dedup_key,
        max_attempts=item.max_attempts,
        created_by=item.created_by,
    )
    logger.info(f"Queue item {item.id} requeued as {new_item.id}")
    return {"requeued": True, "id": new_item.id, "requeued_from": item.id}


@router.delete("/queue/processed")
def clear_processed(db: Session = Depends(get_db)):
    """Delete every terminal item"""
    deleted = queue_store.purge_terminal(db)
    logger.info(f"Cleared {deleted} processed queue items")
    return {"deleted": deleted}
