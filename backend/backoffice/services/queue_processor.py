"""Notification queue processor

Invoked on a fixed schedule (internal endpoint or in-process task). Each run
claims pending items with a compare-and-swap update, so overlapping runs on
several instances never deliver the same item twice. There is no in-process
backoff between attempts: a failed item goes back to pending and the next
scheduled run retries it until max_attempts is reached.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from backoffice.core.config import settings
from backoffice.core.metrics import queue_runs_counter, queue_items_counter, queue_depth_gauge
from backoffice.core.otel import pipeline_span
from backoffice.db import notification_queue as queue_store
from backoffice.db.email_log import append_log, find_recent_duplicate, LOG_FAILED, LOG_SKIPPED
from backoffice.models.notification_queue import (
    STATUS_SENT,
    STATUS_FAILED,
    STATUS_SKIPPED,
)
from backoffice.services.dispatch import NotificationDispatcher, REASON_DUPLICATE
from backoffice.services.email_service import ResendTransport

logger = logging.getLogger("notification_queue")


@dataclass
class ProcessResult:
    """Counters for one processor run"""
    processed: int = 0
    sent: int = 0
    skipped: int = 0
    skipped_duplicate: int = 0
    failed: int = 0
    retried: int = 0
    errors: List[str] = field(default_factory=list)

    def to_summary(self) -> Dict:
        return {
            "processed": self.processed,
            "sent": self.sent,
            "skipped": self.skipped,
            "skipped_duplicate": self.skipped_duplicate,
            "failed": self.failed,
            "errors": list(self.errors),
        }


def _display_recipients(recipients) -> str:
    if isinstance(recipients, list):
        return ", ".join(str(r) for r in recipients)
    return str(recipients)


class QueueProcessor:
    """Claims, deduplicates, delivers and finalizes pending queue items"""

    def __init__(
        self,
        db: Session,
        transport: Optional[ResendTransport] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc)
    ):
        self.db = db
        self.dispatcher = NotificationDispatcher(db, transport)
        self.clock = clock

    async def run(self, batch_limit: Optional[int] = None) -> ProcessResult:
        """Process up to ``batch_limit`` pending items, oldest first"""
        batch_limit = batch_limit or settings.QUEUE_BATCH_LIMIT
        result = ProcessResult()

        queue_store.release_stale_claims(
            self.db, settings.QUEUE_CLAIM_TIMEOUT_MINUTES, now=self.clock()
        )

        pending = queue_store.fetch_pending(self.db, batch_limit)
        if not pending:
            logger.info("No pending notifications")
        else:
            logger.info(f"Found {len(pending)} pending notifications")

        # Snapshot plain values; the ORM objects go stale once claimed
        snapshots = [
            {
                "id": item.id,
                "template_slug": item.template_slug,
                "recipients": list(item.recipients or []),
                "variables": dict(item.variables or {}),
                "metadata": dict(item.meta or {}),
                "dedup_key": item.dedup_key,
                "attempts": item.attempts,
                "max_attempts": item.max_attempts,
            }
            for item in pending
        ]

        for item in snapshots:
            if not queue_store.claim_item(self.db, item["id"], now=self.clock()):
                logger.info(f"Item {item['id']} already claimed by another run")
                continue
            result.processed += 1
            # The claim incremented attempts in the store
            item["attempts"] += 1
            try:
                with pipeline_span("queue.item", queue_id=item["id"], template=item["template_slug"]):
                    await self._process_item(item, result)
            except Exception as e:
                self.db.rollback()
                logger.error(f"Unexpected error processing {item['id']}: {e}", exc_info=True)
                self._handle_failure(item, str(e) or e.__class__.__name__, result)

        removed = queue_store.cleanup_queue(
            self.db,
            settings.QUEUE_RETENTION_DAYS,
            settings.QUEUE_MAX_PENDING_AGE_HOURS,
            now=self.clock()
        )
        if removed:
            logger.info(f"Cleaned up {removed} old queue items")

        self._update_depth_gauge()
        queue_runs_counter.labels(status='success').inc()
        logger.info(
            f"Processing complete: processed={result.processed} sent={result.sent} "
            f"skipped={result.skipped} skipped_duplicate={result.skipped_duplicate} "
            f"failed={result.failed} retried={result.retried}"
        )
        return result

    async def _process_item(self, item: Dict, result: ProcessResult):
        item_id = item["id"]
        metadata = {**item["metadata"], "queue_id": item_id}
        if item["dedup_key"]:
            metadata["dedup_key"] = item["dedup_key"]

        if item["dedup_key"]:
            duplicate = find_recent_duplicate(
                self.db,
                item["template_slug"],
                item["dedup_key"],
                settings.QUEUE_DEDUP_WINDOW_MINUTES,
                now=self.clock()
            )
            if duplicate is not None:
                logger.info(f"Skipping duplicate {item_id} (dedup_key: {item['dedup_key']})")
                queue_store.finish_item(
                    self.db, item_id, STATUS_SKIPPED,
                    error_message="Duplicate detected", now=self.clock()
                )
                append_log(
                    self.db,
                    status=LOG_SKIPPED,
                    recipient_email=_display_recipients(item["recipients"]),
                    template_slug=item["template_slug"],
                    template_name=item["template_slug"],
                    subject=f"[Duplicado] {item['template_slug']}",
                    error_message="Duplicate detected",
                    variables=item["variables"],
                    metadata={**metadata, "reason": REASON_DUPLICATE},
                    triggered_by="queue",
                )
                result.skipped_duplicate += 1
                queue_items_counter.labels(outcome='skipped_duplicate').inc()
                return

        outcome = await self.dispatcher.deliver(
            item["template_slug"],
            item["recipients"],
            item["variables"],
            metadata=metadata,
            triggered_by="queue",
            log_failures=False,
            log_skipped_tokens=item["attempts"] == 1,
        )

        if outcome.status == STATUS_SENT:
            queue_store.finish_item(self.db, item_id, STATUS_SENT, now=self.clock())
            result.sent += 1
            queue_items_counter.labels(outcome='sent').inc()
            logger.info(f"Notification sent: {item_id} ({item['template_slug']})")
        elif outcome.status == STATUS_SKIPPED:
            queue_store.finish_item(
                self.db, item_id, STATUS_SKIPPED,
                error_message=outcome.reason, now=self.clock()
            )
            result.skipped += 1
            queue_items_counter.labels(outcome='skipped').inc()
        else:
            self._handle_failure(item, outcome.error or "Unknown delivery error", result)

    def _handle_failure(self, item: Dict, error: str, result: ProcessResult):
        item_id = item["id"]
        if item["attempts"] >= item["max_attempts"]:
            queue_store.finish_item(
                self.db, item_id, STATUS_FAILED, error_message=error, now=self.clock()
            )
            result.failed += 1
            result.errors.append(f"{item_id}: {error}")
            queue_items_counter.labels(outcome='failed').inc()
            logger.error(f"Notification {item_id} failed after {item['attempts']} attempts: {error}")

            append_log(
                self.db,
                status=LOG_FAILED,
                recipient_email=_display_recipients(item["recipients"]),
                template_slug=item["template_slug"],
                template_name=item["template_slug"],
                subject=f"[Fila] {item['template_slug']}",
                error_message=f"Falha após {item['max_attempts']} tentativas: {error}",
                variables=item["variables"],
                metadata={
                    "queue_id": item_id,
                    "attempts": item["attempts"],
                    "max_attempts": item["max_attempts"],
                    "dedup_key": item["dedup_key"],
                    "original_error": error,
                },
                triggered_by="queue",
            )
        else:
            queue_store.release_item(self.db, item_id, error_message=error)
            result.retried += 1
            queue_items_counter.labels(outcome='retried').inc()
            logger.warning(
                f"Notification {item_id} attempt {item['attempts']}/{item['max_attempts']} failed, "
                f"will retry: {error}"
            )

    def _update_depth_gauge(self):
        for status, count in queue_store.status_counts(self.db).items():
            queue_depth_gauge.labels(status=status).set(count)
