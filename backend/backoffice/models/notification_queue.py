"""Notification queue model"""
import uuid
from sqlalchemy import Column, Integer, String, Text, JSON, DateTime, Index
from datetime import datetime, timezone
from backoffice.models.base import Base

STATUS_PENDING = "pending"
STATUS_PROCESSING = "processing"
STATUS_SENT = "sent"
STATUS_FAILED = "failed"
STATUS_SKIPPED = "skipped"

TERMINAL_STATUSES = (STATUS_SENT, STATUS_FAILED, STATUS_SKIPPED)
ALL_STATUSES = (STATUS_PENDING, STATUS_PROCESSING) + TERMINAL_STATUSES

class QueueItem(Base):
    """Durable notification work item, processed by the queue processor"""
    __tablename__ = "notification_queue"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    template_slug = Column(String(100), nullable=False, index=True)
    recipients = Column(JSON, nullable=False, default=list)
    variables = Column(JSON, nullable=False, default=dict)
    meta = Column("metadata", JSON, nullable=False, default=dict)
    status = Column(String(20), nullable=False, default=STATUS_PENDING, index=True)
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)
    error_message = Column(Text, nullable=True)
    dedup_key = Column(String(512), nullable=True, index=True)
    created_by = Column(String(36), nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False, index=True)
    claimed_at = Column(DateTime(timezone=True), nullable=True)
    processed_at = Column(DateTime(timezone=True), nullable=True, index=True)

    __table_args__ = (
        Index('ix_notification_queue_status_created_at', 'status', 'created_at'),
    )
