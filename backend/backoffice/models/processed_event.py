"""ProcessedEvent model"""
from sqlalchemy import Column, Integer, String, DateTime
from datetime import datetime, timezone
from backoffice.models.base import Base


class ProcessedEvent(Base):
    """Idempotency claim for an externally-sourced webhook event.

    The unique constraint on event_id is the only idempotency signal: a row is
    inserted before any business effect runs and is never updated.
    """
    __tablename__ = "processed_webhook_events"

    id = Column(Integer, primary_key=True, index=True)
    event_id = Column(String(255), unique=True, nullable=False, index=True)
    event_type = Column(String(100), nullable=False, index=True)
    processed_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False, index=True)
