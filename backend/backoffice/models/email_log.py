"""EmailLog model"""
from sqlalchemy import Column, Integer, String, Text, JSON, DateTime, Index
from datetime import datetime, timezone
from backoffice.models.base import Base


class EmailLog(Base):
    """Append-only delivery history, also the source for dedup lookups"""
    __tablename__ = "email_logs"

    id = Column(Integer, primary_key=True, index=True)
    template_slug = Column(String(100), nullable=True, index=True)
    template_name = Column(String(255), nullable=True)
    recipient_email = Column(Text, nullable=False)
    subject = Column(String(500), nullable=True)
    status = Column(String(20), nullable=False, index=True)
    error_message = Column(Text, nullable=True)
    resend_id = Column(String(255), nullable=True)
    variables = Column(JSON, nullable=False, default=dict)
    meta = Column("metadata", JSON, nullable=False, default=dict)
    dedup_key = Column(String(512), nullable=True, index=True)
    triggered_by = Column(String(20), nullable=False, default="queue")
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False, index=True)

    __table_args__ = (
        Index('ix_email_logs_dedup_lookup', 'template_slug', 'dedup_key', 'created_at'),
    )
