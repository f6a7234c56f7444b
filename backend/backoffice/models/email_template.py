"""EmailTemplate model"""
from sqlalchemy import Column, Integer, String, Text, Boolean, DateTime
from datetime import datetime, timezone
from backoffice.models.base import Base


class EmailTemplate(Base):
    """Transactional email template, addressed by slug"""
    __tablename__ = "system_email_templates"

    id = Column(Integer, primary_key=True, index=True)
    slug = Column(String(100), unique=True, nullable=False, index=True)
    name = Column(String(255), nullable=False)
    subject = Column(String(500), nullable=False)
    html_template = Column(Text, nullable=False)
    sender_email = Column(String(255), nullable=True)
    sender_name = Column(String(255), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    copy_to_admins = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)
