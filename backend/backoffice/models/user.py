"""User model"""
import uuid
from sqlalchemy import Column, String, DateTime, Boolean
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from backoffice.models.base import Base


class User(Base):
    """Client and operator accounts"""
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    email = Column(String(255), unique=True, nullable=True, index=True)  # Nullable for accounts pending confirmation
    full_name = Column(String(255), nullable=True)
    is_admin = Column(Boolean, default=False, nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    # Relationships
    subscription = relationship("Subscription", back_populates="user", uselist=False, cascade="all, delete-orphan")
    design_orders = relationship("DesignOrder", back_populates="client", cascade="all, delete-orphan")
