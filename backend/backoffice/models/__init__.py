"""SQLAlchemy models package - imports all models so they register with Base.metadata"""
from backoffice.models.base import Base
from backoffice.models.user import User
from backoffice.models.subscription import Subscription
from backoffice.models.design_order import DesignOrder
from backoffice.models.processed_event import ProcessedEvent
from backoffice.models.notification_queue import QueueItem
from backoffice.models.email_log import EmailLog
from backoffice.models.email_template import EmailTemplate

# Export all for convenience
__all__ = [
    "Base", "User", "Subscription", "DesignOrder",
    "ProcessedEvent", "QueueItem", "EmailLog", "EmailTemplate"
]
