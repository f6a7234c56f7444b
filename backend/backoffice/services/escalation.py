"""Failure escalation monitor

Alerts operators when the most recent terminal queue outcomes are all
failures. The alert goes straight to the transport: routing it through the
queue would make it depend on the pipeline that is failing.
"""
import logging
from datetime import datetime, timezone
from typing import Callable, List, Optional

from sqlalchemy.orm import Session

from backoffice.core.config import settings
from backoffice.core.metrics import escalation_alerts_counter
from backoffice.db.email_log import has_sent_with_dedup_key
from backoffice.db.notification_queue import recent_terminal_items
from backoffice.models.notification_queue import STATUS_FAILED
from backoffice.services.dispatch import NotificationDispatcher
from backoffice.services.email_service import ResendTransport
from backoffice.services.recipients import get_admin_emails

logger = logging.getLogger("notification_queue")

ALERT_TEMPLATE = "system_alert"


def alert_dedup_key(now: datetime) -> str:
    """One key per UTC hour"""
    return f"{ALERT_TEMPLATE}:consecutive_failures:{now.astimezone(timezone.utc).strftime('%Y-%m-%dT%H')}"


class FailureEscalationMonitor:
    """Raises at most one consecutive-failure alert per hour"""

    def __init__(
        self,
        db: Session,
        transport: Optional[ResendTransport] = None,
        threshold: Optional[int] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc)
    ):
        self.db = db
        self.transport = transport
        self.threshold = threshold or settings.ESCALATION_THRESHOLD
        self.clock = clock

    def consecutive_failures(self) -> int:
        """Length of the failed streak among the most recent terminal items"""
        streak = 0
        for item in recent_terminal_items(self.db, self.threshold):
            if item.status != STATUS_FAILED:
                break
            streak += 1
        return streak

    def operator_emails(self) -> List[str]:
        """ALERT_EMAILS plus current admins, de-duplicated"""
        emails = []
        seen = set()
        for email in settings.alert_email_list + get_admin_emails(self.db):
            if email.lower() not in seen:
                seen.add(email.lower())
                emails.append(email)
        return emails

    async def check(self) -> bool:
        """Send an alert if the failure streak reached the threshold.

        Returns:
            bool: True if an alert was sent by this call
        """
        streak = self.consecutive_failures()
        if streak < self.threshold:
            return False

        now = self.clock()
        dedup_key = alert_dedup_key(now)
        if has_sent_with_dedup_key(self.db, dedup_key):
            logger.info(f"Consecutive failure alert already sent this hour ({dedup_key})")
            escalation_alerts_counter.labels(result='suppressed').inc()
            return False

        recipients = self.operator_emails()
        if not recipients:
            logger.error(f"ALERT: {streak} consecutive failures but no operator addresses configured")
            escalation_alerts_counter.labels(result='no_recipients').inc()
            return False

        logger.warning(f"ALERT: Consecutive failure threshold reached ({streak})")
        outcome = await NotificationDispatcher(self.db, self.transport).deliver(
            ALERT_TEMPLATE,
            recipients,
            {
                "alert_type": "Falhas Consecutivas na Fila de Notificações",
                "alert_message": (
                    f"{streak} notificações falharam consecutivamente. Verifique a configuração "
                    f"do sistema de emails e os logs de erro."
                ),
                "alert_time": now.isoformat(),
            },
            metadata={"dedup_key": dedup_key, "consecutive_failures": streak},
            triggered_by="system",
        )

        if outcome.ok:
            escalation_alerts_counter.labels(result='sent').inc()
            logger.info(f"Alert email sent to {', '.join(recipients)}")
            return True

        escalation_alerts_counter.labels(result='failed').inc()
        logger.error(f"Failed to send consecutive failure alert: {outcome.error or outcome.reason}")
        return False
