"""Notification dispatch: resolve recipients, render, send, and log.

Shared by the queue processor, the enqueue fallback path and the failure
escalation monitor so every delivery leaves the same Delivery Log trail.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from backoffice.db.email_log import append_log, find_recent_duplicate, LOG_SENT, LOG_FAILED, LOG_SKIPPED
from backoffice.services.email_service import ResendTransport
from backoffice.services.recipients import RecipientResolver, get_admin_emails
from backoffice.services.templates import ADMIN_COPY_PREFIX, load_template, render_template

logger = logging.getLogger(__name__)

# Skip reasons recorded in Delivery Log metadata
REASON_USER_NOT_FOUND = "user_not_found"
REASON_INVALID_FORMAT = "invalid_recipient_format"
REASON_NO_RECIPIENTS = "no_valid_recipients"
REASON_TEMPLATE_INACTIVE = "template_inactive"
REASON_DUPLICATE = "duplicate"


@dataclass
class DeliveryOutcome:
    """Result of one dispatch; status is sent, skipped or failed"""
    status: str
    reason: Optional[str] = None
    error: Optional[str] = None
    provider_id: Optional[str] = None
    addresses: List[str] = field(default_factory=list)
    subject: Optional[str] = None
    template_name: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == LOG_SENT


class NotificationDispatcher:
    """Delivers one notification request through the transport"""

    def __init__(self, db: Session, transport: Optional[ResendTransport] = None):
        self.db = db
        self.transport = transport or ResendTransport()

    def _already_sent(self, template_slug: str, dedup_key: str, window_minutes: int) -> bool:
        try:
            return find_recent_duplicate(self.db, template_slug, dedup_key, window_minutes) is not None
        except SQLAlchemyError as e:
            # Unknown history counts as not sent
            self.db.rollback()
            logger.warning(f"Dedup lookup for {template_slug} failed, sending anyway: {e}")
            return False

    def _log_skipped_tokens(self, template_slug, tokens, reason, error_message, variables, metadata, triggered_by):
        for token in tokens:
            logger.info(f"Skipping recipient {token} for {template_slug}: {reason}")
            append_log(
                self.db,
                status=LOG_SKIPPED,
                recipient_email=token,
                template_slug=template_slug,
                template_name=f"Template: {template_slug}",
                subject=f"[Não enviado] {template_slug}",
                error_message=error_message,
                variables=variables,
                metadata={**metadata, "reason": reason},
                triggered_by=triggered_by,
            )

    async def deliver(
        self,
        template_slug: str,
        recipients: List[str],
        variables: Dict[str, Any],
        metadata: Optional[Dict[str, Any]] = None,
        triggered_by: str = "queue",
        log_failures: bool = True,
        log_skipped_tokens: bool = True,
        dedup_window_minutes: Optional[int] = None
    ) -> DeliveryOutcome:
        """Resolve, render and send a templated notification.

        Args:
            template_slug: Template to render
            recipients: Raw recipient tokens (user ids or addresses)
            variables: Placeholder values
            metadata: Carried into every Delivery Log entry (dedup_key, queue_id)
            triggered_by: Delivery Log origin label
            log_failures: Append a failed log entry when the send fails. The
                queue processor disables this and logs only terminal failures.
            log_skipped_tokens: Append a skipped entry per unresolvable token.
                The queue processor only does this on an item's first attempt.
            dedup_window_minutes: When set and metadata carries a dedup_key,
                skip the send if the same template and key were sent inside
                the window (used by the unqueued fallback path)

        Returns:
            DeliveryOutcome describing what happened; never raises for
            transport or resolution problems
        """
        metadata = dict(metadata or {})
        variables = dict(variables or {})

        dedup_key = metadata.get("dedup_key")
        if dedup_window_minutes and dedup_key:
            if self._already_sent(template_slug, dedup_key, dedup_window_minutes):
                logger.info(f"Skipping {template_slug}, already sent (dedup_key: {dedup_key})")
                append_log(
                    self.db, status=LOG_SKIPPED, recipient_email=", ".join(str(r) for r in recipients),
                    template_slug=template_slug, template_name=template_slug,
                    subject=f"[Duplicado] {template_slug}", error_message="Duplicate detected",
                    variables=variables, metadata={**metadata, "reason": REASON_DUPLICATE},
                    triggered_by=triggered_by,
                )
                return DeliveryOutcome(status=LOG_SKIPPED, reason=REASON_DUPLICATE)

        resolution = RecipientResolver(self.db).resolve(recipients)
        if log_skipped_tokens:
            self._log_skipped_tokens(
                template_slug, resolution.unresolved_refs, REASON_USER_NOT_FOUND,
                "Usuário não encontrado no sistema", variables, metadata, triggered_by
            )
            self._log_skipped_tokens(
                template_slug, resolution.malformed, REASON_INVALID_FORMAT,
                "Formato de destinatário inválido - não é email nem UUID", variables, metadata, triggered_by
            )

        if resolution.is_empty:
            logger.info(f"No valid recipients for {template_slug} after resolution")
            return DeliveryOutcome(status=LOG_SKIPPED, reason=REASON_NO_RECIPIENTS)

        addresses = resolution.addresses
        template = load_template(self.db, template_slug)
        if template is None:
            error = f"Template not found: {template_slug}"
            logger.error(error)
            if log_failures:
                append_log(
                    self.db, status=LOG_FAILED, recipient_email=", ".join(addresses),
                    template_slug=template_slug, error_message=error, variables=variables,
                    metadata=metadata, triggered_by=triggered_by,
                )
            return DeliveryOutcome(status=LOG_FAILED, error=error, addresses=addresses)

        if not template.is_active:
            logger.info(f"Template {template_slug} is inactive, skipping send")
            append_log(
                self.db, status=LOG_SKIPPED, recipient_email=", ".join(addresses),
                template_slug=template_slug, template_name=template.name, subject=template.subject,
                variables=variables, metadata={**metadata, "reason": REASON_TEMPLATE_INACTIVE},
                triggered_by=triggered_by,
            )
            return DeliveryOutcome(
                status=LOG_SKIPPED, reason=REASON_TEMPLATE_INACTIVE,
                addresses=addresses, template_name=template.name
            )

        subject, html = render_template(template, variables)
        result = await self.transport.send(template.sender, addresses, subject, html)

        if not result.ok:
            if log_failures:
                append_log(
                    self.db, status=LOG_FAILED, recipient_email=", ".join(addresses),
                    template_slug=template_slug, template_name=template.name, subject=subject,
                    error_message=result.error, variables=variables,
                    metadata={**metadata, "transport_attempts": result.attempts},
                    triggered_by=triggered_by,
                )
            return DeliveryOutcome(
                status=LOG_FAILED, error=result.error, addresses=addresses,
                subject=subject, template_name=template.name
            )

        # Sent: store errors from here on are logged and the outcome stays sent
        try:
            append_log(
                self.db, status=LOG_SENT, recipient_email=", ".join(addresses),
                template_slug=template_slug, template_name=template.name, subject=subject,
                resend_id=result.provider_id, variables=variables, metadata=metadata,
                triggered_by=triggered_by,
            )
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(
                f"Sent {template_slug} (resend id: {result.provider_id}) but failed to log it: {e}",
                exc_info=True
            )

        if template.copy_to_admins:
            try:
                await self._send_admin_copy(template, addresses, subject, html)
            except SQLAlchemyError as e:
                self.db.rollback()
                logger.warning(f"Admin copy of {template_slug} skipped: {e}")

        return DeliveryOutcome(
            status=LOG_SENT, provider_id=result.provider_id, addresses=addresses,
            subject=subject, template_name=template.name
        )

    async def _send_admin_copy(self, template, addresses: List[str], subject: str, html: str):
        # Best effort: the copy never changes the outcome of the main send
        already = {a.lower() for a in addresses}
        admin_emails = [e for e in get_admin_emails(self.db) if e.lower() not in already]
        if not admin_emails:
            return
        result = await self.transport.send(
            template.sender, admin_emails, f"{ADMIN_COPY_PREFIX} {subject}", html
        )
        if result.ok:
            logger.info(f"Admin copy of {template.slug} sent to {', '.join(admin_emails)}")
        else:
            logger.warning(f"Admin copy of {template.slug} failed: {result.error}")
