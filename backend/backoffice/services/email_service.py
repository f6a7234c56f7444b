"""Email delivery transport - Resend with bounded retry"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, List, Optional

import resend

from backoffice.core.config import settings
from backoffice.core.metrics import email_send_attempts_counter
from backoffice.core.retry import RetryPolicy, retry_async

logger = logging.getLogger(__name__)


class EmailSendError(Exception):
    """Provider call failed or returned no message id"""


@dataclass
class SendResult:
    """Outcome of one logical send (all transport attempts included)"""
    ok: bool
    provider_id: Optional[str] = None
    error: Optional[str] = None
    attempts: int = 0


def default_send_policy() -> RetryPolicy:
    return RetryPolicy(
        max_attempts=settings.EMAIL_RETRY_ATTEMPTS,
        base_delay=settings.EMAIL_RETRY_BASE_DELAY,
        multiplier=2.0,
        timeout=settings.EMAIL_SEND_TIMEOUT_SECONDS
    )


def _extract_id(response: Any) -> Optional[str]:
    # Resend returns a dict with 'id' on success; older SDKs return an object
    if isinstance(response, dict):
        return response.get('id')
    return getattr(response, 'id', None)


class ResendTransport:
    """Sends one email through Resend, retrying transient failures.

    ``send`` never raises: every failure is folded into a ``SendResult`` so
    callers can update persistent state deterministically.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep
    ):
        self.api_key = api_key
        self.policy = policy or default_send_policy()
        self.sleep = sleep

    def _send_once(self, params: dict) -> str:
        response = resend.Emails.send(params)
        email_id = _extract_id(response)
        if not email_id:
            raise EmailSendError(f"Email send returned invalid response: {response!r}")
        return email_id

    async def send(self, sender: str, to: List[str], subject: str, html: str) -> SendResult:
        api_key = self.api_key or settings.RESEND_API_KEY
        if not api_key:
            logger.warning("RESEND_API_KEY is not set; skipping email")
            email_send_attempts_counter.labels(result='not_configured').inc()
            return SendResult(ok=False, error="RESEND_API_KEY is not set")

        if not to:
            return SendResult(ok=False, error="No recipients")

        resend.api_key = api_key
        params = {
            "from": sender,
            "to": list(to),
            "subject": subject,
            "html": html,
        }
        attempts = 0

        async def _attempt():
            nonlocal attempts
            attempts += 1
            try:
                email_id = await asyncio.to_thread(self._send_once, params)
            except Exception:
                email_send_attempts_counter.labels(result='error').inc()
                raise
            email_send_attempts_counter.labels(result='success').inc()
            return email_id

        try:
            email_id = await retry_async(
                _attempt,
                self.policy,
                sleep=self.sleep,
                operation_name=f"Email send to {', '.join(to)}"
            )
        except asyncio.TimeoutError:
            error = f"Email provider timed out after {self.policy.timeout}s"
            logger.error(f"Failed to send email to {', '.join(to)}: {error}")
            return SendResult(ok=False, error=error, attempts=attempts)
        except Exception as exc:
            logger.error(f"Failed to send email to {', '.join(to)}: {exc}", exc_info=True)
            return SendResult(ok=False, error=str(exc) or exc.__class__.__name__, attempts=attempts)

        logger.info(f"Email sent successfully to {', '.join(to)} (id: {email_id})")
        return SendResult(ok=True, provider_id=email_id, attempts=attempts)
