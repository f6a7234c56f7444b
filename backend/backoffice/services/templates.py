"""Email template lookup and rendering"""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from backoffice.core.config import settings
from backoffice.models.email_template import EmailTemplate

logger = logging.getLogger(__name__)

ADMIN_COPY_PREFIX = "[Cópia Admin]"


@dataclass(frozen=True)
class TemplateContent:
    slug: str
    name: str
    subject: str
    html_template: str
    sender_email: Optional[str] = None
    sender_name: Optional[str] = None
    is_active: bool = True
    copy_to_admins: bool = False

    @property
    def sender(self) -> str:
        email = self.sender_email or settings.RESEND_FROM_EMAIL
        name = self.sender_name or settings.RESEND_FROM_NAME
        return f"{name} <{email}>"


# Used when the operator has not customised these templates in the database
BUILTIN_TEMPLATES = {
    "system_alert": TemplateContent(
        slug="system_alert",
        name="Alerta do Sistema",
        subject="[Alerta] {{alert_type}}",
        html_template=(
            "<h2>{{alert_type}}</h2>"
            "<p>{{alert_message}}</p>"
            "<p style=\"color: #64748b; font-size: 13px;\">Horário: {{alert_time}}</p>"
        ),
    ),
}


def load_template(db: Session, slug: str) -> Optional[TemplateContent]:
    """Template by slug from the database, else a built-in default, else None"""
    row = db.query(EmailTemplate).filter(EmailTemplate.slug == slug).first()
    if row is None:
        return BUILTIN_TEMPLATES.get(slug)
    return TemplateContent(
        slug=row.slug,
        name=row.name,
        subject=row.subject,
        html_template=row.html_template,
        sender_email=row.sender_email,
        sender_name=row.sender_name,
        is_active=bool(row.is_active),
        copy_to_admins=bool(row.copy_to_admins),
    )


def render_text(text: str, variables: Dict[str, Any]) -> str:
    """Replace each literal ``{{name}}`` placeholder with its variable value"""
    for key, value in (variables or {}).items():
        text = text.replace("{{" + str(key) + "}}", "" if value is None else str(value))
    return text


def wrap_layout(subject: str, body_html: str) -> str:
    """Wrap rendered body in the shared email layout"""
    year = datetime.now(timezone.utc).year
    return f"""<!DOCTYPE html>
<html lang="pt-BR">
<head>
  <meta http-equiv="Content-Type" content="text/html; charset=utf-8" />
  <meta name="viewport" content="width=device-width, initial-scale=1.0" />
  <title>{subject}</title>
</head>
<body style="margin: 0; padding: 0; background-color: #f4f4f5; font-family: Arial, Helvetica, sans-serif;">
  <table role="presentation" cellspacing="0" cellpadding="0" border="0" width="100%" style="background-color: #f4f4f5;">
    <tr>
      <td align="center" style="padding: 20px 10px;">
        <table role="presentation" cellspacing="0" cellpadding="0" border="0" width="600" style="max-width: 600px; width: 100%;">
          <tr>
            <td align="center" style="background-color: #1E2A47; padding: 30px 40px; color: #ffffff; font-size: 24px; font-weight: bold;">
              {settings.RESEND_FROM_NAME}
            </td>
          </tr>
          <tr>
            <td style="background-color: #ffffff; padding: 40px; color: #333333; font-size: 16px; line-height: 24px;">
              {body_html}
            </td>
          </tr>
          <tr>
            <td style="background-color: #f8fafc; padding: 25px 40px; border-top: 1px solid #e2e8f0; color: #64748b; font-size: 13px; text-align: center;">
              <p style="margin: 0 0 10px 0; font-weight: bold;">Este é um email automático. Por favor, não responda.</p>
              <p style="margin: 0; color: #94a3b8; font-size: 12px;">&copy; {year} {settings.RESEND_FROM_NAME}</p>
            </td>
          </tr>
        </table>
      </td>
    </tr>
  </table>
</body>
</html>"""


def render_template(template: TemplateContent, variables: Dict[str, Any]):
    """Render subject and full HTML for a template.

    Returns:
        tuple: (subject, html)
    """
    subject = render_text(template.subject, variables)
    body = render_text(template.html_template, variables)
    return subject, wrap_layout(subject, body)
