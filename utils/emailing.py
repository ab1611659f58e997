import logging
import os
import smtplib
import uuid
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formatdate
from typing import Optional

from jinja2 import Environment, FileSystemLoader, select_autoescape

from config import Settings, get_settings
from services.errors import NotificationDeliveryError, classify_delivery_error

logger = logging.getLogger(__name__)

# Jinja env
_templates_dir = os.path.join(os.path.dirname(__file__), "..", "templates")
_jinja_env = Environment(
    loader=FileSystemLoader(_templates_dir),
    autoescape=select_autoescape(["html", "xml"]),
)


def render_template(template_name: str, **context) -> str:
    base = {"app_name": get_settings().APP_NAME}
    base.update(context or {})
    return _jinja_env.get_template(template_name).render(**base)


class EmailSender:
    """SMTP delivery for outbox email rows"""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()

    def is_configured(self) -> bool:
        return bool(self.settings.SMTP_HOST and self.settings.MAIL_FROM)

    def send(self, to_addr: str, subject: str, html: str, text: Optional[str] = None) -> None:
        if not self.is_configured():
            logger.error("SMTP not configured; cannot send email")
            raise NotificationDeliveryError("config", "SMTP not configured")

        sender = self.settings.MAIL_FROM.strip()
        domain = sender.split("@")[-1] if "@" in sender else "localhost"

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.settings.APP_NAME} <{sender}>" if "<" not in sender else sender
        msg["To"] = to_addr
        msg["Message-ID"] = f"<{uuid.uuid4()}@{domain}>"
        msg["Date"] = formatdate(usegmt=True)
        msg.attach(MIMEText(text or "Open this message in an HTML-capable email client.", "plain", _charset="utf-8"))
        msg.attach(MIMEText(html or "", "html", _charset="utf-8"))

        try:
            with smtplib.SMTP(self.settings.SMTP_HOST, self.settings.SMTP_PORT, timeout=30) as server:
                server.starttls()
                if self.settings.SMTP_USER or self.settings.SMTP_PASS:
                    server.login(self.settings.SMTP_USER, self.settings.SMTP_PASS)
                server.sendmail(sender, [to_addr], msg.as_string())
        except (smtplib.SMTPException, OSError) as e:
            kind = classify_delivery_error(e)
            logger.error(f"SMTP send to {to_addr} failed ({kind}): {e}")
            raise NotificationDeliveryError(kind, str(e)) from e

        logger.info(f"Email sent to {to_addr}: {subject}")
