"""Outbound mail for second-factor notices (email codes, TOTP reset)."""

import asyncio
import smtplib
from email.message import EmailMessage
from typing import Any, Dict, List, Optional

from app.config import Settings, get_settings
from app.utils.logger import get_logger

logger = get_logger(__name__)


class Mailer:
    """Interface for mail delivery."""

    async def send(
        self, to: str, subject: str, text: str, html: Optional[str] = None
    ) -> None:
        """Send one message.

        Raises:
            Exception: Delivery failure, propagated to the caller
        """
        raise NotImplementedError


class LoggingMailer(Mailer):
    """Development mailer: records messages instead of delivering them."""

    def __init__(self):
        self.sent_messages: List[Dict[str, Any]] = []

    async def send(
        self, to: str, subject: str, text: str, html: Optional[str] = None
    ) -> None:
        self.sent_messages.append(
            {"to": to, "subject": subject, "text": text, "html": html}
        )
        logger.info("Mail queued (not delivered)", to=to, subject=subject)


class SmtpMailer(Mailer):
    """Delivers through an SMTP relay; the blocking client runs in a thread."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()

    def _build_message(
        self, to: str, subject: str, text: str, html: Optional[str]
    ) -> EmailMessage:
        message = EmailMessage()
        message["From"] = self.settings.from_email
        message["To"] = to
        message["Subject"] = subject
        message.set_content(text)
        if html:
            message.add_alternative(html, subtype="html")
        return message

    def _deliver(self, message: EmailMessage) -> None:
        with smtplib.SMTP(
            self.settings.smtp_host, self.settings.smtp_port, timeout=10
        ) as smtp:
            if self.settings.smtp_use_tls:
                smtp.starttls()
            if self.settings.smtp_username:
                smtp.login(self.settings.smtp_username, self.settings.smtp_password)
            smtp.send_message(message)

    async def send(
        self, to: str, subject: str, text: str, html: Optional[str] = None
    ) -> None:
        message = self._build_message(to, subject, text, html)
        await asyncio.to_thread(self._deliver, message)
        logger.info("Mail sent", to=to, subject=subject)


def create_mailer(settings: Optional[Settings] = None) -> Mailer:
    """SMTP when a relay is configured, otherwise the logging mailer."""
    settings = settings or get_settings()
    if settings.smtp_host:
        return SmtpMailer(settings)
    return LoggingMailer()
