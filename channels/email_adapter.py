"""
Email Transports — SMTP delivery and a log-only outbox.

Provides:
- SmtpMailer: plain-text mail over aiosmtplib
- LogMailer: records every message in an outbox (development, tests)
- create_mailer(): picks the transport named in settings
"""
from __future__ import annotations

import uuid
import structlog
from email.message import EmailMessage
from email.utils import formataddr
from typing import Any, Optional

import aiosmtplib

from channels.base import DeliveryFault, MailMessage, Mailer
from config.settings import MailConfig, get_settings

logger = structlog.get_logger()


class SmtpMailer(Mailer):
    """
    SMTP mail transport.

    Connection, auth and recipient failures all surface as DeliveryFault so
    the queue can retry them with backoff.
    """

    def __init__(self, config: MailConfig):
        super().__init__(from_email=config.from_email, from_name=config.from_name)
        self.config = config
        self._domain = config.from_email.split("@")[-1] or "localhost"

    def _build(self, message: MailMessage) -> EmailMessage:
        msg = EmailMessage()
        msg["From"] = self.sender
        msg["To"] = formataddr((message.to_name, message.to_address))
        msg["Subject"] = message.subject
        msg["Message-ID"] = f"<{uuid.uuid4().hex}@{self._domain}>"
        msg.set_content(message.body or message.subject)
        return msg

    async def _do_send(self, message: MailMessage) -> dict[str, Any]:
        msg = self._build(message)
        try:
            await aiosmtplib.send(
                msg,
                hostname=self.config.host,
                port=self.config.port,
                username=self.config.username or None,
                password=self.config.password or None,
                use_tls=self.config.use_tls,
                start_tls=self.config.start_tls,
                timeout=self.config.timeout,
            )
        except (aiosmtplib.SMTPException, OSError) as e:
            logger.warning("smtp_send_failed",
                           to=message.to_address,
                           host=self.config.host,
                           error=str(e))
            raise DeliveryFault(f"SMTP delivery to {message.to_address} failed: {e}") from e

        return {
            "status": "sent",
            "message_id": msg["Message-ID"],
            "to": message.recipient,
            "subject": message.subject,
        }


class LogMailer(Mailer):
    """Writes messages to the log and keeps them in `outbox`."""

    def __init__(self, from_email: str = "noreply@meetapp.com", from_name: str = "Meetapp"):
        super().__init__(from_email=from_email, from_name=from_name)
        self.outbox: list[MailMessage] = []

    async def _do_send(self, message: MailMessage) -> dict[str, Any]:
        self.outbox.append(message)
        logger.info("mail_logged",
                    to=message.recipient,
                    subject=message.subject,
                    body=message.body)
        return {
            "status": "logged",
            "message_id": f"log_{uuid.uuid4().hex[:12]}",
            "to": message.recipient,
            "subject": message.subject,
        }


def create_mailer(config: Optional[MailConfig] = None) -> Mailer:
    """Factory: build the transport named by mail.transport."""
    config = config or get_settings().mail
    if config.transport == "smtp":
        logger.info("mailer_created", transport="smtp", host=config.host, port=config.port)
        return SmtpMailer(config)
    logger.info("mailer_created", transport="log")
    return LogMailer(from_email=config.from_email, from_name=config.from_name)
