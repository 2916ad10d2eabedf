"""Mail delivery for organizer notifications."""
from channels.base import (
    ChannelError,
    DeliveryFault,
    CircuitOpenError,
    CircuitBreaker,
    MessageDeduplicator,
    MailMessage,
    Mailer,
)
from channels.email_adapter import SmtpMailer, LogMailer, create_mailer

__all__ = [
    "ChannelError", "DeliveryFault", "CircuitOpenError",
    "CircuitBreaker", "MessageDeduplicator", "MailMessage", "Mailer",
    "SmtpMailer", "LogMailer", "create_mailer",
]
