"""
Mail Channel — Base infrastructure for outbound notification mail.

Provides:
- ChannelError / DeliveryFault: structured error hierarchy
- CircuitBreaker: failure-counting breaker with half-open probe
- MessageDeduplicator: TTL seen-set (used by the queue consumer for job ids)
- MailMessage: rendered mail value
- Mailer: abstract base wrapping every send with the breaker and metrics
"""
from __future__ import annotations

import abc
import time
import structlog
from typing import Any
from dataclasses import dataclass, field
from email.utils import formataddr

logger = structlog.get_logger()


# ══════════════════════════════════════════════════════════════
#  ERRORS
# ══════════════════════════════════════════════════════════════

class ChannelError(Exception):
    """Base exception for all channel operations."""

    def __init__(self, message: str, channel: str = ""):
        self.channel = channel
        super().__init__(message)


class DeliveryFault(ChannelError):
    """The mail transport could not deliver. The queue retries the job."""

    def __init__(self, message: str, channel: str = "email"):
        super().__init__(message, channel)


class CircuitOpenError(DeliveryFault):
    def __init__(self, channel: str = "email"):
        super().__init__(f"Circuit breaker open for {channel}", channel)


# ══════════════════════════════════════════════════════════════
#  CIRCUIT BREAKER
# ══════════════════════════════════════════════════════════════

class CircuitBreaker:
    """
    Synchronous circuit breaker with failure counting.

    closed → open (after threshold failures) → half_open (after timeout) →
    closed (on success) or open (on failure).
    """

    def __init__(self, failure_threshold: int = 5, recovery_timeout: float = 60.0):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._state = "closed"
        self._failure_count = 0
        self._opened_at: float = 0.0

    @property
    def state(self) -> str:
        if self._state == "open":
            if time.monotonic() - self._opened_at >= self.recovery_timeout:
                return "half_open"
        return self._state

    @property
    def is_open(self) -> bool:
        return self.state == "open"

    def record_failure(self):
        self._failure_count += 1
        if self.state == "half_open" or self._failure_count >= self.failure_threshold:
            self._open()

    def record_success(self):
        self._state = "closed"
        self._failure_count = 0

    def _open(self):
        self._state = "open"
        self._opened_at = time.monotonic()
        logger.warning("circuit_opened", failures=self._failure_count)


# ══════════════════════════════════════════════════════════════
#  DEDUPLICATION
# ══════════════════════════════════════════════════════════════

class MessageDeduplicator:
    """TTL-based seen-set for deduplicating redelivered work."""

    def __init__(self, ttl_seconds: float = 300.0, max_size: int = 5000):
        self.ttl = ttl_seconds
        self.max_size = max_size
        self._seen: dict[str, float] = {}

    def seen(self, key: str) -> bool:
        self._prune()
        return key in self._seen

    def mark(self, key: str) -> None:
        self._seen[key] = time.monotonic()
        if len(self._seen) > self.max_size:
            oldest = min(self._seen, key=self._seen.get)
            del self._seen[oldest]

    def _prune(self):
        cutoff = time.monotonic() - self.ttl
        expired = [k for k, t in self._seen.items() if t < cutoff]
        for k in expired:
            del self._seen[k]


# ══════════════════════════════════════════════════════════════
#  MAIL
# ══════════════════════════════════════════════════════════════

@dataclass
class MailMessage:
    to_address: str
    to_name: str
    subject: str
    template: str
    context: dict[str, Any] = field(default_factory=dict)
    body: str = ""

    @property
    def recipient(self) -> str:
        return f"{self.to_name} <{self.to_address}>" if self.to_name else self.to_address


class Mailer(abc.ABC):
    """
    Base class for mail transports.

    Subclasses implement _do_send. The base class wraps every send with the
    circuit breaker and counters. There is no retry here; a failed send
    raises DeliveryFault and the queue decides what happens next.
    """

    channel = "email"

    def __init__(self, from_email: str = "noreply@meetapp.com", from_name: str = "Meetapp"):
        self.from_email = from_email
        self.from_name = from_name
        self._breaker = CircuitBreaker()
        self.sent_count = 0
        self.failed_count = 0

    @property
    def sender(self) -> str:
        return formataddr((self.from_name, self.from_email))

    @abc.abstractmethod
    async def _do_send(self, message: MailMessage) -> dict[str, Any]:
        ...

    async def send(
        self,
        to_address: str,
        to_name: str,
        subject: str,
        template: str,
        context: dict[str, Any],
        body: str = "",
    ) -> dict[str, Any]:
        message = MailMessage(
            to_address=to_address,
            to_name=to_name,
            subject=subject,
            template=template,
            context=context,
            body=body,
        )
        return await self.send_message(message)

    async def send_message(self, message: MailMessage) -> dict[str, Any]:
        if self._breaker.is_open:
            self.failed_count += 1
            raise CircuitOpenError(self.channel)

        start = time.monotonic()
        try:
            result = await self._do_send(message)
        except DeliveryFault:
            self._breaker.record_failure()
            self.failed_count += 1
            raise

        self._breaker.record_success()
        self.sent_count += 1
        result["latency_ms"] = round((time.monotonic() - start) * 1000, 1)
        logger.info("mail_sent",
                    to=message.to_address,
                    subject=message.subject,
                    template=message.template)
        return result

    async def health_check(self) -> dict[str, Any]:
        return {
            "transport": type(self).__name__,
            "circuit": self._breaker.state,
            "sent": self.sent_count,
            "failed": self.failed_count,
        }

    async def close(self) -> None:
        pass
