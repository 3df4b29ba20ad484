"""
Messaging gateway: base infrastructure for outbound text delivery.

Provides:
- ChannelError / GatewayError: structured error hierarchy
- TokenBucketRateLimiter / PerSenderRateLimiter: send pacing per sending number
- PhoneNumber: one sending number and the credential account it belongs to
- MessagingGateway: abstract sender every notification goes through
- InMemoryGateway: records sends instead of delivering them
"""
from __future__ import annotations

import abc
import asyncio
import itertools
import time
import structlog
from dataclasses import dataclass, field
from typing import Any, Optional

logger = structlog.get_logger()


# ══════════════════════════════════════════════════════════════
#  ERRORS
# ══════════════════════════════════════════════════════════════

class ChannelError(Exception):
    """Base exception for all channel operations."""

    def __init__(self, message: str, channel: str = "", retryable: bool = False):
        self.channel = channel
        self.retryable = retryable
        super().__init__(message)


class GatewayError(ChannelError):
    """The messaging gateway refused or failed a single send."""

    def __init__(self, message: str, to: str = "", status_code: Optional[int] = None,
                 retryable: bool = False):
        self.to = to
        self.status_code = status_code
        super().__init__(message, channel="sms", retryable=retryable)


class UnknownPhoneCategoryError(GatewayError):
    def __init__(self, category: str):
        self.category = category
        super().__init__(f"Invalid phone number category - {category}")


# ══════════════════════════════════════════════════════════════
#  SEND PACING
# ══════════════════════════════════════════════════════════════

class TokenBucketRateLimiter:
    """`rate` sends per second on average, with up to `burst` back to back."""

    def __init__(self, rate: float = 10.0, burst: int = 10, clock=time.monotonic):
        self.rate = max(rate, 0.001)
        self.burst = burst
        self._clock = clock
        self._available = float(burst)
        self._stamp = clock()
        self._lock = asyncio.Lock()

    def _take(self) -> float:
        """Take one token if possible; otherwise return the seconds until one is due."""
        now = self._clock()
        self._available = min(self.burst, self._available + (now - self._stamp) * self.rate)
        self._stamp = now
        if self._available >= 1:
            self._available -= 1
            return 0.0
        return (1 - self._available) / self.rate

    async def acquire(self, timeout: float = 5.0) -> bool:
        give_up = self._clock() + timeout
        while True:
            async with self._lock:
                wait = self._take()
            if wait == 0:
                return True
            if self._clock() + wait > give_up:
                return False
            await asyncio.sleep(wait)


class PerSenderRateLimiter:
    """One bucket per sending number; carriers meter each number separately."""

    def __init__(self, rate: float, burst: int = 1):
        self.rate = rate
        self.burst = burst
        self._buckets: dict[str, TokenBucketRateLimiter] = {}

    async def acquire(self, sender: str, timeout: float = 30.0) -> bool:
        bucket = self._buckets.get(sender)
        if bucket is None:
            bucket = self._buckets[sender] = TokenBucketRateLimiter(self.rate, self.burst)
        return await bucket.acquire(timeout)


# ══════════════════════════════════════════════════════════════
#  PHONE NUMBERS
# ══════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class PhoneNumber:
    """A configured sending number, addressed by its category name."""
    category: str
    number: str
    type: str = "page"          # page | alert | chat
    account: str = ""           # suffix of accountSid/authToken in the secret
    department: str = ""


@dataclass
class SentText:
    to: str
    body: str
    sender: PhoneNumber
    message_id: Optional[int] = None
    media_urls: list[str] = field(default_factory=list)
    sid: str = ""


# ══════════════════════════════════════════════════════════════
#  GATEWAY — Abstract Base
# ══════════════════════════════════════════════════════════════

class MessagingGateway(abc.ABC):
    """
    Sends one text to one phone number.

    Implementations raise GatewayError on failure; they never retry a send
    that may have reached the carrier.
    """

    @abc.abstractmethod
    async def send_text(
        self,
        to: str,
        body: str,
        sender: PhoneNumber,
        message_id: Optional[int] = None,
        media_urls: Optional[list[str]] = None,
    ) -> str:
        """Deliver ``body`` to ``to``; returns the provider's message id."""
        ...

    async def health_check(self) -> dict[str, Any]:
        return {"gateway": type(self).__name__}

    async def shutdown(self) -> None:
        pass


class InMemoryGateway(MessagingGateway):
    """Development/test gateway. Numbers in ``failing`` raise GatewayError."""

    def __init__(self, failing: Optional[set[str]] = None):
        self.sent: list[SentText] = []
        self.failing: set[str] = set(failing or ())
        self._ids = itertools.count(1)

    async def send_text(
        self,
        to: str,
        body: str,
        sender: PhoneNumber,
        message_id: Optional[int] = None,
        media_urls: Optional[list[str]] = None,
    ) -> str:
        if to in self.failing:
            raise GatewayError(f"Delivery to {to} refused", to=to, status_code=400)
        sid = f"SM{next(self._ids):032d}"
        self.sent.append(SentText(to=to, body=body, sender=sender, message_id=message_id,
                                  media_urls=list(media_urls or []), sid=sid))
        logger.debug("text_recorded", to=to, sender=sender.category, message_id=message_id)
        return sid

    def sent_to(self, phone: str) -> list[SentText]:
        return [s for s in self.sent if s.to == phone]

    async def health_check(self) -> dict[str, Any]:
        return {"gateway": "memory", "sent": len(self.sent)}
