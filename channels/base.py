"""
Transport plumbing for the WhatsApp channel.

Provides:
- ChannelError / TransportUnavailableError
- DeliveryStats: delivered / failed / skipped counters and recent failures
- MessageDeduplicator: the gateway redelivers inbound events on reconnect
- InputSanitizer: control-character stripping and length cap for inbound text
- MessagingTransport: abstract base — `send(address, text) -> bool`
"""
from __future__ import annotations

import abc
import re
import time
import structlog
from collections import OrderedDict, deque
from typing import Any, Callable

logger = structlog.get_logger()


# ══════════════════════════════════════════════════════════════
#  ERRORS
# ══════════════════════════════════════════════════════════════

class ChannelError(Exception):
    """Raised by a transport. `retryable` tells the transport's own retry loop what to do."""

    def __init__(self, message: str, channel: str = "", retryable: bool = False):
        self.channel = channel
        self.retryable = retryable
        super().__init__(message)


class TransportUnavailableError(ChannelError):
    def __init__(self, channel: str = ""):
        super().__init__(f"{channel or 'transport'} disconnected, send skipped", channel)


# ══════════════════════════════════════════════════════════════
#  DELIVERY STATS
# ══════════════════════════════════════════════════════════════

class DeliveryStats:
    """Outcome counters for one transport, exposed on /status."""

    def __init__(self, channel: str, keep_failures: int = 20):
        self.channel = channel
        self.delivered = 0
        self.failed = 0
        self.skipped = 0
        self.last_delivery_ms = 0.0
        self.recent_failures: deque[dict[str, str]] = deque(maxlen=keep_failures)

    def delivery(self, elapsed_ms: float) -> None:
        self.delivered += 1
        self.last_delivery_ms = elapsed_ms

    def failure(self, address: str, error: str) -> None:
        self.failed += 1
        self.recent_failures.append({"address": address, "error": error})

    def skip(self) -> None:
        self.skipped += 1

    def to_dict(self) -> dict[str, Any]:
        attempted = self.delivered + self.failed
        return {
            "channel": self.channel,
            "delivered": self.delivered,
            "failed": self.failed,
            "skipped": self.skipped,
            "success_rate": round(self.delivered / attempted, 4) if attempted else None,
            "last_delivery_ms": round(self.last_delivery_ms, 1),
            "recent_failures": list(self.recent_failures),
        }


# ══════════════════════════════════════════════════════════════
#  INBOUND HYGIENE
# ══════════════════════════════════════════════════════════════

class MessageDeduplicator:
    """Remembers gateway message ids for `ttl_seconds`, oldest evicted first."""

    def __init__(self, ttl_seconds: float = 300.0, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl_seconds
        self._clock = clock
        self._seen: OrderedDict[str, float] = OrderedDict()

    def is_duplicate(self, message_id: str) -> bool:
        now = self._clock()
        while self._seen:
            oldest_id, seen_at = next(iter(self._seen.items()))
            if now - seen_at < self.ttl:
                break
            del self._seen[oldest_id]

        if message_id in self._seen:
            return True
        self._seen[message_id] = now
        return False


_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")


class InputSanitizer:
    def __init__(self, max_length: int = 4000):
        self.max_length = max_length

    def sanitize(self, text: str) -> str:
        if not text:
            return ""
        return _CONTROL_CHARS.sub("", text)[: self.max_length].strip()


# ══════════════════════════════════════════════════════════════
#  MESSAGING TRANSPORT — Abstract Base
# ══════════════════════════════════════════════════════════════

class MessagingTransport(abc.ABC):
    """
    Base class for messaging transports.

    Subclasses implement _do_send. `send` refuses to run while disconnected
    (TransportUnavailableError, counted as a skip) and converts any other
    failure into False. Retries happen inside _do_send, never in callers.
    """

    channel: str = ""

    def __init__(self):
        self._initialized = False
        self._config: dict[str, Any] = {}
        self._stats = DeliveryStats(self.channel)

    @abc.abstractmethod
    async def _do_send(self, address: str, text: str) -> None:
        """Deliver `text` to `address`. Raise on failure."""

    @abc.abstractmethod
    async def initialize(self, config: dict[str, Any]) -> None:
        ...

    @property
    @abc.abstractmethod
    def is_connected(self) -> bool:
        ...

    async def send(self, address: str, text: str) -> bool:
        if not self.is_connected:
            self._stats.skip()
            raise TransportUnavailableError(self.channel)

        started = time.monotonic()
        try:
            await self._do_send(address, text)
        except Exception as e:
            self._stats.failure(address, str(e))
            logger.warning("transport_send_failed",
                           channel=self.channel, to=address, error=str(e))
            return False

        self._stats.delivery((time.monotonic() - started) * 1000)
        return True

    @property
    def stats(self) -> DeliveryStats:
        return self._stats

    async def health_check(self) -> dict[str, Any]:
        return {
            "channel": self.channel,
            "initialized": self._initialized,
            "connected": self.is_connected,
            "deliveries": self._stats.to_dict(),
        }

    async def shutdown(self) -> None:
        pass
