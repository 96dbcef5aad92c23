"""
Sliding-window admission control for inbound messages.

Per identity, keeps the timestamps of admitted events inside the trailing
window. An event is admitted while fewer than `limit` timestamps remain
in the window. Expired timestamps are pruned lazily on each call.

Memory grows with the number of distinct identities seen (not capped).
"""
from __future__ import annotations

import time
from collections import deque
from typing import Callable, Optional

import structlog

logger = structlog.get_logger()


class SlidingWindowRateLimiter:

    def __init__(
        self,
        limit: int = 10,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.limit = limit
        self.window = window_seconds
        self._clock = clock
        self._events: dict[str, deque[float]] = {}

    def allow(self, identity: str) -> bool:
        now = self._clock()
        events = self._events.setdefault(identity, deque())

        cutoff = now - self.window
        while events and events[0] <= cutoff:
            events.popleft()

        if len(events) >= self.limit:
            logger.info("rate_limited", identity=identity, in_window=len(events))
            return False

        events.append(now)
        return True

    def reset(self, identity: Optional[str] = None) -> None:
        if identity is None:
            self._events.clear()
        else:
            self._events.pop(identity, None)

    def tracked_identities(self) -> int:
        return len(self._events)
