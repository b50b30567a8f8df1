from __future__ import annotations

import logging
import math
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Optional

logger = logging.getLogger(__name__)

MINUTE_SEC = 60.0
HOUR_SEC = 3600.0


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    reason: str = ""
    retry_after_sec: int = 0
    too_long: bool = False


ALLOWED = RateLimitDecision(allowed=True)


class ChatRateLimiter:
    """Anti-flood limits for chat intake.

    A message is refused when it is too long, arrives within
    ``min_interval_sec`` of the previous one, or would exceed the per-minute
    or per-hour budget. Hitting the per-minute budget also starts a
    cooldown of ``cooldown_sec`` during which everything is refused.
    """

    def __init__(
        self,
        *,
        max_message_chars: int = 2000,
        per_minute: int = 10,
        per_hour: int = 60,
        min_interval_sec: float = 1.0,
        cooldown_sec: float = 30.0,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self._max_message_chars = max_message_chars
        self._per_minute = max(1, per_minute)
        self._per_hour = max(1, per_hour)
        self._min_interval_sec = max(0.0, min_interval_sec)
        self._cooldown_sec = max(0.0, cooldown_sec)
        self._clock = clock or time.monotonic
        self._sent: deque[float] = deque()
        self._cooldown_until: Optional[float] = None

    def check(self, text: str) -> RateLimitDecision:
        """Decide whether ``text`` may be sent now. Does not record it."""

        if len(text) > self._max_message_chars:
            return RateLimitDecision(
                allowed=False,
                reason=f"Message is too long ({len(text)}/{self._max_message_chars} characters)",
                too_long=True,
            )

        now = self._clock()
        if self._cooldown_until is not None:
            if now < self._cooldown_until:
                return self._refuse("Too many messages; cooling down", self._cooldown_until - now)
            self._cooldown_until = None

        self._expire(now)
        if self._sent and now - self._sent[-1] < self._min_interval_sec:
            return self._refuse(
                "Messages are arriving too fast", self._min_interval_sec - (now - self._sent[-1])
            )

        in_last_minute = sum(1 for sent_at in self._sent if now - sent_at < MINUTE_SEC)
        if in_last_minute >= self._per_minute:
            self._cooldown_until = now + self._cooldown_sec
            logger.warning("Chat rate limit hit; cooling down for %ss", self._cooldown_sec)
            return self._refuse("Too many messages per minute", self._cooldown_sec)

        if len(self._sent) >= self._per_hour:
            return self._refuse("Hourly message limit reached", HOUR_SEC - (now - self._sent[0]))

        return ALLOWED

    def record(self) -> None:
        self._sent.append(self._clock())

    def _expire(self, now: float) -> None:
        while self._sent and now - self._sent[0] >= HOUR_SEC:
            self._sent.popleft()

    @staticmethod
    def _refuse(reason: str, wait_sec: float) -> RateLimitDecision:
        return RateLimitDecision(
            allowed=False, reason=reason, retry_after_sec=max(1, math.ceil(wait_sec))
        )
