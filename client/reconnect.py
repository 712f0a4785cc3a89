"""
MODULE OVERVIEW:
Reconnect decisions: how long to wait, whether to RESUME or IDENTIFY, and the
IDENTIFY rate limit.

WHAT IS HAPPENING HERE:
The backoff curve is `floor(2x - 4x / (ln x + 2))` seconds for attempt `x`. It grows a
little slower than linearly and starts at 0; it is clamped at 0 from below and at
`RECONNECT_MAX_DELAY_S` from above.

IDENTIFY calls are limited per token (1000 per day, at most one every ~5 seconds),
RESUME calls are not. `IdentifyRateLimiter` serializes IDENTIFY sends for one client
across all of its reconnects.
"""
import asyncio
import math
import random
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator

from loguru import logger

from shared.config import Settings

NORMAL_CLOSE = 1000
GOING_AWAY = 1001

# Gateway close codes after which the old session cannot be resumed
NON_RESUMABLE_CLOSE_CODES = frozenset({
    NORMAL_CLOSE,
    GOING_AWAY,
    4003,  # not authenticated
    4004,  # authentication failed
    4007,  # invalid seq
    4009,  # session timed out
    4010,  # invalid shard
    4011,  # sharding required
    4012,  # invalid API version
    4013,  # invalid intents
    4014,  # disallowed intents
})


class ReconnectPolicy:
    def __init__(self, settings: Settings):
        self.max_delay_s = settings.RECONNECT_MAX_DELAY_S
        self.resume_attempt_limit = settings.RESUME_ATTEMPT_LIMIT
        self.invalid_session_window = (
            settings.INVALID_SESSION_DELAY_MIN_S,
            settings.INVALID_SESSION_DELAY_MAX_S,
        )

    def delay(self, attempts: int) -> float:
        x = attempts
        if x <= 0:
            return 0.0
        raw = math.floor(2 * x - (4 * x / (math.log(x) + 2)))
        delay = min(max(0, raw), self.max_delay_s)
        logger.debug(f"attempts={x} delay={delay}")
        return float(delay)

    def should_resume(self, attempts: int, last_disconnect_resumable: bool, has_session_id: bool) -> bool:
        if not (last_disconnect_resumable and has_session_id):
            return False
        if self.resume_attempt_limit is not None and attempts > self.resume_attempt_limit:
            return False
        return True

    def invalid_session_delay(self) -> float:
        low, high = self.invalid_session_window
        return random.uniform(low, high)

    @staticmethod
    def is_resumable_close(close_code: int | None) -> bool:
        # No close frame at all means the transport died underneath us
        if close_code is None:
            return True
        return close_code not in NON_RESUMABLE_CLOSE_CODES


class IdentifyRateLimiter:
    """
    At most one IDENTIFY per `min_interval_s`. Holding the gate blocks only the
    handshake task that is waiting to identify, never frame delivery.
    """

    def __init__(self, min_interval_s: float):
        self.min_interval_s = min_interval_s
        self._lock = asyncio.Lock()
        self._last_sent: float | None = None

    @asynccontextmanager
    async def slot(self) -> AsyncIterator[None]:
        async with self._lock:
            if self._last_sent is not None:
                wait = self.min_interval_s - (time.monotonic() - self._last_sent)
                if wait > 0:
                    logger.debug(f"identify rate_limit wait={wait:.3f}s")
                    await asyncio.sleep(wait)
            yield
            self._last_sent = time.monotonic()
