import math
import time
import logging

from .errors import RateLimitError

logger = logging.getLogger(__name__)


class SlidingWindowRateLimiter:
    """
    Per-user limit shared by every instance through the KV store.

    Each fixed window has its own counter (expiring after two windows). The
    previous window's count is weighted by how much of it still overlaps the
    sliding window ending now. Only accepted calls are counted, so a client
    retrying while limited does not push its own lockout further out.
    """

    def __init__(self, kv, name: str, limit: int, window_s: int, clock=time.time):
        self.kv = kv
        self.name = name
        self.limit = limit
        self.window_s = window_s
        self._clock = clock

    def _key(self, user_id: str, window: int) -> str:
        return f"ratelimit:{self.name}:{user_id}:{window}"

    async def hit(self, user_id: str) -> None:
        now = self._clock()
        window = int(now // self.window_s)
        elapsed = (now % self.window_s) / self.window_s

        allowed, estimate = await self.kv.incr_within_limit(
            self._key(user_id, window),
            self._key(user_id, window - 1),
            1 - elapsed,
            self.limit,
            self.window_s * 2,
        )
        if not allowed:
            retry_after = max(1, math.ceil(self.window_s * (1 - elapsed)))
            logger.warning(f"Rate limit {self.name} exceeded for user {user_id} ({estimate:.1f}/{self.limit})")
            raise RateLimitError(
                f"Too many requests. Limit is {self.limit} per {self.window_s} seconds",
                retry_after_s=retry_after,
            )
