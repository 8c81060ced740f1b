"""
Fixed-window request counters

The first increment in a window sets the key's TTL to the window length;
later increments leave the TTL alone, so the counter resets entirely when
the key expires. Fixed windows let a client burst up to roughly twice the
limit across a window boundary (end of one window plus start of the next).
That trade-off is accepted in exchange for one atomic INCR per request.
"""

from dataclasses import dataclass
from typing import Dict

from pitchguard.core.logging import get_logger
from pitchguard.core.store import KeyNamespace, StateStore
from pitchguard.utils.exceptions import StoreUnavailable

logger = get_logger(__name__)


@dataclass(frozen=True)
class RateDecision:
    """Outcome of one counted request"""
    allowed: bool
    remaining: int
    count: int
    limit: int
    window_seconds: int
    degraded: bool = False

    def headers(self) -> Dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Window": str(self.window_seconds),
        }


class RateCounter:
    """Per-key fixed-window counters on the shared store"""

    def __init__(self, store: StateStore):
        self.store = store

    @staticmethod
    def key_for(key: str, window_seconds: int) -> str:
        return KeyNamespace.RATE.key(window_seconds, key)

    async def increment(self, key: str, window_seconds: int) -> int:
        """Count one request and return the post-increment count.

        Raises StoreUnavailable; ``allow`` is the fail-open wrapper.
        """
        full_key = self.key_for(key, window_seconds)
        count = await self.store.incr(full_key)
        # A key left without expiry by a failed expire would never reset
        if count == 1 or await self.store.ttl(full_key) == -1:
            await self.store.expire(full_key, window_seconds)
        return count

    async def allow(self, key: str, limit: int, window_seconds: int) -> RateDecision:
        try:
            count = await self.increment(key, window_seconds)
        except StoreUnavailable as e:
            logger.warning(f"Rate counter unavailable, allowing request: {e}")
            return RateDecision(
                allowed=True,
                remaining=limit,
                count=0,
                limit=limit,
                window_seconds=window_seconds,
                degraded=True,
            )

        allowed = count <= limit
        if not allowed:
            logger.warning(f"Rate limit exceeded for key: {key}", count=count, limit=limit)

        return RateDecision(
            allowed=allowed,
            remaining=max(0, limit - count),
            count=count,
            limit=limit,
            window_seconds=window_seconds,
        )

    async def current(self, key: str, window_seconds: int) -> int:
        """Read the count without incrementing (0 when absent or unavailable)"""
        try:
            value = await self.store.get(self.key_for(key, window_seconds))
        except StoreUnavailable as e:
            logger.warning(f"Rate counter unavailable: {e}")
            return 0
        try:
            return int(value) if value is not None else 0
        except ValueError:
            return 0
