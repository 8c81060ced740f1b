"""
Brute force protection for authentication-class endpoints

Per client IP: Clean -> Warned (1..max-1 failures) -> Locked (>= max
failures) -> Clean again on a successful login or when the lockout expires.
When the store is unavailable nothing is enforced: ``is_locked`` answers
False and ``record_failure`` does nothing.
"""

import time
from enum import Enum
from typing import Callable, Optional

from pitchguard.core.config import GateConfig
from pitchguard.core.events import SecurityEventType, Severity
from pitchguard.core.logging import get_logger
from pitchguard.core.store import KeyNamespace, StateStore
from pitchguard.services.event_log import SecurityEventLog
from pitchguard.utils.exceptions import StoreUnavailable

logger = get_logger(__name__)


class BruteForceState(str, Enum):
    CLEAN = "clean"
    WARNED = "warned"
    LOCKED = "locked"


class BruteForceGuard:
    """Failed-authentication counters and lockouts"""

    def __init__(
        self,
        store: StateStore,
        config: GateConfig,
        event_log: Optional[SecurityEventLog] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.config = config
        self.event_log = event_log
        self.clock = clock

    async def record_failure(self, ip: str, identity: Optional[str] = None) -> int:
        """Count a failed login; returns the post-increment count (0 if not recorded)"""
        attempts_key = KeyNamespace.FAILED_ATTEMPTS.key(ip)
        window = self.config.failed_attempt_window_seconds
        try:
            attempts = await self.store.incr(attempts_key)
            await self.store.expire(attempts_key, window)
            # The stamp outlives the stale threshold so the sweeper can see it
            stamp_ttl = max(window, 2 * self.config.stale_failed_attempt_seconds)
            await self.store.set(KeyNamespace.FAILED_ATTEMPTS_AT.key(ip), repr(self.clock()), ttl=stamp_ttl)

            if attempts >= self.config.max_failed_attempts:
                await self.store.set(
                    KeyNamespace.LOCKOUT.key(ip),
                    repr(self.clock()),
                    ttl=self.config.lockout_duration_seconds,
                )
        except StoreUnavailable as e:
            logger.warning(f"Error recording failed attempt, not enforced: {e}")
            return 0

        if attempts >= self.config.max_failed_attempts and self.event_log is not None:
            await self.event_log.emit(
                SecurityEventType.BRUTE_FORCE_LOCKOUT,
                Severity.HIGH,
                ip=ip,
                identity=identity,
                attempts=attempts,
                lockout_seconds=self.config.lockout_duration_seconds,
            )
        return attempts

    async def record_success(self, ip: str) -> None:
        """Back to Clean: drop the failure counter and any lockout"""
        for namespace in (KeyNamespace.FAILED_ATTEMPTS, KeyNamespace.FAILED_ATTEMPTS_AT, KeyNamespace.LOCKOUT):
            try:
                await self.store.delete(namespace.key(ip))
            except StoreUnavailable as e:
                logger.warning(f"Error clearing failed attempts: {e}")

    async def is_locked(self, ip: str) -> bool:
        try:
            return await self.store.exists(KeyNamespace.LOCKOUT.key(ip))
        except StoreUnavailable as e:
            logger.warning(f"Error checking lockout, failing open: {e}")
            return False

    async def lockout_remaining(self, ip: str) -> int:
        """Seconds until the lockout lapses, 0 when not locked"""
        try:
            remaining = await self.store.ttl(KeyNamespace.LOCKOUT.key(ip))
        except StoreUnavailable as e:
            logger.warning(f"Error reading lockout TTL: {e}")
            return 0
        if remaining == -1:
            return self.config.lockout_duration_seconds
        return max(0, remaining)

    async def failed_attempts(self, ip: str) -> int:
        try:
            value = await self.store.get(KeyNamespace.FAILED_ATTEMPTS.key(ip))
        except StoreUnavailable as e:
            logger.warning(f"Error getting failed attempts: {e}")
            return 0
        try:
            return int(value) if value is not None else 0
        except ValueError:
            return 0

    async def state(self, ip: str) -> BruteForceState:
        if await self.is_locked(ip):
            return BruteForceState.LOCKED
        # A counter at or past the maximum without a lockout means the lockout lapsed
        if 0 < await self.failed_attempts(ip) < self.config.max_failed_attempts:
            return BruteForceState.WARNED
        return BruteForceState.CLEAN
