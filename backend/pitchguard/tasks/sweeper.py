"""
Background sweeper: periodic health check and lapsed key cleanup

Nothing starts on import. The process bootstrap owns the lifecycle and calls
``start()`` after startup and ``stop()`` on shutdown. Both passes are
idempotent and safe to run from several process instances at once.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

from pitchguard.core.config import GateConfig
from pitchguard.core.events import Severity
from pitchguard.core.logging import get_logger, log_system_event
from pitchguard.core.store import KeyNamespace, StateStore
from pitchguard.db.audit import AuditFilter
from pitchguard.services.event_log import SecurityEventLog
from pitchguard.utils.exceptions import StoreUnavailable

logger = get_logger(__name__)

# Namespaces whose keys always carry a TTL
SWEPT_NAMESPACES = (
    KeyNamespace.BLACKLIST,
    KeyNamespace.TEMP_BLOCK,
    KeyNamespace.RATE,
    KeyNamespace.LOCKOUT,
    KeyNamespace.FAILED_ATTEMPTS,
    KeyNamespace.FAILED_ATTEMPTS_AT,
    KeyNamespace.GEO,
)

HEALTHY_EVENT_LIMIT = 5


@dataclass
class SecurityStatus:
    """Snapshot produced by one health check"""
    is_healthy: bool
    threat_level: str
    recent_high_severity_events: int
    active_blacklist_entries: Optional[int]
    checked_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "is_healthy": self.is_healthy,
            "threat_level": self.threat_level,
            "recent_high_severity_events": self.recent_high_severity_events,
            "active_blacklist_entries": self.active_blacklist_entries,
            "checked_at": self.checked_at.isoformat(),
        }


class BackgroundSweeper:
    """Owns the health-check and cleanup loops"""

    def __init__(
        self,
        store: StateStore,
        event_log: SecurityEventLog,
        config: GateConfig,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.event_log = event_log
        self.config = config
        self.clock = clock
        self._health_task: Optional[asyncio.Task] = None
        self._cleanup_task: Optional[asyncio.Task] = None
        self.last_status: Optional[SecurityStatus] = None
        self.last_cleanup: Optional[Dict[str, int]] = None

    @property
    def is_running(self) -> bool:
        return any(task is not None and not task.done() for task in (self._health_task, self._cleanup_task))

    def start(self) -> None:
        if self.is_running:
            return
        self._health_task = asyncio.create_task(self._health_loop(), name="gate-sweeper-health")
        self._cleanup_task = asyncio.create_task(self._cleanup_loop(), name="gate-sweeper-cleanup")
        logger.info(
            "Background sweeper started",
            health_interval=self.config.sweeper_health_interval_seconds,
            cleanup_interval=self.config.sweeper_cleanup_interval_seconds,
        )

    async def stop(self) -> None:
        tasks = [task for task in (self._health_task, self._cleanup_task) if task is not None]
        self._health_task = None
        self._cleanup_task = None
        if not tasks:
            return
        for task in tasks:
            if not task.done():
                task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        logger.info("Background sweeper stopped")

    async def _health_loop(self) -> None:
        while True:
            try:
                await self.run_health_check()
            except Exception as e:
                logger.error(f"Security health check failed: {e}", exc_info=True)
            await asyncio.sleep(self.config.sweeper_health_interval_seconds)

    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.sweeper_cleanup_interval_seconds)
            try:
                await self.run_cleanup()
            except Exception as e:
                logger.error(f"Security cleanup failed: {e}", exc_info=True)

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self.clock(), timezone.utc)

    async def run_health_check(self) -> SecurityStatus:
        """Aggregate HIGH/CRITICAL events of the last hour"""
        since = self._now() - timedelta(hours=1)
        recent = await self.event_log.count(
            AuditFilter.build(since=since, severities=(Severity.HIGH, Severity.CRITICAL))
        )

        try:
            blacklisted: Optional[int] = len(await self.store.keys(KeyNamespace.BLACKLIST.pattern))
        except StoreUnavailable as e:
            logger.warning(f"Could not count blacklist entries: {e}")
            blacklisted = None

        threshold = self.config.health_alert_threshold
        status = SecurityStatus(
            is_healthy=recent < HEALTHY_EVENT_LIMIT,
            threat_level="HIGH" if recent > threshold else "NORMAL",
            recent_high_severity_events=recent,
            active_blacklist_entries=blacklisted,
            checked_at=self._now(),
        )
        if recent > threshold:
            log_system_event(
                "Elevated security event volume",
                level=logging.ERROR,
                high_severity_events=recent,
                threshold=threshold,
                active_blacklist_entries=blacklisted,
            )
        self.last_status = status
        return status

    async def run_cleanup(self) -> Dict[str, int]:
        """Delete lapsed keys and stale failed-attempt counters; returns removals per namespace"""
        removed: Dict[str, int] = {}
        for namespace in SWEPT_NAMESPACES:
            try:
                removed[namespace.value] = await self._sweep_lapsed(namespace)
            except StoreUnavailable as e:
                logger.warning(f"Cleanup skipped namespace {namespace.value}: {e}")
                removed[namespace.value] = 0

        try:
            removed["stale_failed_attempts"] = await self._sweep_stale_failures()
        except StoreUnavailable as e:
            logger.warning(f"Stale failed-attempt cleanup skipped: {e}")
            removed["stale_failed_attempts"] = 0

        total = sum(removed.values())
        if total:
            logger.info(f"Security cleanup removed {total} keys", removed=removed)
        self.last_cleanup = removed
        return removed

    async def _sweep_lapsed(self, namespace: KeyNamespace) -> int:
        removed = 0
        for key in await self.store.keys(namespace.pattern):
            remaining = await self.store.ttl(key)
            # 0 is lapsed but not evicted; -1 lost its expiry
            if remaining in (0, -1):
                removed += await self.store.delete(key)
        return removed

    async def _sweep_stale_failures(self) -> int:
        now = self.clock()
        removed = 0
        for key in await self.store.keys(KeyNamespace.FAILED_ATTEMPTS_AT.pattern):
            ip = KeyNamespace.FAILED_ATTEMPTS_AT.strip(key)
            raw = await self.store.get(key)
            if raw is None:
                continue
            try:
                last_attempt = float(raw)
            except ValueError:
                last_attempt = None
            if last_attempt is None or now - last_attempt > self.config.stale_failed_attempt_seconds:
                await self.store.delete(KeyNamespace.FAILED_ATTEMPTS.key(ip))
                await self.store.delete(key)
                removed += 1
        return removed
