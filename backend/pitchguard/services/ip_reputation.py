"""
IP reputation: long-lived blacklist entries and short automatic blocks

The two live under separate key namespaces so a manual ban and an automatic
containment never overwrite each other's reason or lifetime. Both checks are
a single key lookup.
"""

import json
import time
from dataclasses import asdict, dataclass
from typing import Callable, Optional

from pitchguard.core.config import GateConfig
from pitchguard.core.events import SecurityEventType, Severity
from pitchguard.core.logging import get_logger
from pitchguard.core.store import KeyNamespace, StateStore
from pitchguard.services.event_log import SecurityEventLog
from pitchguard.utils.exceptions import StoreUnavailable

logger = get_logger(__name__)


@dataclass(frozen=True)
class BlacklistEntry:
    ip: str
    reason: str
    created_at: float
    duration_seconds: int

    def to_json(self) -> str:
        return json.dumps(asdict(self))

    @classmethod
    def from_json(cls, ip: str, raw: str) -> "BlacklistEntry":
        try:
            data = json.loads(raw)
            return cls(
                ip=ip,
                reason=str(data.get("reason", "unknown")),
                created_at=float(data.get("created_at", 0)),
                duration_seconds=int(data.get("duration_seconds", 0)),
            )
        except (TypeError, ValueError, AttributeError):
            return cls(ip=ip, reason="unknown", created_at=0.0, duration_seconds=0)


class IPReputationStore:
    """Blacklist and temporary-block records with expiry"""

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

    async def blacklist(self, ip: str, reason: str, duration_seconds: Optional[int] = None) -> Optional[BlacklistEntry]:
        """Ban ``ip``; returns None when the store could not be written"""
        duration = duration_seconds or self.config.blacklist_duration_seconds
        entry = BlacklistEntry(ip=ip, reason=reason, created_at=self.clock(), duration_seconds=duration)
        try:
            await self.store.set(KeyNamespace.BLACKLIST.key(ip), entry.to_json(), ttl=duration)
        except StoreUnavailable as e:
            logger.warning(f"Error blacklisting IP {ip}: {e}")
            return None

        logger.warning(f"IP blacklisted: {ip}", reason=reason, duration=duration)
        if self.event_log is not None:
            await self.event_log.emit(
                SecurityEventType.IP_BLACKLISTED,
                Severity.CRITICAL,
                ip=ip,
                reason=reason,
                duration=duration,
            )
        return entry

    async def is_blacklisted(self, ip: str) -> bool:
        try:
            return await self.store.exists(KeyNamespace.BLACKLIST.key(ip))
        except StoreUnavailable as e:
            logger.warning(f"Error checking IP blacklist, failing open: {e}")
            return False

    async def blacklist_entry(self, ip: str) -> Optional[BlacklistEntry]:
        try:
            raw = await self.store.get(KeyNamespace.BLACKLIST.key(ip))
        except StoreUnavailable as e:
            logger.warning(f"Error reading blacklist entry: {e}")
            return None
        return BlacklistEntry.from_json(ip, raw) if raw is not None else None

    async def temporary_block(self, ip: str, duration_seconds: Optional[int] = None) -> bool:
        duration = duration_seconds or self.config.temporary_block_duration_seconds
        try:
            await self.store.set(KeyNamespace.TEMP_BLOCK.key(ip), str(self.clock()), ttl=duration)
        except StoreUnavailable as e:
            logger.warning(f"Error temporarily blocking IP {ip}: {e}")
            return False
        logger.info(f"IP temporarily blocked: {ip}", duration=duration)
        return True

    async def block_remaining(self, ip: str) -> int:
        """Seconds left on a temporary block, 0 when not blocked"""
        try:
            remaining = await self.store.ttl(KeyNamespace.TEMP_BLOCK.key(ip))
        except StoreUnavailable as e:
            logger.warning(f"Error checking temporary block, failing open: {e}")
            return 0
        # -1 means a block key lost its expiry; treat it as a full-length block
        if remaining == -1:
            return self.config.temporary_block_duration_seconds
        return max(0, remaining)

    async def is_temporarily_blocked(self, ip: str) -> bool:
        return await self.block_remaining(ip) > 0
