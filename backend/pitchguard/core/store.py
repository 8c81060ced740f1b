"""
Shared state store used by every gate component

All cross-request state (counters, blocks, lockouts, last locations) lives
here. Each component writes under its own key namespace so that the
namespaces could later be split across separate backing stores without
changing behaviour.

``ttl`` follows redis semantics: -2 for a missing key, -1 for a key without
an expiry. Every failure surfaces as ``StoreUnavailable``; components decide
how to degrade.
"""

import asyncio
import fnmatch
import math
import time
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import redis.asyncio as redis
from redis.exceptions import RedisError

from pitchguard.core.logging import get_logger
from pitchguard.utils.exceptions import ConfigurationError, StoreUnavailable

logger = get_logger(__name__)


class KeyNamespace(str, Enum):
    """Key prefixes, one per component"""
    RATE = "rate"
    BLACKLIST = "blacklist"
    TEMP_BLOCK = "temp_block"
    FAILED_ATTEMPTS = "failed_attempts"
    FAILED_ATTEMPTS_AT = "failed_attempts_at"
    LOCKOUT = "lockout"
    GEO = "geo"

    def key(self, *parts: Any) -> str:
        return ":".join([self.value, *(str(part) for part in parts)])

    @property
    def pattern(self) -> str:
        return f"{self.value}:*"

    def strip(self, key: str) -> str:
        """Return the part of ``key`` after this namespace's prefix"""
        prefix = f"{self.value}:"
        return key[len(prefix):] if key.startswith(prefix) else key


class StateStore(ABC):
    """TTL-capable key-value store with atomic increment"""

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        pass

    @abstractmethod
    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        pass

    @abstractmethod
    async def incr(self, key: str) -> int:
        pass

    @abstractmethod
    async def expire(self, key: str, ttl: int) -> bool:
        pass

    @abstractmethod
    async def ttl(self, key: str) -> int:
        pass

    @abstractmethod
    async def delete(self, key: str) -> int:
        pass

    @abstractmethod
    async def keys(self, pattern: str) -> List[str]:
        pass

    async def exists(self, key: str) -> bool:
        return await self.get(key) is not None

    async def close(self) -> None:
        pass


class RedisStateStore(StateStore):
    """Shared store backed by redis.

    Request-path calls are bounded by ``timeout``; writes are shielded so a
    client disconnect does not abort accounting that is already in flight.
    """

    def __init__(
        self,
        url: Optional[str] = None,
        client: Optional[redis.Redis] = None,
        timeout: float = 0.05,
        scan_timeout: float = 5.0,
    ):
        if client is None:
            if not url:
                raise ConfigurationError("REDIS_URL is required for the redis state store")
            client = redis.from_url(
                url,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=5,
                socket_timeout=5,
                health_check_interval=30,
            )
        self.redis = client
        self.timeout = timeout
        self.scan_timeout = scan_timeout

    async def _call(
        self,
        operation: str,
        key: str,
        call: Callable[[], Awaitable[Any]],
        write: bool = False,
        timeout: Optional[float] = None,
    ) -> Any:
        try:
            awaitable = call()
            if write:
                awaitable = asyncio.shield(awaitable)
            return await asyncio.wait_for(awaitable, timeout=timeout or self.timeout)
        except (asyncio.TimeoutError, RedisError, OSError) as e:
            raise StoreUnavailable(operation, key, e) from e

    async def get(self, key: str) -> Optional[str]:
        return await self._call("get", key, lambda: self.redis.get(key))

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        await self._call("set", key, lambda: self.redis.set(key, value, ex=ttl), write=True)

    async def incr(self, key: str) -> int:
        return int(await self._call("incr", key, lambda: self.redis.incr(key), write=True))

    async def expire(self, key: str, ttl: int) -> bool:
        return bool(await self._call("expire", key, lambda: self.redis.expire(key, ttl), write=True))

    async def ttl(self, key: str) -> int:
        return int(await self._call("ttl", key, lambda: self.redis.ttl(key)))

    async def delete(self, key: str) -> int:
        return int(await self._call("delete", key, lambda: self.redis.delete(key), write=True))

    async def exists(self, key: str) -> bool:
        return bool(await self._call("exists", key, lambda: self.redis.exists(key)))

    async def keys(self, pattern: str) -> List[str]:
        async def scan() -> List[str]:
            return [key async for key in self.redis.scan_iter(match=pattern, count=500)]

        return await self._call("keys", pattern, scan, timeout=self.scan_timeout)

    async def close(self) -> None:
        try:
            await self.redis.aclose()
        except RedisError as e:
            logger.warning(f"Error closing redis connection: {e}")


class MemoryStateStore(StateStore):
    """Process-local store for single-instance development and tests.

    Expired keys are hidden from reads but only evicted when overwritten or
    deleted, so ``keys`` and ``ttl`` still report them (``ttl`` returns 0)
    until a sweep removes them.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self.clock = clock
        self._data: Dict[str, Tuple[str, Optional[float]]] = {}

    def _live(self, key: str) -> Optional[Tuple[str, Optional[float]]]:
        entry = self._data.get(key)
        if entry is None:
            return None
        _, expires_at = entry
        if expires_at is not None and expires_at <= self.clock():
            return None
        return entry

    async def get(self, key: str) -> Optional[str]:
        entry = self._live(key)
        return entry[0] if entry else None

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        expires_at = self.clock() + ttl if ttl is not None else None
        self._data[key] = (str(value), expires_at)

    async def incr(self, key: str) -> int:
        entry = self._live(key)
        if entry is None:
            self._data[key] = ("1", None)
            return 1
        value, expires_at = entry
        try:
            count = int(value) + 1
        except ValueError as e:
            raise StoreUnavailable("incr", key, e) from e
        self._data[key] = (str(count), expires_at)
        return count

    async def expire(self, key: str, ttl: int) -> bool:
        entry = self._live(key)
        if entry is None:
            return False
        self._data[key] = (entry[0], self.clock() + ttl)
        return True

    async def ttl(self, key: str) -> int:
        entry = self._data.get(key)
        if entry is None:
            return -2
        _, expires_at = entry
        if expires_at is None:
            return -1
        return max(0, math.ceil(expires_at - self.clock()))

    async def delete(self, key: str) -> int:
        return 1 if self._data.pop(key, None) is not None else 0

    async def keys(self, pattern: str) -> List[str]:
        return [key for key in self._data if fnmatch.fnmatchcase(key, pattern)]


def build_state_store(settings, timeout: Optional[float] = None) -> StateStore:
    """Create the configured store; raises ConfigurationError at startup"""
    backend = (settings.GATE_STORE_BACKEND or "").lower()
    if backend == "redis":
        if not settings.REDIS_URL:
            raise ConfigurationError("GATE_STORE_BACKEND=redis requires REDIS_URL")
        logger.info("Gate state store: redis")
        return RedisStateStore(
            url=settings.REDIS_URL,
            timeout=timeout if timeout is not None else settings.GATE_STORE_TIMEOUT_SECONDS,
        )
    if backend == "memory":
        logger.warning("Gate state store: in-memory (single process only, not shared)")
        return MemoryStateStore()
    raise ConfigurationError(f"Unknown GATE_STORE_BACKEND: {settings.GATE_STORE_BACKEND!r}")
