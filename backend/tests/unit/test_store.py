"""
Test shared state store implementations.
"""
import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from pitchguard.core.store import (
    KeyNamespace,
    MemoryStateStore,
    RedisStateStore,
    build_state_store,
)
from pitchguard.utils.exceptions import ConfigurationError, StoreUnavailable


class TestKeyNamespace:
    """Test key construction per component."""

    def test_key_and_pattern(self):
        assert KeyNamespace.LOCKOUT.key("1.2.3.4") == "lockout:1.2.3.4"
        assert KeyNamespace.RATE.key(60, "1.2.3.4") == "rate:60:1.2.3.4"
        assert KeyNamespace.BLACKLIST.pattern == "blacklist:*"

    def test_strip(self):
        assert KeyNamespace.GEO.strip("geo:10.0.0.1") == "10.0.0.1"
        assert KeyNamespace.GEO.strip("other:10.0.0.1") == "other:10.0.0.1"

    def test_namespaces_are_distinct(self):
        values = [namespace.value for namespace in KeyNamespace]
        assert len(values) == len(set(values))


class TestMemoryStateStore:
    """Test the process-local store."""

    @pytest.mark.asyncio
    async def test_set_get_with_ttl(self, memory_store, clock):
        await memory_store.set("k", "v", ttl=10)
        assert await memory_store.get("k") == "v"
        assert await memory_store.ttl("k") == 10

        clock.advance(10)
        assert await memory_store.get("k") is None
        assert await memory_store.exists("k") is False

    @pytest.mark.asyncio
    async def test_ttl_redis_semantics(self, memory_store):
        assert await memory_store.ttl("missing") == -2
        await memory_store.set("forever", "1")
        assert await memory_store.ttl("forever") == -1

    @pytest.mark.asyncio
    async def test_incr_is_atomic_counter(self, memory_store):
        assert await memory_store.incr("c") == 1
        assert await memory_store.incr("c") == 2
        assert await memory_store.get("c") == "2"

    @pytest.mark.asyncio
    async def test_incr_keeps_existing_expiry(self, memory_store, clock):
        await memory_store.incr("c")
        await memory_store.expire("c", 60)
        clock.advance(30)
        await memory_store.incr("c")
        assert await memory_store.ttl("c") == 30

    @pytest.mark.asyncio
    async def test_incr_after_expiry_restarts(self, memory_store, clock):
        await memory_store.incr("c")
        await memory_store.expire("c", 5)
        clock.advance(6)
        assert await memory_store.incr("c") == 1
        assert await memory_store.ttl("c") == -1

    @pytest.mark.asyncio
    async def test_incr_non_integer_is_unavailable(self, memory_store):
        await memory_store.set("c", "abc")
        with pytest.raises(StoreUnavailable):
            await memory_store.incr("c")

    @pytest.mark.asyncio
    async def test_expire_missing_key(self, memory_store):
        assert await memory_store.expire("missing", 10) is False

    @pytest.mark.asyncio
    async def test_lapsed_keys_stay_listed_until_swept(self, memory_store, clock):
        await memory_store.set("blacklist:1.1.1.1", "x", ttl=5)
        await memory_store.set("blacklist:2.2.2.2", "x", ttl=500)
        clock.advance(10)

        keys = await memory_store.keys("blacklist:*")
        assert sorted(keys) == ["blacklist:1.1.1.1", "blacklist:2.2.2.2"]
        assert await memory_store.ttl("blacklist:1.1.1.1") == 0
        assert await memory_store.delete("blacklist:1.1.1.1") == 1
        assert await memory_store.delete("blacklist:1.1.1.1") == 0

    @pytest.mark.asyncio
    async def test_keys_pattern_respects_namespace(self, memory_store):
        await memory_store.set("failed_attempts:1.1.1.1", "1")
        await memory_store.set("failed_attempts_at:1.1.1.1", "1")
        assert await memory_store.keys(KeyNamespace.FAILED_ATTEMPTS.pattern) == ["failed_attempts:1.1.1.1"]


class TestRedisStateStore:
    """Test the redis-backed store against a mocked client."""

    @pytest.mark.asyncio
    async def test_get_passes_through(self):
        client = MagicMock()
        client.get = AsyncMock(return_value="value")
        store = RedisStateStore(client=client)

        assert await store.get("k") == "value"
        client.get.assert_awaited_once_with("k")

    @pytest.mark.asyncio
    async def test_set_uses_expiry(self):
        client = MagicMock()
        client.set = AsyncMock(return_value=True)
        store = RedisStateStore(client=client)

        await store.set("k", "v", ttl=30)
        client.set.assert_awaited_once_with("k", "v", ex=30)

    @pytest.mark.asyncio
    async def test_redis_error_becomes_store_unavailable(self):
        client = MagicMock()
        client.incr = AsyncMock(side_effect=RedisConnectionError("connection refused"))
        store = RedisStateStore(client=client)

        with pytest.raises(StoreUnavailable) as exc_info:
            await store.incr("rate:60:1.2.3.4")
        assert exc_info.value.operation == "incr"
        assert exc_info.value.key == "rate:60:1.2.3.4"

    @pytest.mark.asyncio
    async def test_slow_call_times_out(self):
        async def slow_get(key):
            await asyncio.sleep(1)
            return "late"

        client = MagicMock()
        client.get = slow_get
        store = RedisStateStore(client=client, timeout=0.01)

        with pytest.raises(StoreUnavailable):
            await store.get("k")

    @pytest.mark.asyncio
    async def test_keys_scans(self):
        async def scan_iter(match, count):
            for key in ("lockout:1.1.1.1", "lockout:2.2.2.2"):
                yield key

        client = MagicMock()
        client.scan_iter = scan_iter
        store = RedisStateStore(client=client)

        assert await store.keys("lockout:*") == ["lockout:1.1.1.1", "lockout:2.2.2.2"]

    @pytest.mark.asyncio
    async def test_close(self):
        client = MagicMock()
        client.aclose = AsyncMock()
        store = RedisStateStore(client=client)

        await store.close()
        client.aclose.assert_awaited_once()

    def test_requires_url_or_client(self):
        with pytest.raises(ConfigurationError):
            RedisStateStore()


class TestBuildStateStore:
    """Test startup store selection."""

    def test_memory_backend(self):
        settings = SimpleNamespace(GATE_STORE_BACKEND="memory", REDIS_URL=None, GATE_STORE_TIMEOUT_SECONDS=0.05)
        assert isinstance(build_state_store(settings), MemoryStateStore)

    def test_redis_backend(self):
        settings = SimpleNamespace(
            GATE_STORE_BACKEND="redis",
            REDIS_URL="redis://localhost:6379",
            GATE_STORE_TIMEOUT_SECONDS=0.05,
        )
        store = build_state_store(settings)
        assert isinstance(store, RedisStateStore)
        assert store.timeout == 0.05

    def test_redis_without_url_is_configuration_error(self):
        settings = SimpleNamespace(GATE_STORE_BACKEND="redis", REDIS_URL=None, GATE_STORE_TIMEOUT_SECONDS=0.05)
        with pytest.raises(ConfigurationError):
            build_state_store(settings)

    def test_unknown_backend_is_configuration_error(self):
        settings = SimpleNamespace(GATE_STORE_BACKEND="etcd", REDIS_URL=None, GATE_STORE_TIMEOUT_SECONDS=0.05)
        with pytest.raises(ConfigurationError):
            build_state_store(settings)
