"""
Test IP blacklist and temporary block records.
"""
from unittest.mock import AsyncMock

import pytest

from pitchguard.core.events import SecurityEventType, Severity
from pitchguard.core.store import KeyNamespace
from pitchguard.services.ip_reputation import BlacklistEntry, IPReputationStore
from pitchguard.utils.exceptions import StoreUnavailable


@pytest.fixture
def reputation(memory_store, gate_config, event_log, clock):
    return IPReputationStore(memory_store, gate_config, event_log, clock=clock)


class TestBlacklist:
    """Test long-lived bans."""

    @pytest.mark.asyncio
    async def test_blacklisted_until_ttl_elapses(self, reputation, clock):
        await reputation.blacklist("1.2.3.4", "manual ban", duration_seconds=3600)
        assert await reputation.is_blacklisted("1.2.3.4") is True

        clock.advance(3599)
        assert await reputation.is_blacklisted("1.2.3.4") is True

        clock.advance(1)
        assert await reputation.is_blacklisted("1.2.3.4") is False

    @pytest.mark.asyncio
    async def test_default_duration(self, reputation, memory_store, gate_config):
        entry = await reputation.blacklist("1.2.3.4", "abuse")
        assert entry.duration_seconds == gate_config.blacklist_duration_seconds
        assert await memory_store.ttl(KeyNamespace.BLACKLIST.key("1.2.3.4")) == 86400

    @pytest.mark.asyncio
    async def test_emits_critical_event(self, reputation, event_log):
        await reputation.blacklist("1.2.3.4", "abuse")
        event = event_log.recent(1)[0]
        assert event.type == SecurityEventType.IP_BLACKLISTED.value
        assert event.severity == Severity.CRITICAL
        assert event.payload["reason"] == "abuse"

    @pytest.mark.asyncio
    async def test_entry_keeps_reason(self, reputation, clock):
        await reputation.blacklist("1.2.3.4", "chargeback fraud")
        entry = await reputation.blacklist_entry("1.2.3.4")
        assert entry.reason == "chargeback fraud"
        assert entry.created_at == clock()
        assert await reputation.blacklist_entry("5.6.7.8") is None

    @pytest.mark.asyncio
    async def test_store_failure_fails_open(self, reputation, memory_store):
        memory_store.exists = AsyncMock(side_effect=StoreUnavailable("exists", "blacklist:1.2.3.4"))
        assert await reputation.is_blacklisted("1.2.3.4") is False

    @pytest.mark.asyncio
    async def test_write_failure_returns_none(self, reputation, memory_store, event_log):
        memory_store.set = AsyncMock(side_effect=StoreUnavailable("set", "blacklist:1.2.3.4"))
        assert await reputation.blacklist("1.2.3.4", "abuse") is None
        assert event_log.recent() == []

    def test_entry_from_corrupt_json(self):
        entry = BlacklistEntry.from_json("1.2.3.4", "not json")
        assert entry.reason == "unknown"


class TestTemporaryBlock:
    """Test short automatic containment."""

    @pytest.mark.asyncio
    async def test_block_lifecycle(self, reputation, clock, gate_config):
        assert await reputation.temporary_block("1.2.3.4") is True
        assert await reputation.is_temporarily_blocked("1.2.3.4") is True
        assert await reputation.block_remaining("1.2.3.4") == gate_config.temporary_block_duration_seconds

        clock.advance(gate_config.temporary_block_duration_seconds)
        assert await reputation.is_temporarily_blocked("1.2.3.4") is False
        assert await reputation.block_remaining("1.2.3.4") == 0

    @pytest.mark.asyncio
    async def test_independent_from_blacklist(self, reputation):
        await reputation.temporary_block("1.2.3.4")
        assert await reputation.is_blacklisted("1.2.3.4") is False

        await reputation.blacklist("5.6.7.8", "abuse")
        assert await reputation.is_temporarily_blocked("5.6.7.8") is False

    @pytest.mark.asyncio
    async def test_block_without_expiry_counts_as_full_block(self, reputation, memory_store, gate_config):
        await memory_store.set(KeyNamespace.TEMP_BLOCK.key("1.2.3.4"), "1")
        assert await reputation.block_remaining("1.2.3.4") == gate_config.temporary_block_duration_seconds

    @pytest.mark.asyncio
    async def test_store_failure(self, reputation, memory_store):
        memory_store.set = AsyncMock(side_effect=StoreUnavailable("set", "temp_block:1.2.3.4"))
        assert await reputation.temporary_block("1.2.3.4") is False

        memory_store.ttl = AsyncMock(side_effect=StoreUnavailable("ttl", "temp_block:1.2.3.4"))
        assert await reputation.is_temporarily_blocked("1.2.3.4") is False
