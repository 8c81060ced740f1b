"""
Pytest configuration and shared fixtures for all tests.
"""
import sys
from pathlib import Path
from typing import Dict, List, Optional

import pytest

# Add backend directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from pitchguard.core.config import GateConfig
from pitchguard.core.events import SecurityEvent
from pitchguard.core.gate import Gate
from pitchguard.core.patterns import RequestFingerprint
from pitchguard.core.store import MemoryStateStore
from pitchguard.db.audit import AuditFilter, AuditSink
from pitchguard.services.event_log import SecurityEventLog
from pitchguard.services.geo_anomaly import GeoLocation, GeoLocator
from pitchguard.utils.exceptions import DurableSinkFailure


class FakeClock:
    """Controllable wall clock shared by the store and the gate components."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class InMemoryAuditSink(AuditSink):
    """Audit sink keeping events in a list; ``failing`` simulates an outage."""

    def __init__(self):
        self.events: List[SecurityEvent] = []
        self.failing = False
        self.closed = False

    async def insert(self, event: SecurityEvent) -> None:
        if self.failing:
            raise DurableSinkFailure("audit database unreachable")
        self.events.append(event)

    async def count(self, audit_filter: AuditFilter) -> int:
        if self.failing:
            raise DurableSinkFailure("audit database unreachable")
        return sum(1 for event in self.events if audit_filter.matches(event))

    async def close(self) -> None:
        self.closed = True


class StaticGeoLocator(GeoLocator):
    """Locator answering from a mutable ip -> location table."""

    def __init__(self, locations: Optional[Dict[str, GeoLocation]] = None):
        self.locations = dict(locations or {})
        self.calls = 0

    async def lookup(self, ip: str) -> Optional[GeoLocation]:
        self.calls += 1
        return self.locations.get(ip)


# Two points roughly 1,300 km apart (Berlin, Madrid) and one close by (Potsdam)
BERLIN = GeoLocation(latitude=52.52, longitude=13.405, country="DE")
POTSDAM = GeoLocation(latitude=52.39, longitude=13.065, country="DE")
MADRID = GeoLocation(latitude=40.4168, longitude=-3.7038, country="ES")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def memory_store(clock) -> MemoryStateStore:
    return MemoryStateStore(clock=clock)


@pytest.fixture
def audit_sink() -> InMemoryAuditSink:
    return InMemoryAuditSink()


@pytest.fixture
def gate_config() -> GateConfig:
    return GateConfig()


@pytest.fixture
def event_log(audit_sink) -> SecurityEventLog:
    return SecurityEventLog(sink=audit_sink, capacity=1000, alert_capacity=100)


@pytest.fixture
def geo_locator() -> StaticGeoLocator:
    return StaticGeoLocator()


@pytest.fixture
def gate(gate_config, memory_store, event_log, geo_locator, clock) -> Gate:
    """Fully wired gate on the in-memory store."""
    return Gate.build(gate_config, memory_store, event_log, locator=geo_locator, clock=clock)


@pytest.fixture
def make_fingerprint(clock):
    def _make(ip: str = "203.0.113.10", **kwargs) -> RequestFingerprint:
        kwargs.setdefault("timestamp", clock())
        kwargs.setdefault("client_identifier", "Mozilla/5.0 (X11; Linux x86_64)")
        return RequestFingerprint(client_ip=ip, **kwargs)

    return _make
