"""
Internal security API tests
"""
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from pitchguard.core.config import Settings
from pitchguard.core.events import SecurityEventType
from pitchguard.core.store import KeyNamespace
from pitchguard.main import create_app
from pitchguard.tasks.sweeper import BackgroundSweeper

pytestmark = pytest.mark.integration

TOKEN = "internal-secret"
BASE = "/api-internal/v1/security"
AUTH = {"X-Internal-Token": TOKEN}


def _settings(**overrides):
    values = dict(
        GATE_STORE_BACKEND="memory",
        GATE_AUDIT_ENABLED=False,
        INTERNAL_API_TOKEN=TOKEN,
    )
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def sweeper(memory_store, event_log, gate_config, clock):
    return BackgroundSweeper(memory_store, event_log, gate_config, clock=clock)


@pytest.fixture
def app(gate, sweeper):
    app = create_app(_settings())
    app.state.gate = gate
    app.state.sweeper = sweeper
    return app


@pytest_asyncio.fixture
async def client(app):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


class TestInternalToken:
    """Test operator authentication."""

    @pytest.mark.asyncio
    async def test_missing_token(self, client):
        response = await client.get(f"{BASE}/stats")
        assert response.status_code == 401
        assert response.json()["error"] == "AUTHENTICATION_ERROR"

    @pytest.mark.asyncio
    async def test_wrong_token(self, client):
        response = await client.get(f"{BASE}/stats", headers={"X-Internal-Token": "guess"})
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_disabled_when_no_token_configured(self, gate, sweeper):
        app = create_app(_settings(INTERNAL_API_TOKEN=None))
        app.state.gate = gate
        app.state.sweeper = sweeper
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
            response = await ac.get(f"{BASE}/stats", headers=AUTH)
        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_gate_not_initialized(self, app, client):
        app.state.gate = None
        response = await client.get(f"{BASE}/stats", headers=AUTH)
        assert response.status_code == 503
        assert response.json()["error"] == "GATE_UNAVAILABLE"


class TestReadEndpoints:
    """Test status, events, alerts, stats and config."""

    @pytest.mark.asyncio
    async def test_status(self, client):
        response = await client.get(f"{BASE}/status", headers=AUTH)
        assert response.status_code == 200
        data = response.json()
        assert data["is_healthy"] is True
        assert data["threat_level"] == "NORMAL"
        assert data["sweeper_running"] is False
        assert data["last_cleanup"] is None

    @pytest.mark.asyncio
    async def test_status_reports_last_cleanup(self, client):
        await client.post(f"{BASE}/cleanup", headers=AUTH)
        response = await client.get(f"{BASE}/status", headers=AUTH)
        assert response.json()["last_cleanup"]["stale_failed_attempts"] == 0

    @pytest.mark.asyncio
    async def test_events_newest_first(self, client, gate):
        await gate.reputation.blacklist("198.51.100.1", "first")
        await gate.reputation.blacklist("198.51.100.2", "second")

        response = await client.get(f"{BASE}/events", params={"limit": 1}, headers=AUTH)
        assert response.status_code == 200
        events = response.json()
        assert len(events) == 1
        assert events[0]["type"] == SecurityEventType.IP_BLACKLISTED.value
        assert events[0]["payload"]["ip"] == "198.51.100.2"

    @pytest.mark.asyncio
    async def test_events_limit_validated(self, client):
        response = await client.get(f"{BASE}/events", params={"limit": 0}, headers=AUTH)
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_alerts(self, client, gate, make_fingerprint):
        await gate.evaluate(
            make_fingerprint(
                "198.51.100.9",
                path="/files/../../etc/passwd",
                body="<script>alert(1)</script>; cat /etc/shadow",
                client_identifier="sqlmap/1.7",
            )
        )

        response = await client.get(f"{BASE}/alerts", headers=AUTH)
        alerts = response.json()
        assert len(alerts) == 1
        assert alerts[0]["ip"] == "198.51.100.9"

    @pytest.mark.asyncio
    async def test_stats(self, client):
        await client.get("/api-internal/v1/security/config", headers=AUTH)
        response = await client.get(f"{BASE}/stats", headers=AUTH)
        stats = response.json()
        # Operator calls pass through the gate like any other request
        assert stats["requests_evaluated"] >= 1
        assert "avg_evaluation_time" in stats

    @pytest.mark.asyncio
    async def test_config(self, client, gate_config):
        response = await client.get(f"{BASE}/config", headers=AUTH)
        policy = response.json()
        assert policy["threat_score_threshold"] == gate_config.threat_score_threshold
        assert policy["detectors"]["sql_injection"] == 30


class TestModeration:
    """Test manual bans and address inspection."""

    @pytest.mark.asyncio
    async def test_blacklist_then_blocked(self, client):
        response = await client.post(
            f"{BASE}/blacklist",
            json={"ip": "198.51.100.7", "reason": "match fixing", "duration_seconds": 600},
            headers=AUTH,
        )
        assert response.status_code == 201
        entry = response.json()
        assert entry["ip"] == "198.51.100.7"
        assert entry["duration_seconds"] == 600

        blocked = await client.get("/", headers={"X-Forwarded-For": "198.51.100.7"})
        assert blocked.status_code == 403
        assert blocked.json()["reason"] == "blacklisted"

    @pytest.mark.asyncio
    async def test_blacklist_default_duration(self, client, gate_config):
        response = await client.post(f"{BASE}/blacklist", json={"ip": "2001:db8::1", "reason": "spam"}, headers=AUTH)
        assert response.status_code == 201
        assert response.json()["duration_seconds"] == gate_config.blacklist_duration_seconds

    @pytest.mark.asyncio
    async def test_blacklist_invalid_ip(self, client):
        response = await client.post(f"{BASE}/blacklist", json={"ip": "not-an-ip", "reason": "spam"}, headers=AUTH)
        assert response.status_code == 422
        assert response.json()["error"] == "VALIDATION_ERROR"

    @pytest.mark.asyncio
    async def test_blacklist_rejects_non_positive_duration(self, client):
        response = await client.post(
            f"{BASE}/blacklist",
            json={"ip": "198.51.100.7", "reason": "spam", "duration_seconds": 0},
            headers=AUTH,
        )
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_ip_status(self, client, gate):
        await gate.reputation.blacklist("198.51.100.8", "abuse")
        for _ in range(2):
            await gate.brute_force.record_failure("198.51.100.8")

        response = await client.get(f"{BASE}/ip/198.51.100.8", headers=AUTH)
        assert response.status_code == 200
        data = response.json()
        assert data["blacklisted"] is True
        assert data["blacklist_reason"] == "abuse"
        assert data["failed_attempts"] == 2
        assert data["brute_force_state"] == "warned"
        assert data["lockout_remaining"] == 0
        assert data["temporary_block_remaining"] == 0

    @pytest.mark.asyncio
    async def test_ip_status_invalid(self, client):
        response = await client.get(f"{BASE}/ip/999.1.1.1", headers=AUTH)
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_cleanup(self, client, memory_store, clock):
        await memory_store.set(KeyNamespace.TEMP_BLOCK.key("198.51.100.3"), "1", ttl=10)
        clock.advance(30)

        response = await client.post(f"{BASE}/cleanup", headers=AUTH)
        assert response.status_code == 200
        assert response.json()["temp_block"] == 1
