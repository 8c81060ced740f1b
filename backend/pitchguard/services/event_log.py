"""
Security event log

Two destinations per event: a bounded, process-local ring buffer for live
inspection, and the durable audit sink. The durable write runs as a
background task so it never holds up (or fails) the request that produced
the event.
"""

import asyncio
import logging
from collections import deque
from datetime import datetime, timezone
from typing import Any, Deque, Dict, Iterable, List, Optional, Set

from pitchguard.core.events import SecurityEvent, SecurityEventType, Severity
from pitchguard.core.logging import get_logger, log_security_event, log_system_event
from pitchguard.db.audit import AuditFilter, AuditSink
from pitchguard.utils.exceptions import DurableSinkFailure

logger = get_logger(__name__)


class SecurityEventLog:
    """Ring buffer plus durable audit trail for security events"""

    def __init__(
        self,
        sink: Optional[AuditSink] = None,
        capacity: int = 1000,
        alert_capacity: int = 100,
    ):
        self.sink = sink
        self.capacity = capacity
        self._events: Deque[SecurityEvent] = deque(maxlen=capacity)
        self._alerts: Deque[Dict[str, Any]] = deque(maxlen=alert_capacity)
        self._pending: Set[asyncio.Task] = set()
        self.stats = {
            "events_appended": 0,
            "durable_writes": 0,
            "durable_failures": 0,
            "alerts_raised": 0,
        }

    async def append(self, event: SecurityEvent) -> SecurityEvent:
        """Record ``event``; never raises because of the durable sink"""
        self._events.append(event)
        self.stats["events_appended"] += 1
        log_security_event(
            event.type,
            event.severity.value,
            ip_address=event.client_ip,
            details=dict(event.payload),
            event_id=event.id,
        )

        if self.sink is not None:
            task = asyncio.create_task(self._write_durable(event))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)
        return event

    async def emit(self, event_type: SecurityEventType, severity: Severity, **payload: Any) -> SecurityEvent:
        return await self.append(SecurityEvent(type=event_type, severity=severity, payload=payload))

    async def _write_durable(self, event: SecurityEvent) -> None:
        try:
            await self.sink.insert(event)
            self.stats["durable_writes"] += 1
        except DurableSinkFailure as e:
            self.stats["durable_failures"] += 1
            logger.warning(f"Durable audit write failed for event {event.id}: {e}")
        except Exception as e:
            self.stats["durable_failures"] += 1
            logger.error(f"Unexpected audit sink error for event {event.id}: {e}", exc_info=True)

    def recent(self, n: int = 50) -> List[SecurityEvent]:
        """Newest first"""
        if n <= 0:
            return []
        events = list(self._events)
        events.reverse()
        return events[:n]

    def count_recent(self, severities: Iterable[Severity] = (), since: Optional[datetime] = None) -> int:
        """Count buffered events, a best-effort per-process view"""
        audit_filter = AuditFilter.build(since=since, severities=severities)
        return sum(1 for event in self._events if audit_filter.matches(event))

    async def count(self, audit_filter: AuditFilter) -> int:
        """Count from the durable sink, falling back to the ring buffer"""
        if self.sink is not None:
            try:
                return await self.sink.count(audit_filter)
            except DurableSinkFailure as e:
                logger.warning(f"Audit count unavailable, using in-process buffer: {e}")
        return sum(1 for event in self._events if audit_filter.matches(event))

    async def raise_alert(self, alert_type: str, ip: str, threat_score: int, details: Dict[str, Any] = None) -> Dict[str, Any]:
        """Internal-only alert, kept out of any user-facing channel"""
        alert = {
            "type": alert_type,
            "ip": ip,
            "threat_score": threat_score,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "details": details or {},
            "read": False,
        }
        self._alerts.append(alert)
        self.stats["alerts_raised"] += 1
        log_system_event("Security threat detected", level=logging.ERROR, alert_type=alert_type, ip=ip, threat_score=threat_score)
        return alert

    def recent_alerts(self, n: int = 20) -> List[Dict[str, Any]]:
        alerts = list(self._alerts)
        alerts.reverse()
        return alerts[:max(n, 0)]

    async def flush(self) -> None:
        """Wait for in-flight durable writes"""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def close(self) -> None:
        await self.flush()
        if self.sink is not None:
            await self.sink.close()
