"""
Durable audit sink for security events
"""

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import FrozenSet, Iterable, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from pitchguard.core.events import SecurityEvent, Severity
from pitchguard.core.logging import get_logger
from pitchguard.models.security_event import SecurityEventRecord
from pitchguard.utils.exceptions import DurableSinkFailure

logger = get_logger(__name__)


@dataclass(frozen=True)
class AuditFilter:
    """Time range and severity set for counting audit rows"""
    since: Optional[datetime] = None
    until: Optional[datetime] = None
    severities: FrozenSet[Severity] = frozenset()

    @classmethod
    def build(
        cls,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        severities: Iterable[Severity] = (),
    ) -> "AuditFilter":
        return cls(since=since, until=until, severities=frozenset(Severity(s) for s in severities))

    def matches(self, event: SecurityEvent) -> bool:
        if self.since is not None and event.timestamp < self.since:
            return False
        if self.until is not None and event.timestamp >= self.until:
            return False
        if self.severities and event.severity not in self.severities:
            return False
        return True


class AuditSink(ABC):
    """Append-only store of security events"""

    @abstractmethod
    async def insert(self, event: SecurityEvent) -> None:
        """Persist one event; raises DurableSinkFailure"""

    @abstractmethod
    async def count(self, audit_filter: AuditFilter) -> int:
        """Count persisted events; raises DurableSinkFailure"""

    async def close(self) -> None:
        pass


class SqlAuditSink(AuditSink):
    """Audit sink writing to the ``security_events`` table"""

    def __init__(self, session_factory: async_sessionmaker, engine=None):
        self.session_factory = session_factory
        self.engine = engine

    async def insert(self, event: SecurityEvent) -> None:
        record = SecurityEventRecord(
            id=event.id,
            event_type=event.type,
            severity=event.severity.value,
            client_ip=event.client_ip,
            payload=json.loads(json.dumps(dict(event.payload), default=str)),
            created_at=event.timestamp,
        )
        try:
            async with self.session_factory() as session:
                session.add(record)
                await session.commit()
        except SQLAlchemyError as e:
            raise DurableSinkFailure(f"Failed to persist security event {event.id}", e) from e

    async def count(self, audit_filter: AuditFilter) -> int:
        stmt = select(func.count()).select_from(SecurityEventRecord)
        if audit_filter.since is not None:
            stmt = stmt.where(SecurityEventRecord.created_at >= audit_filter.since)
        if audit_filter.until is not None:
            stmt = stmt.where(SecurityEventRecord.created_at < audit_filter.until)
        if audit_filter.severities:
            stmt = stmt.where(SecurityEventRecord.severity.in_(sorted(s.value for s in audit_filter.severities)))
        try:
            async with self.session_factory() as session:
                result = await session.execute(stmt)
                return int(result.scalar_one())
        except SQLAlchemyError as e:
            raise DurableSinkFailure("Failed to count security events", e) from e

    async def close(self) -> None:
        if self.engine is not None:
            await self.engine.dispose()


def build_audit_sink(settings) -> Optional[AuditSink]:
    """Create the configured audit sink, or None when auditing is disabled"""
    if not settings.GATE_AUDIT_ENABLED:
        logger.info("Security audit sink disabled")
        return None

    from pitchguard.db.database import create_engine_for_url, create_session_factory

    engine = create_engine_for_url(settings.DATABASE_URL, echo=settings.APP_DEBUG)
    return SqlAuditSink(create_session_factory(engine), engine=engine)
