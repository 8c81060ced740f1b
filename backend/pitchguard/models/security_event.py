"""
Security event audit model
"""

from sqlalchemy import Column, DateTime, Index, JSON, String

from pitchguard.db.database import Base


class SecurityEventRecord(Base):
    """Append-only audit row for one SecurityEvent"""

    __tablename__ = "security_events"

    id = Column(String(32), primary_key=True)
    event_type = Column(String(64), nullable=False, index=True)
    severity = Column(String(16), nullable=False, index=True)
    client_ip = Column(String(64), nullable=True, index=True)
    payload = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False, index=True)

    __table_args__ = (
        Index("ix_security_events_severity_created_at", "severity", "created_at"),
    )

    def __repr__(self):
        return f"<SecurityEventRecord(id={self.id}, type='{self.event_type}', severity='{self.severity}')>"
