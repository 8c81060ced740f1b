"""
Security event records
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional


class Severity(str, Enum):
    """Security event severity levels"""
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class SecurityEventType(str, Enum):
    BLOCKED_REQUEST = "BLOCKED_REQUEST"
    HIGH_THREAT_BLOCKED = "HIGH_THREAT_BLOCKED"
    SUSPICIOUS_REQUEST = "SUSPICIOUS_REQUEST"
    IP_BLACKLISTED = "IP_BLACKLISTED"
    BRUTE_FORCE_LOCKOUT = "BRUTE_FORCE_LOCKOUT"
    BRUTE_FORCE_BLOCKED = "BRUTE_FORCE_BLOCKED"
    GEO_ANOMALY = "GEO_ANOMALY"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class SecurityEvent:
    """Immutable security event; payload is exposed read-only"""
    type: str
    severity: Severity
    payload: Mapping[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    timestamp: datetime = field(default_factory=_utcnow)

    def __post_init__(self):
        if isinstance(self.type, SecurityEventType):
            object.__setattr__(self, "type", self.type.value)
        object.__setattr__(self, "severity", Severity(self.severity))
        object.__setattr__(self, "payload", MappingProxyType(dict(self.payload)))

    @property
    def client_ip(self) -> Optional[str]:
        return self.payload.get("ip")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "severity": self.severity.value,
            "payload": dict(self.payload),
            "timestamp": self.timestamp.isoformat(),
        }
