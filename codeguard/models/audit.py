"""
Audit trail models.

AuditLogEntry is frozen once built. The behavioral aggregates (IPActivity,
BehavioralProfile) are mutable dataclasses guarded by the audit logger's
per-key locks.
"""

from collections import Counter, deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Deque, Dict, List, Optional, Set

from pydantic import BaseModel, ConfigDict, Field


class LogSeverity(str, Enum):
    INFO = "INFO"
    WARNING = "WARNING"
    CRITICAL = "CRITICAL"

    @property
    def rank(self) -> int:
        return {"INFO": 0, "WARNING": 1, "CRITICAL": 2}[self.value]


class LogCategory(str, Enum):
    AUTH = "AUTH"
    DATA = "DATA"
    SECURITY = "SECURITY"
    SYSTEM = "SYSTEM"
    BUSINESS = "BUSINESS"
    OTHER = "OTHER"


class AlertSeverity(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class AuditLogEntry(BaseModel):
    """One immutable audit record. `data` and `metadata` are already redacted."""
    model_config = ConfigDict(frozen=True)

    log_id: str
    timestamp: datetime
    activity: str
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    success: bool = True
    duration_ms: Optional[float] = None
    data: Dict[str, Any] = Field(default_factory=dict)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    severity: LogSeverity = LogSeverity.INFO
    category: LogCategory = LogCategory.OTHER

    def to_json_line(self) -> str:
        return self.model_dump_json()


class Alert(BaseModel):
    alert_id: str
    type: str
    message: str
    severity: AlertSeverity
    data: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime
    acknowledged: bool = False
    acknowledged_at: Optional[datetime] = None


@dataclass
class IPActivity:
    """Rolling per-IP aggregate."""
    first_seen: datetime
    last_seen: datetime
    total: int = 0
    successes: int = 0
    failures: int = 0
    users: Set[str] = field(default_factory=set)
    user_agents: Set[str] = field(default_factory=set)
    recent: Deque[datetime] = field(default_factory=deque)

    @property
    def failure_ratio(self) -> float:
        return self.failures / self.total if self.total else 0.0

    def summary(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "successes": self.successes,
            "failures": self.failures,
            "failure_ratio": round(self.failure_ratio, 3),
            "unique_users": len(self.users),
            "first_seen": self.first_seen.isoformat(),
            "last_seen": self.last_seen.isoformat(),
        }


@dataclass
class BehavioralProfile:
    """Rolling per-user aggregate."""
    first_activity: datetime
    last_activity: datetime
    total: int = 0
    failures: int = 0
    common_ips: Counter = field(default_factory=Counter)
    peak_hours: Counter = field(default_factory=Counter)
    recent: Deque[datetime] = field(default_factory=deque)
    risk_score: int = 0

    def top_ips(self, count: int) -> List[str]:
        return [ip for ip, _ in self.common_ips.most_common(count)]

    def summary(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "failures": self.failures,
            "risk_score": self.risk_score,
            "common_ips": self.top_ips(3),
            "peak_hours": [hour for hour, _ in self.peak_hours.most_common(3)],
            "last_activity": self.last_activity.isoformat(),
        }


class UsageReport(BaseModel):
    generated_at: datetime
    window_start: datetime
    total_activities: int = 0
    successful: int = 0
    failed: int = 0
    success_rate: float = 0.0
    categories: Dict[str, int] = Field(default_factory=dict)
    severities: Dict[str, int] = Field(default_factory=dict)
    top_users: List[Dict[str, Any]] = Field(default_factory=list)
    top_ips: List[Dict[str, Any]] = Field(default_factory=list)
    hourly: List[int] = Field(default_factory=lambda: [0] * 24)
    alerts: List[Alert] = Field(default_factory=list)


class SecurityTrends(BaseModel):
    generated_at: datetime
    window_start: datetime
    threat_alerts: List[Alert] = Field(default_factory=list)
    alerts_in_window: int = 0
    high_risk_users: List[Dict[str, Any]] = Field(default_factory=list)
    suspicious_ips: List[Dict[str, Any]] = Field(default_factory=list)
    security_score: int = Field(100, ge=0, le=100)
