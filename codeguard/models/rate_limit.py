"""
Rate limiting and threat models.

`RateTracker` is internal mutable state (one per tracker key) and is a plain
dataclass. Everything returned to callers is a pydantic model.
"""

import ipaddress
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Deque, Dict, List, Optional

from pydantic import BaseModel, Field


class DenialReason(str, Enum):
    """
    Reasons attached to a rate limit decision.

    - BLOCKED: IP, user or session is on a blocklist
    - LOCKED_OUT: temporary backoff after repeated failures
    - RATE_LIMIT_EXCEEDED: a quota dimension is exhausted
    - ATTACK_DETECTED: request matched an attack signature
    - SUSPICIOUS_BEHAVIOR: strict-mode actor still scoring as hostile
    - SYSTEM_ERROR: internal fault (decision fails open)
    """
    BLOCKED = "BLOCKED"
    LOCKED_OUT = "LOCKED_OUT"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    ATTACK_DETECTED = "ATTACK_DETECTED"
    SUSPICIOUS_BEHAVIOR = "SUSPICIOUS_BEHAVIOR"
    SYSTEM_ERROR = "SYSTEM_ERROR"


class ThreatSeverity(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"

    @classmethod
    def from_score(cls, score: int) -> "ThreatSeverity":
        """Map a 0-100 severity score to a band."""
        if score >= 90:
            return cls.CRITICAL
        if score >= 70:
            return cls.HIGH
        if score >= 50:
            return cls.MEDIUM
        return cls.LOW


class SignatureMatch(BaseModel):
    """
    One attack signature family matched in one field.

    Holds the pattern, never the matched text, so payloads do not leak into
    threat records or logs.
    """
    threat_type: str
    field: str = "input"
    confidence: int = Field(..., ge=0, le=100)
    pattern: str


_FORWARDING_HEADERS = ("x-forwarded-for", "x-real-ip", "cf-connecting-ip", "x-client-ip")


class RateLimitRequest(BaseModel):
    """Everything the limiter looks at for one request."""
    ip: str = "unknown"
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    api_key: Optional[str] = None
    path: str = "/"
    method: str = "GET"
    user_agent: Optional[str] = None
    headers: Dict[str, str] = Field(default_factory=dict)
    body: Optional[Any] = None

    @staticmethod
    def client_ip(headers: Dict[str, str], remote_addr: Optional[str] = None) -> str:
        """
        Resolve the client IP from forwarding headers, falling back to the peer.

        Only syntactically valid addresses are accepted.
        """
        lowered = {k.lower(): v for k, v in headers.items()}
        for header in _FORWARDING_HEADERS:
            value = lowered.get(header)
            if not value:
                continue
            candidate = value.split(",")[0].strip()
            try:
                return str(ipaddress.ip_address(candidate))
            except ValueError:
                continue
        return remote_addr or "unknown"


class RateDecision(BaseModel):
    """Result of check_rate_limit."""
    allowed: bool
    reason: Optional[DenialReason] = None
    retry_after: Optional[float] = Field(None, description="Seconds until a retry may succeed")
    risk_score: int = Field(0, ge=0, le=100)
    remaining: Optional[int] = None
    limit: Optional[int] = None
    dimension: Optional[str] = None
    flags: List[str] = Field(default_factory=list)
    strict_mode: bool = False
    threat_id: Optional[str] = None


class LockoutOutcome(BaseModel):
    """Result of recording a failed attempt."""
    failed_attempts: int
    locked: bool = False
    retry_after: Optional[float] = None
    lockout_count: int = 0
    permanent_ban: bool = False


class ThreatRecord(BaseModel):
    """A detected attack or a manual/automatic ban."""
    threat_id: str
    ip: Optional[str] = None
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    threat_types: List[str] = Field(default_factory=list)
    severity: ThreatSeverity
    severity_score: int = Field(0, ge=0, le=100)
    detected_at: datetime
    banned_until: Optional[datetime] = Field(None, description="None means permanent")
    resolved: bool = False
    resolved_at: Optional[datetime] = None
    path: Optional[str] = None
    evidence: List[str] = Field(default_factory=list, description="field:threat_type pairs")

    @property
    def is_permanent(self) -> bool:
        return self.banned_until is None

    def retry_after(self, now: datetime) -> Optional[float]:
        if self.banned_until is None:
            return None
        return max(0.0, (self.banned_until - now).total_seconds())

    def is_expired(self, now: datetime) -> bool:
        return self.banned_until is not None and self.banned_until <= now


@dataclass
class RateTracker:
    """Sliding-window state for one tracker key."""
    requests: Deque[float] = field(default_factory=deque)
    failed_attempts: int = 0
    lockout_until: float = 0.0
    lockout_count: int = 0
    risk_score: int = 0
    strict_until: float = 0.0
    last_activity: float = 0.0

    def prune(self, now: float, window_seconds: float):
        """Drop timestamps that left the window."""
        cutoff = now - window_seconds
        while self.requests and self.requests[0] <= cutoff:
            self.requests.popleft()

    def is_locked(self, now: float) -> bool:
        return self.lockout_until > now

    def in_strict_mode(self, now: float) -> bool:
        return self.strict_until > now


class BehaviorScore(BaseModel):
    """Behavioral risk for one request."""
    score: int = Field(0, ge=0, le=100)
    factors: List[str] = Field(default_factory=list)
