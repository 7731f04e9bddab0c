"""
Access code models.

`AccessCode` is the internal record owned by the code repository. It never
holds the raw secret, only a salted hash and an HMAC signature. Everything
that leaves the library goes through `CodeView`, which drops both.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class CodeStatus(str, Enum):
    """
    Lifecycle states of an access code.

    - ACTIVE: usable (initial state)
    - SUSPENDED: blocked by threat, anomaly, risk or manual deactivation
    - EXPIRED: past expires_at (terminal)
    - DELETED: explicitly deleted (terminal)
    """
    ACTIVE = "ACTIVE"
    SUSPENDED = "SUSPENDED"
    EXPIRED = "EXPIRED"
    DELETED = "DELETED"

    @property
    def is_terminal(self) -> bool:
        return self in (CodeStatus.EXPIRED, CodeStatus.DELETED)


class SecurityLevel(str, Enum):
    STANDARD = "STANDARD"
    HIGH = "HIGH"


class RiskLevel(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


class StrengthLabel(str, Enum):
    WEAK = "WEAK"
    MEDIUM = "MEDIUM"
    STRONG = "STRONG"
    VERY_STRONG = "VERY_STRONG"


class SecretHash(BaseModel):
    """Salted key-derivation output for a secret."""
    algorithm: str = "pbkdf2_sha256"
    iterations: int
    salt: str = Field(..., description="Hex-encoded salt")
    hash: str = Field(..., description="Hex-encoded derived key")


class CharsetOptions(BaseModel):
    """Character classes used by the code generator."""
    lowercase: bool = True
    uppercase: bool = True
    digits: bool = True
    special: bool = True
    custom_chars: str = ""


class StrengthReport(BaseModel):
    valid: bool
    errors: List[str] = Field(default_factory=list)
    score: int = 0
    label: StrengthLabel = StrengthLabel.WEAK


class AccessRecord(BaseModel):
    """One successful use of a code."""
    timestamp: datetime
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    session_id: Optional[str] = None
    risk_score: int = 0


class RiskProfile(BaseModel):
    """
    Per-code risk profile.

    `risk_score` is recomputed by the sweep as the base factors plus the
    accumulated `adjustment` (threat penalties and post-use feedback).
    """
    risk_score: int = Field(0, ge=0, le=100)
    overall_risk: RiskLevel = RiskLevel.LOW
    factors: List[str] = Field(default_factory=list)
    adjustment: int = 0
    last_updated: Optional[datetime] = None

    def add_factor(self, factor: str, limit: int = 20):
        if factor in self.factors:
            self.factors.remove(factor)
        self.factors.append(factor)
        del self.factors[:-limit]


class UsagePattern(BaseModel):
    """Usage indicators derived by the adaptive sweep."""
    usage_per_day: float = 0.0
    off_hours_ratio: float = 0.0
    distinct_ips: int = 0
    average_access_risk: float = 0.0
    indicators: List[str] = Field(default_factory=list)
    risk_level: RiskLevel = RiskLevel.LOW
    multiplier: float = 1.0
    analyzed_at: Optional[datetime] = None


class AccessCode(BaseModel):
    """Internal access code record. Never returned to callers as-is."""
    code_id: str
    institution_id: str
    type: str
    created_at: datetime
    expires_at: datetime
    status: CodeStatus = CodeStatus.ACTIVE
    usage_count: int = 0
    max_usage: Optional[int] = None
    security_level: SecurityLevel = SecurityLevel.STANDARD
    risk_profile: RiskProfile = Field(default_factory=RiskProfile)
    usage_pattern: Optional[UsagePattern] = None
    access_history: List[AccessRecord] = Field(default_factory=list)
    failure_times: List[datetime] = Field(default_factory=list)
    last_accessed: Optional[datetime] = None
    suspension_reason: Optional[str] = None
    code_length: int = 0
    metadata: Dict[str, Any] = Field(default_factory=dict)

    # Secret material
    secret_hash: SecretHash
    signature: str

    @property
    def is_active(self) -> bool:
        return self.status == CodeStatus.ACTIVE

    @property
    def risk_score(self) -> int:
        return self.risk_profile.risk_score

    @property
    def lifetime_seconds(self) -> float:
        return max((self.expires_at - self.created_at).total_seconds(), 1.0)

    def is_expired(self, now: datetime) -> bool:
        return self.status == CodeStatus.EXPIRED or now >= self.expires_at

    def to_view(self) -> "CodeView":
        """Sanitized copy safe to hand to callers."""
        return CodeView(
            code_id=self.code_id,
            institution_id=self.institution_id,
            type=self.type,
            status=self.status,
            is_active=self.is_active,
            created_at=self.created_at,
            expires_at=self.expires_at,
            usage_count=self.usage_count,
            max_usage=self.max_usage,
            security_level=self.security_level,
            risk_score=self.risk_profile.risk_score,
            overall_risk=self.risk_profile.overall_risk,
            last_accessed=self.last_accessed,
            metadata=dict(self.metadata),
        )


class CodeView(BaseModel):
    """Sanitized access code (no secret, hash or salt)."""
    code_id: str
    institution_id: str
    type: str
    status: CodeStatus
    is_active: bool
    created_at: datetime
    expires_at: datetime
    usage_count: int
    max_usage: Optional[int] = None
    security_level: SecurityLevel
    risk_score: int
    overall_risk: RiskLevel
    last_accessed: Optional[datetime] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class IssueOptions(BaseModel):
    """Optional parameters for issuing a code."""
    length: Optional[int] = Field(None, description="Generated code length (default from policy)")
    expiry_hours: Optional[float] = Field(None, gt=0, description="Override policy expiry")
    max_usage: Optional[int] = Field(None, gt=0)
    created_by: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    session_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class IssuedCode(BaseModel):
    """
    Result of issuance.

    `raw_code` is the only time the secret leaves the library.
    """
    code_id: str
    raw_code: str
    expires_at: datetime
    type: str
    security_level: SecurityLevel
    status: CodeStatus

    def __repr__(self):
        return f"<IssuedCode {self.code_id} type={self.type}>"


class StatusPatch(BaseModel):
    """Fields accepted by update_status."""
    is_active: Optional[bool] = None
    max_usage: Optional[int] = None
    reason: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


class CodeSearchFilters(BaseModel):
    institution_id: Optional[str] = None
    type: Optional[str] = None
    status: Optional[CodeStatus] = None
    is_active: Optional[bool] = None
    is_expired: Optional[bool] = None
    security_level: Optional[SecurityLevel] = None


class ValidationContext(BaseModel):
    """Caller context for a validation attempt."""
    ip_address: str = "unknown"
    user_agent: Optional[str] = None
    session_id: Optional[str] = None
    user_id: Optional[str] = None
    api_key: Optional[str] = None
    path: str = "/codes/validate"
    headers: Dict[str, str] = Field(default_factory=dict)


class RiskAssessment(BaseModel):
    """Composite validation-time risk."""
    risk_score: int = Field(0, ge=0, le=100)
    factors: List[str] = Field(default_factory=list)

    @property
    def trust_score(self) -> int:
        return 100 - self.risk_score


class ValidationResult(BaseModel):
    """Outcome of validate_code. Never contains the secret, hash or salt."""
    is_valid: bool
    error: Optional[str] = None
    message_key: Optional[str] = None
    risk_score: int = 0
    retry_after: Optional[float] = None
    code_data: Optional[CodeView] = None
    risk_factors: List[str] = Field(default_factory=list)

    @property
    def trust_score(self) -> int:
        return 100 - self.risk_score

    @classmethod
    def from_error(cls, error) -> "ValidationResult":
        return cls(
            is_valid=False,
            error=error.code,
            message_key=error.message_key,
            risk_score=error.risk_score,
            retry_after=getattr(error, "retry_after", None),
        )


class CodeStats(BaseModel):
    """Per-code statistics."""
    code_id: str
    institution_id: str
    type: str
    status: CodeStatus
    is_active: bool
    created_at: datetime
    expires_at: datetime
    time_until_expiry: float = Field(..., description="Seconds until expiry (0 once expired)")
    is_expired: bool
    usage_count: int
    max_usage: Optional[int] = None
    usage_percentage: float
    risk_score: int
    overall_risk: RiskLevel
    last_accessed: Optional[datetime] = None


class SystemStats(BaseModel):
    """Aggregate statistics across all codes."""
    generated_at: datetime
    total_codes: int = 0
    active_codes: int = 0
    suspended_codes: int = 0
    expired_codes: int = 0
    high_risk_codes: int = 0
    total_usage: int = 0
    average_usage: float = 0.0
    by_type: Dict[str, int] = Field(default_factory=dict)
    top_institutions: List[Dict[str, Any]] = Field(default_factory=list)
    risk_distribution: Dict[str, int] = Field(default_factory=dict)
    blocked_ips: int = 0
    open_alerts: int = 0
    status: str = "HEALTHY"
    recommendations: List[str] = Field(default_factory=list)


class SweepReport(BaseModel):
    """Summary of one adaptive sweep."""
    started_at: datetime
    codes_scanned: int = 0
    limits_tightened: int = 0
    anomalies: int = 0
    suspended: int = 0
    expired_removed: int = 0
    high_risk: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")
