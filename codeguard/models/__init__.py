"""
Models package.

Pydantic models returned by the library plus the internal records and
aggregates owned by each component.
"""

from codeguard.models.access_code import (
    AccessCode,
    CodeStatus,
    CodeView,
    IssuedCode,
    IssueOptions,
    RiskLevel,
    SecurityLevel,
    StatusPatch,
    CodeSearchFilters,
    ValidationContext,
    ValidationResult,
)
from codeguard.models.rate_limit import (
    DenialReason,
    RateDecision,
    RateLimitRequest,
    ThreatRecord,
    ThreatSeverity,
)
from codeguard.models.audit import (
    Alert,
    AlertSeverity,
    AuditLogEntry,
    LogCategory,
    LogSeverity,
)

__all__ = [
    "AccessCode",
    "CodeStatus",
    "CodeView",
    "IssuedCode",
    "IssueOptions",
    "RiskLevel",
    "SecurityLevel",
    "StatusPatch",
    "CodeSearchFilters",
    "ValidationContext",
    "ValidationResult",
    "DenialReason",
    "RateDecision",
    "RateLimitRequest",
    "ThreatRecord",
    "ThreatSeverity",
    "Alert",
    "AlertSeverity",
    "AuditLogEntry",
    "LogCategory",
    "LogSeverity",
]
