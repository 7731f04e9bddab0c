"""
Error taxonomy surfaced to callers.

Every error carries a stable `code` (machine readable, e.g. "CODE_EXPIRED")
and a `message_key` (for the caller's localization layer). Internal details
such as exception text or stack traces never go into either.

- ValidationError: malformed input (terminal per attempt)
- NotFoundError: code absent, expired, inactive or over quota (terminal per attempt)
- RateLimitError: quota, lockout, ban or suspicious behavior (honor retry_after)
- ThreatDetectedError: attack signature match (never retried)
- RiskBlockedError: composite risk score over threshold
- SystemFaultError: unexpected internal fault
"""

from typing import Any, Dict, Optional


class CodeGuardError(Exception):
    """Base class for errors returned across the library boundary."""

    code = "ERROR"
    message_key = "error.generic"
    default_risk_score = 50

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        code: Optional[str] = None,
        message_key: Optional[str] = None,
        risk_score: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        self.code = code or self.code
        self.message_key = message_key or self.message_key
        self.risk_score = self.default_risk_score if risk_score is None else risk_score
        self.details = details or {}
        super().__init__(message or self.code)

    def to_dict(self) -> Dict[str, Any]:
        """Safe representation for callers."""
        return {"error": self.code, "message_key": self.message_key}


class ValidationError(CodeGuardError):
    """Raised when input is malformed."""
    code = "VALIDATION_ERROR"
    message_key = "error.validation"
    default_risk_score = 0


class NotFoundError(CodeGuardError):
    """Raised when a code is absent, expired, inactive or over its usage cap."""
    code = "CODE_NOT_FOUND"
    message_key = "code.not_found"


class RateLimitError(CodeGuardError):
    """Raised when the rate limiter denies a request."""
    code = "RATE_LIMIT_EXCEEDED"
    message_key = "ratelimit.exceeded"

    def __init__(self, message: Optional[str] = None, *, retry_after: Optional[float] = None, **kwargs):
        self.retry_after = retry_after
        super().__init__(message, **kwargs)

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["retry_after"] = self.retry_after
        return data


class ThreatDetectedError(CodeGuardError):
    """Raised when input matches an attack signature."""
    code = "ATTACK_DETECTED"
    message_key = "security.attack_detected"
    default_risk_score = 95


class RiskBlockedError(CodeGuardError):
    """Raised when the composite risk score crosses the block threshold."""
    code = "RISK_BLOCKED"
    message_key = "security.risk_blocked"
    default_risk_score = 80


class SystemFaultError(CodeGuardError):
    """Raised on an unexpected internal fault."""
    code = "SYSTEM_ERROR"
    message_key = "error.system"
