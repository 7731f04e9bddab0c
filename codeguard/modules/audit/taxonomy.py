"""
Activity taxonomy and redaction for audit entries.

Severity and category come from static tables keyed by activity name.
Unlisted activities are INFO/OTHER, and a failed unlisted activity is
raised to WARNING.

Redaction replaces the value of any key containing password, token,
secret, key or auth with "***REDACTED***", at any depth.
"""

import re
from typing import Any, Dict, Optional

from codeguard.models.audit import LogCategory, LogSeverity

REDACTED_VALUE = "***REDACTED***"

SENSITIVE_KEY_PARTS = ("password", "token", "secret", "key", "auth")

CRITICAL_ACTIVITIES = {
    "SECURITY_VIOLATION",
    "THREAT_DETECTED",
    "VALIDATION_THREAT_DETECTED",
    "HIGH_RISK_CODE_BLOCKED",
    "SYSTEM_ERROR",
    "DATA_BREACH",
}

WARNING_ACTIVITIES = {
    "LOGIN_FAILED",
    "PASSWORD_CHANGE",
    "PERMISSION_DENIED",
    "INVALID_CODE",
    "RATE_LIMIT_EXCEEDED",
    "VALIDATION_FAILED",
    "VALIDATION_ERROR",
    "CODE_SUSPENDED",
    "CODE_DELETED",
    "DATA_EXPORT",
    "ANOMALY_DETECTED",
    "SYSTEM_RESET",
}

CATEGORIES = {
    LogCategory.AUTH: {
        "LOGIN",
        "LOGOUT",
        "LOGIN_FAILED",
        "PASSWORD_CHANGE",
        "VALID_CODE_USED",
        "INVALID_CODE",
        "VALIDATION_FAILED",
    },
    LogCategory.SECURITY: {
        "SECURITY_VIOLATION",
        "THREAT_DETECTED",
        "VALIDATION_THREAT_DETECTED",
        "RATE_LIMIT_EXCEEDED",
        "HIGH_RISK_CODE_BLOCKED",
        "PERMISSION_DENIED",
        "ANOMALY_DETECTED",
        "CODE_SUSPENDED",
    },
    LogCategory.DATA: {
        "DATA_ACCESS",
        "DATA_EXPORT",
        "DATA_DELETE",
        "DATA_BREACH",
        "CODE_DELETED",
        "BULK_DELETE_EXPIRED",
    },
    LogCategory.BUSINESS: {
        "CODE_CREATED",
        "CODE_UPDATED",
        "CODE_EXTENDED",
        "CODE_REACTIVATED",
        "CODE_LIMITS_ADJUSTED",
    },
    LogCategory.SYSTEM: {
        "SYSTEM_ERROR",
        "SYSTEM_STARTUP",
        "SYSTEM_SHUTDOWN",
        "SYSTEM_RESET",
        "CONFIG_CHANGE",
        "VALIDATION_ERROR",
    },
}

_ACTIVITY_CATEGORY = {
    activity: category
    for category, activities in CATEGORIES.items()
    for activity in activities
}


def severity_for(activity: str, success: bool = True, hint: Optional[LogSeverity] = None) -> LogSeverity:
    """
    Severity of an activity. A hint can raise the table severity, never lower it.
    """
    if activity in CRITICAL_ACTIVITIES:
        severity = LogSeverity.CRITICAL
    elif activity in WARNING_ACTIVITIES or not success:
        severity = LogSeverity.WARNING
    else:
        severity = LogSeverity.INFO

    if hint is not None and hint.rank > severity.rank:
        return hint
    return severity


def category_for(activity: str) -> LogCategory:
    return _ACTIVITY_CATEGORY.get(activity, LogCategory.OTHER)


def is_sensitive_key(key: Any) -> bool:
    return isinstance(key, str) and any(part in key.lower() for part in SENSITIVE_KEY_PARTS)


def redact(value: Any) -> Any:
    """Redacted copy of `value`. The input is not modified."""
    if isinstance(value, dict):
        return {
            k: REDACTED_VALUE if is_sensitive_key(k) else redact(v)
            for k, v in value.items()
        }
    if isinstance(value, (list, tuple, set)):
        return [redact(item) for item in value]
    return value


_BROWSERS = [
    ("Edge", re.compile(r"Edg(e|A|iOS)?/")),
    ("Opera", re.compile(r"OPR/|Opera")),
    ("Chrome", re.compile(r"Chrome/|CriOS/")),
    ("Firefox", re.compile(r"Firefox/|FxiOS/")),
    ("Safari", re.compile(r"Safari/")),
    ("Internet Explorer", re.compile(r"MSIE |Trident/")),
]

_PLATFORMS = [
    ("iOS", re.compile(r"iPhone|iPad|iPod")),
    ("Android", re.compile(r"Android")),
    ("Windows", re.compile(r"Windows")),
    ("macOS", re.compile(r"Macintosh|Mac OS X")),
    ("Linux", re.compile(r"Linux")),
]


def detect_browser(user_agent: Optional[str]) -> Dict[str, Any]:
    """
    Browser and platform parsed from a user agent string.

    Usage:
        detect_browser("Mozilla/5.0 (Windows NT 10.0) ... Chrome/120.0 Safari/537.36")
        # {"browser": "Chrome", "platform": "Windows", "is_mobile": False}
    """
    agent = user_agent or ""
    browser = next((name for name, pattern in _BROWSERS if pattern.search(agent)), "Unknown")
    platform = next((name for name, pattern in _PLATFORMS if pattern.search(agent)), "Unknown")
    return {
        "browser": browser,
        "platform": platform,
        "is_mobile": "Mobile" in agent or platform in ("iOS", "Android"),
    }
