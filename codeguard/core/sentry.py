"""
Sentry initialization and error monitoring configuration.

Captures:
- Unexpected faults in issuance and validation
- Background job failures
- Rate limiter faults (which fail open)

Privacy:
- send_default_pii is off
- Keys that look like secrets are redacted before events leave the process
- Raw access codes are never attached to events
"""

import logging
from typing import Any, Dict, Optional

import sentry_sdk
from sentry_sdk.integrations.logging import LoggingIntegration

logger = logging.getLogger(__name__)

SENSITIVE_KEYS = [
    "password",
    "token",
    "secret",
    "api_key",
    "auth",
    "raw_code",
    "code_value",
    "secret_hash",
    "signature",
    "salt",
    "encryption_key",
]

REDACTED = "[REDACTED]"


def init_sentry(dsn: Optional[str], environment: str = "development", release: Optional[str] = None) -> bool:
    """
    Initialize Sentry error monitoring.

    Only initializes if a DSN is configured.

    Returns:
        True if Sentry was initialized
    """
    if not dsn:
        logger.info("Sentry DSN not configured - error monitoring disabled")
        return False

    sentry_sdk.init(
        dsn=dsn,
        environment=environment,
        release=release,

        integrations=[
            LoggingIntegration(
                level=logging.INFO,  # Breadcrumbs from info and above
                event_level=logging.ERROR,  # Send errors to Sentry
            ),
        ],

        traces_sample_rate=0.1 if environment.lower() == "production" else 1.0,
        sample_rate=1.0,

        # Privacy Settings
        send_default_pii=False,
        max_breadcrumbs=50,

        before_send=filter_sensitive_data,
    )

    logger.info(f"Sentry initialized - environment: {environment}")
    return True


def redact_dict(obj: Any) -> Any:
    """Return a copy of obj with the values of sensitive keys replaced."""
    if isinstance(obj, dict):
        return {
            key: REDACTED
            if isinstance(key, str) and any(sensitive in key.lower() for sensitive in SENSITIVE_KEYS)
            else redact_dict(value)
            for key, value in obj.items()
        }
    if isinstance(obj, list):
        return [redact_dict(item) for item in obj]
    return obj


def filter_sensitive_data(event, hint):
    """
    Filter sensitive data before sending to Sentry.

    Args:
        event: Sentry event dict
        hint: Additional context

    Returns:
        Modified event
    """
    for section in ("extra", "contexts", "tags"):
        if event.get(section):
            event[section] = redact_dict(event[section])

    breadcrumbs = event.get("breadcrumbs")
    if isinstance(breadcrumbs, dict):
        for crumb in breadcrumbs.get("values", []):
            if isinstance(crumb, dict) and crumb.get("data"):
                crumb["data"] = redact_dict(crumb["data"])

    return event


def capture_business_error(
    error: Exception,
    context: Dict[str, Any],
    level: str = "error"
):
    """
    Capture an unexpected fault with enriched context.

    Args:
        error: The exception that occurred
        context: Business context (code_id, institution_id, operation, ...)
        level: Sentry level (info, warning, error, fatal)

    Example:
        capture_business_error(
            error=e,
            context={"operation": "issue_code", "institution_id": "ORG1"},
        )
    """
    safe_context = redact_dict(context)

    sentry_sdk.capture_exception(
        error,
        level=level,
        extras=safe_context,
    )

    logger.error(
        f"Business error captured: {type(error).__name__}",
        extra={"error_context": safe_context},
        exc_info=error
    )
