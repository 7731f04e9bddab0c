"""
Admin notification for HIGH and CRITICAL security alerts.

The audit logger's alert queue is the system of record. This module pushes
the serious ones out of process:
- Application logs (WARNING, structured)
- Sentry message at a level mapped from severity

Alerts are deduplicated by title for `rate_limit_seconds`, through Redis
SETEX when a client is configured, otherwise in memory. A Redis failure
never suppresses an alert (fail open).
"""

import logging
import threading
from typing import Any, Dict, Optional

import sentry_sdk

from codeguard.core.timeutil import Clock, utcnow

logger = logging.getLogger(__name__)


class AdminNotifier:
    """
    Deduplicating admin alert sender.

    Usage:
        notifier = AdminNotifier(redis_client=redis.from_url(url))
        notifier.send_admin_alert(
            title="THREAT_DETECTED",
            message="sql_injection from 203.0.113.9",
            severity="CRITICAL",
        )
    """

    def __init__(self, redis_client=None, environment: str = "development", clock: Clock = utcnow):
        self.redis_client = redis_client
        self.environment = environment
        self._clock = clock
        self._sent: Dict[str, float] = {}
        self._lock = threading.Lock()

    def _already_sent(self, title: str, rate_limit_seconds: int) -> bool:
        """Check and set the dedupe marker for `title`."""
        alert_key = f"admin_alert:{title}"

        if self.redis_client is not None:
            try:
                if self.redis_client.get(alert_key):
                    return True
                self.redis_client.setex(alert_key, rate_limit_seconds, "1")
                return False
            except Exception as e:
                # If Redis fails, still send the alert (fail open, not closed)
                logger.warning(f"Redis alert dedupe failed, sending alert anyway: {e}")
                return False

        now = self._clock().timestamp()
        with self._lock:
            last_sent = self._sent.get(alert_key)
            if last_sent is not None and now - last_sent < rate_limit_seconds:
                return True
            self._sent[alert_key] = now
            return False

    def send_admin_alert(
        self,
        title: str,
        message: str,
        severity: str = "MEDIUM",
        extra_data: Optional[Dict[str, Any]] = None,
        rate_limit_seconds: int = 300
    ) -> bool:
        """
        Send alert to admin channels with rate limiting.

        Args:
            title: Alert title, also the dedupe key
            message: Alert message with details
            severity: "CRITICAL", "HIGH", "MEDIUM", "LOW"
            extra_data: Additional metadata (must already be redacted)
            rate_limit_seconds: Minimum seconds between sending the same alert

        Returns:
            True if sent, False if deduplicated
        """
        if self._already_sent(title, rate_limit_seconds):
            logger.info(
                f"Rate limiting: Alert '{title}' already sent within {rate_limit_seconds}s, skipping",
                extra={"title": title, "rate_limit_seconds": rate_limit_seconds}
            )
            return False

        # Note: Don't use 'message' key in extra - conflicts with logging.LogRecord
        alert = {
            "timestamp": self._clock().isoformat(),
            "severity": severity,
            "title": title,
            "alert_message": message,
            "environment": self.environment,
        }

        if extra_data:
            alert["extra_data"] = extra_data

        logger.warning(f"[{severity}] {title}", extra=alert)

        sentry_sdk.capture_message(
            f"[{severity}] {title}",
            level=_get_sentry_level(severity),
            extras=alert
        )

        return True


def _get_sentry_level(severity: str) -> str:
    """
    Map alert severity to Sentry log level.

    Args:
        severity: Alert severity (CRITICAL, HIGH, MEDIUM, LOW)

    Returns:
        Sentry log level (error, warning, info)
    """
    mapping = {
        "CRITICAL": "error",
        "HIGH": "error",
        "MEDIUM": "warning",
        "LOW": "info"
    }
    return mapping.get(severity, "warning")
