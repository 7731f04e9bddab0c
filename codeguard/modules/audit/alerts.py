"""
Security alert queue.

Bounded FIFO (oldest alerts drop off first). HIGH and CRITICAL alerts are
also pushed to the AdminNotifier, which logs them, sends them to Sentry and
deduplicates repeats. A notifier failure never loses the queued alert.
"""

import logging
import threading
from collections import deque
from datetime import datetime
from typing import Any, Deque, Dict, List, Optional

from codeguard.core.alerting import AdminNotifier
from codeguard.core.security import generate_identifier
from codeguard.core.timeutil import Clock, utcnow
from codeguard.models.audit import Alert, AlertSeverity
from codeguard.modules.audit.taxonomy import redact

logger = logging.getLogger(__name__)

NOTIFY_SEVERITIES = (AlertSeverity.HIGH, AlertSeverity.CRITICAL)


class AlertQueue:
    """
    Usage:
        queue = AlertQueue(capacity=500, notifier=AdminNotifier())
        alert_id = queue.create_alert("THREAT_DETECTED", "sql_injection from 203.0.113.9", "CRITICAL")
        queue.acknowledge_alert(alert_id)
    """

    def __init__(
        self,
        capacity: int = 500,
        notifier: Optional[AdminNotifier] = None,
        clock: Clock = utcnow,
        notify_cooldown_seconds: int = 300
    ):
        self._alerts: Deque[Alert] = deque(maxlen=capacity)
        self._lock = threading.Lock()
        self.notifier = notifier
        self._clock = clock
        self.notify_cooldown_seconds = notify_cooldown_seconds

    def create_alert(
        self,
        alert_type: str,
        message: str,
        severity: AlertSeverity = AlertSeverity.MEDIUM,
        data: Optional[Dict[str, Any]] = None
    ) -> str:
        """
        Queue an alert and notify admins for HIGH and CRITICAL.

        Returns:
            alert_id (ALERT_ + hex)
        """
        alert = Alert(
            alert_id=generate_identifier("ALERT_"),
            type=alert_type,
            message=message,
            severity=AlertSeverity(severity),
            data=redact(data or {}),
            timestamp=self._clock(),
        )

        with self._lock:
            self._alerts.append(alert)

        logger.info(
            f"Alert created: {alert_type}",
            extra={"alert_id": alert.alert_id, "alert_type": alert_type, "severity": alert.severity.value}
        )

        if self.notifier is not None and alert.severity in NOTIFY_SEVERITIES:
            try:
                self.notifier.send_admin_alert(
                    title=alert_type,
                    message=message,
                    severity=alert.severity.value,
                    extra_data={"alert_id": alert.alert_id, **alert.data},
                    rate_limit_seconds=self.notify_cooldown_seconds,
                )
            except Exception as e:
                logger.error(f"Failed to notify admins of {alert_type}: {e}", exc_info=True)

        return alert.alert_id

    def get_alerts(
        self,
        severity: Optional[AlertSeverity] = None,
        alert_type: Optional[str] = None,
        acknowledged: Optional[bool] = None,
        since: Optional[datetime] = None,
        limit: Optional[int] = None
    ) -> List[Alert]:
        """Alerts matching every given filter, newest first."""
        with self._lock:
            alerts = list(self._alerts)

        alerts.reverse()
        if severity is not None:
            alerts = [a for a in alerts if a.severity == AlertSeverity(severity)]
        if alert_type is not None:
            alerts = [a for a in alerts if a.type == alert_type]
        if acknowledged is not None:
            alerts = [a for a in alerts if a.acknowledged == acknowledged]
        if since is not None:
            alerts = [a for a in alerts if a.timestamp >= since]
        return alerts[:limit] if limit is not None else alerts

    def acknowledge_alert(self, alert_id: str) -> bool:
        """
        Returns:
            True if the alert exists (acknowledging twice is a no-op)
        """
        with self._lock:
            for index, alert in enumerate(self._alerts):
                if alert.alert_id != alert_id:
                    continue
                if not alert.acknowledged:
                    self._alerts[index] = alert.model_copy(
                        update={"acknowledged": True, "acknowledged_at": self._clock()}
                    )
                return True
        return False

    def count_open(self, severity: Optional[AlertSeverity] = None) -> int:
        return len(self.get_alerts(severity=severity, acknowledged=False))

    def __len__(self) -> int:
        return len(self._alerts)
