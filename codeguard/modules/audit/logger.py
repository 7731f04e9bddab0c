"""
Audit logger: append-only activity trail with behavioral analysis.

Each call to log_activity:
1. Redacts sensitive keys in data and metadata
2. Assigns severity and category from the activity tables
3. Updates the per-IP and per-user aggregates
4. Runs anomaly detection (HIGH_ACTIVITY_RATE, HIGH_FAILURE_RATE,
   UNUSUAL_IP_ADDRESS) with a cooldown per anomaly and subject
5. Queues the entry; the pending batch is written to the day partition once
   it reaches batch_size (or on flush())

The operational log (`logging`) and the audit trail are separate: this
module writes audit entries to storage and only summaries to `logging`.
"""

import logging
import threading
from collections import Counter, deque
from datetime import datetime, timedelta
from typing import Any, Deque, Dict, List, Optional, Tuple

from codeguard.core.alerting import AdminNotifier
from codeguard.core.config import AuditConfig
from codeguard.core.locks import KeyedLocks
from codeguard.core.security import TokenEncryption, generate_identifier
from codeguard.core.timeutil import Clock, is_off_hours, utcnow
from codeguard.models.audit import (
    Alert,
    AlertSeverity,
    AuditLogEntry,
    BehavioralProfile,
    IPActivity,
    LogSeverity,
    SecurityTrends,
    UsageReport,
)
from codeguard.modules.audit.alerts import AlertQueue
from codeguard.modules.audit.reports import build_security_trends, build_usage_report
from codeguard.modules.audit.storage import AuditLogStorage, AuditWriteError
from codeguard.modules.audit.taxonomy import category_for, detect_browser, redact, severity_for

logger = logging.getLogger(__name__)

MAX_USER_AGENTS_PER_IP = 50


class AuditLogger:
    """
    Usage:
        audit = AuditLogger(AuditConfig(log_dir=Path("logs/audit")))
        log_id = audit.log_activity(
            "VALID_CODE_USED",
            ip_address="203.0.113.7",
            data={"code_id": "CODE_..."},
        )
        report = audit.generate_usage_report()
    """

    def __init__(
        self,
        config: Optional[AuditConfig] = None,
        cipher: Optional[TokenEncryption] = None,
        notifier: Optional[AdminNotifier] = None,
        clock: Clock = utcnow
    ):
        """
        Args:
            config: Retention, batching and anomaly thresholds
            cipher: Fernet cipher, required when config.encrypt_at_rest is set
            notifier: Receives HIGH and CRITICAL alerts
            clock: Time source
        """
        self.config = config or AuditConfig()
        if self.config.encrypt_at_rest and cipher is None:
            raise ValueError("encrypt_at_rest requires a cipher")

        self._clock = clock
        self.storage = AuditLogStorage(
            self.config.log_dir,
            cipher=cipher if self.config.encrypt_at_rest else None
        )
        self.alerts = AlertQueue(
            capacity=self.config.alert_capacity,
            notifier=notifier,
            clock=clock,
        )

        self._pending: List[AuditLogEntry] = []
        self._recent: Deque[AuditLogEntry] = deque(maxlen=self.config.memory_limit)
        self._entries_lock = threading.Lock()
        self._flush_lock = threading.Lock()
        self._counters: Counter = Counter()

        self._ip_activity: Dict[str, IPActivity] = {}
        self._profiles: Dict[str, BehavioralProfile] = {}
        self._ip_locks = KeyedLocks()
        self._user_locks = KeyedLocks()

        self._anomaly_last: Dict[Tuple[str, str], datetime] = {}
        self._anomaly_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Logging
    # ------------------------------------------------------------------

    def log_activity(
        self,
        activity: str,
        *,
        user_id: Optional[str] = None,
        session_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        success: bool = True,
        duration_ms: Optional[float] = None,
        data: Optional[Dict[str, Any]] = None,
        metadata: Optional[Dict[str, Any]] = None,
        severity: Optional[LogSeverity] = None
    ) -> str:
        """
        Append one audit entry.

        Args:
            activity: Activity name (e.g. "VALID_CODE_USED")
            success: Whether the activity succeeded
            data: Activity payload (redacted before storage)
            metadata: Extra context (redacted; browser info is added from the UA)
            severity: Hint that can only raise the table severity

        Returns:
            log_id (LOG_ + hex)
        """
        now = self._clock()
        hint = LogSeverity(severity) if severity is not None else None

        entry_metadata = redact(dict(metadata or {}))
        if user_agent:
            entry_metadata["client"] = detect_browser(user_agent)

        entry = AuditLogEntry(
            log_id=generate_identifier("LOG_"),
            timestamp=now,
            activity=activity,
            user_id=user_id,
            session_id=session_id,
            ip_address=ip_address,
            user_agent=user_agent,
            success=success,
            duration_ms=duration_ms,
            data=redact(dict(data or {})),
            metadata=entry_metadata,
            severity=severity_for(activity, success, hint),
            category=category_for(activity),
        )

        with self._entries_lock:
            self._pending.append(entry)
            self._recent.append(entry)
            self._counters["total"] += 1
            self._counters[f"severity:{entry.severity.value}"] += 1
            self._counters[f"category:{entry.category.value}"] += 1
            should_flush = len(self._pending) >= self.config.batch_size

        if ip_address:
            self._update_ip_activity(entry)
        if user_id:
            self._update_user_profile(entry)
        self._detect_anomalies(entry)

        if should_flush:
            self.flush()

        return entry.log_id

    def _update_ip_activity(self, entry: AuditLogEntry):
        ip = entry.ip_address
        with self._ip_locks.lock_for(ip):
            activity = self._ip_activity.get(ip)
            if activity is None:
                activity = IPActivity(
                    first_seen=entry.timestamp,
                    last_seen=entry.timestamp,
                    recent=deque(maxlen=self.config.ip_history_limit),
                )
                self._ip_activity[ip] = activity

            activity.last_seen = entry.timestamp
            activity.total += 1
            if entry.success:
                activity.successes += 1
            else:
                activity.failures += 1
            if entry.user_id:
                activity.users.add(entry.user_id)
            if entry.user_agent and len(activity.user_agents) < MAX_USER_AGENTS_PER_IP:
                activity.user_agents.add(entry.user_agent)
            activity.recent.append(entry.timestamp)

    def _update_user_profile(self, entry: AuditLogEntry):
        user_id = entry.user_id
        with self._user_locks.lock_for(user_id):
            profile = self._profiles.get(user_id)
            if profile is None:
                profile = BehavioralProfile(
                    first_activity=entry.timestamp,
                    last_activity=entry.timestamp,
                    recent=deque(maxlen=self.config.user_history_limit),
                )
                self._profiles[user_id] = profile

            profile.last_activity = entry.timestamp
            profile.total += 1
            if not entry.success:
                profile.failures += 1
            if entry.ip_address:
                profile.common_ips[entry.ip_address] += 1
            profile.peak_hours[entry.timestamp.hour] += 1
            profile.recent.append(entry.timestamp)

            # Risk decays by at most 5 per event
            profile.risk_score = max(self._user_risk(profile, entry), profile.risk_score - 5)

    def _user_risk(self, profile: BehavioralProfile, entry: AuditLogEntry) -> int:
        score = 0
        if profile.total >= 5:
            score += int(profile.failures / profile.total * 50)
        if len(profile.common_ips) > self.config.common_ip_count:
            score += 20
        if is_off_hours(entry.timestamp, self.config.off_hours_start, self.config.off_hours_end):
            score += 10
        if entry.severity == LogSeverity.CRITICAL:
            score += 30
        return min(score, 100)

    # ------------------------------------------------------------------
    # Anomalies and alerts
    # ------------------------------------------------------------------

    def _detect_anomalies(self, entry: AuditLogEntry):
        config = self.config
        now = entry.timestamp

        if entry.ip_address:
            ip = entry.ip_address
            with self._ip_locks.lock_for(ip):
                activity = self._ip_activity.get(ip)
                if activity is None:
                    return
                window_start = now - timedelta(seconds=config.high_activity_window_seconds)
                recent_count = sum(1 for ts in activity.recent if ts >= window_start)
                total = activity.total
                failure_ratio = activity.failure_ratio

            if total > config.high_activity_total and recent_count > config.high_activity_recent:
                self._raise_anomaly(
                    "HIGH_ACTIVITY_RATE", ip, AlertSeverity.MEDIUM,
                    f"High activity rate from {ip}",
                    {"ip_address": ip, "total": total, "recent": recent_count},
                )

            if total > config.failure_min_total and failure_ratio > config.failure_ratio:
                self._raise_anomaly(
                    "HIGH_FAILURE_RATE", ip, AlertSeverity.HIGH,
                    f"High failure rate from {ip}",
                    {"ip_address": ip, "total": total, "failure_ratio": round(failure_ratio, 3)},
                )

        if entry.user_id and entry.ip_address:
            with self._user_locks.lock_for(entry.user_id):
                profile = self._profiles.get(entry.user_id)
                if profile is None:
                    return
                total = profile.total
                common = profile.top_ips(config.common_ip_count)

            if total > config.unusual_ip_min_total and entry.ip_address not in common:
                self._raise_anomaly(
                    "UNUSUAL_IP_ADDRESS", f"{entry.user_id}:{entry.ip_address}", AlertSeverity.MEDIUM,
                    f"Unusual IP address for user {entry.user_id}",
                    {"user_id": entry.user_id, "ip_address": entry.ip_address, "common_ips": common},
                )

    def _raise_anomaly(self, anomaly_type: str, subject: str, severity: AlertSeverity, text: str, data: Dict[str, Any]):
        now = self._clock()
        key = (anomaly_type, subject)
        with self._anomaly_lock:
            last = self._anomaly_last.get(key)
            if last is not None and (now - last).total_seconds() < self.config.alert_cooldown_seconds:
                return
            self._anomaly_last[key] = now

        logger.warning(f"Anomaly detected: {anomaly_type}", extra={"anomaly_type": anomaly_type, "subject": subject})
        self.alerts.create_alert(anomaly_type, text, severity, data)

    def create_alert(
        self,
        alert_type: str,
        message: str,
        severity: AlertSeverity = AlertSeverity.MEDIUM,
        data: Optional[Dict[str, Any]] = None
    ) -> str:
        return self.alerts.create_alert(alert_type, message, severity, data)

    def get_alerts(
        self,
        severity: Optional[AlertSeverity] = None,
        alert_type: Optional[str] = None,
        acknowledged: Optional[bool] = None,
        since: Optional[datetime] = None,
        limit: Optional[int] = None
    ) -> List[Alert]:
        return self.alerts.get_alerts(
            severity=severity,
            alert_type=alert_type,
            acknowledged=acknowledged,
            since=since,
            limit=limit,
        )

    def acknowledge_alert(self, alert_id: str) -> bool:
        return self.alerts.acknowledge_alert(alert_id)

    # ------------------------------------------------------------------
    # Aggregates
    # ------------------------------------------------------------------

    def get_ip_activity(self, ip_address: str) -> Optional[Dict[str, Any]]:
        with self._ip_locks.lock_for(ip_address):
            activity = self._ip_activity.get(ip_address)
            return activity.summary() if activity else None

    def get_user_profile(self, user_id: str) -> Optional[Dict[str, Any]]:
        with self._user_locks.lock_for(user_id):
            profile = self._profiles.get(user_id)
            return profile.summary() if profile else None

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def flush(self) -> int:
        """
        Write pending entries to storage.

        On a write failure the batch is re-queued (bounded by memory_limit)
        and the next flush retries it.

        Returns:
            Number of entries written
        """
        with self._flush_lock:
            with self._entries_lock:
                batch, self._pending = self._pending, []

            if not batch:
                return 0

            try:
                written = self.storage.write_entries(batch)
            except AuditWriteError as e:
                logger.error(
                    f"Failed to write audit batch: {e}",
                    extra={"batch_size": len(batch), "written": e.written},
                )
                self._requeue(e.unwritten)
                return e.written
            except OSError as e:
                logger.error(f"Failed to write audit batch: {e}", extra={"batch_size": len(batch)})
                self._requeue(batch)
                return 0

        logger.debug(f"Flushed {written} audit entries")
        return written

    def _requeue(self, entries: List[AuditLogEntry]):
        with self._entries_lock:
            self._pending = (entries + self._pending)[-self.config.memory_limit:]

    def cleanup(self) -> Dict[str, int]:
        """
        Apply retention: delete old partitions and evict idle aggregates.
        """
        now = self._clock()
        partitions = self.storage.cleanup(now, self.config.retention_days)
        idle_cutoff = now - timedelta(seconds=self.config.aggregate_idle_seconds)

        evicted_ips = 0
        for ip in list(self._ip_activity):
            with self._ip_locks.lock_for(ip):
                activity = self._ip_activity.get(ip)
                if activity is not None and activity.last_seen < idle_cutoff:
                    del self._ip_activity[ip]
                    evicted_ips += 1

        evicted_users = 0
        for user_id in list(self._profiles):
            with self._user_locks.lock_for(user_id):
                profile = self._profiles.get(user_id)
                if profile is not None and profile.last_activity < idle_cutoff:
                    del self._profiles[user_id]
                    evicted_users += 1

        cooldown_cutoff = now - timedelta(seconds=self.config.alert_cooldown_seconds)
        with self._anomaly_lock:
            for key in [k for k, ts in self._anomaly_last.items() if ts < cooldown_cutoff]:
                del self._anomaly_last[key]

        result = {
            "partitions_deleted": partitions,
            "ip_aggregates_evicted": evicted_ips,
            "user_profiles_evicted": evicted_users,
        }
        logger.info("Audit cleanup complete", extra=result)
        return result

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def get_recent_entries(
        self,
        limit: int = 100,
        activity: Optional[str] = None,
        user_id: Optional[str] = None,
        ip_address: Optional[str] = None
    ) -> List[AuditLogEntry]:
        """Recent in-memory entries, newest first."""
        with self._entries_lock:
            entries = list(self._recent)

        entries.reverse()
        if activity is not None:
            entries = [e for e in entries if e.activity == activity]
        if user_id is not None:
            entries = [e for e in entries if e.user_id == user_id]
        if ip_address is not None:
            entries = [e for e in entries if e.ip_address == ip_address]
        return entries[:limit]

    def generate_usage_report(self, window: timedelta = timedelta(hours=24)) -> UsageReport:
        now = self._clock()
        start = now - window
        with self._entries_lock:
            entries = list(self._recent)
        return build_usage_report(entries, self.alerts.get_alerts(since=start), now, start)

    def get_security_trends(self, window: timedelta = timedelta(days=7)) -> SecurityTrends:
        now = self._clock()
        return build_security_trends(
            alerts=self.alerts.get_alerts(),
            profiles=dict(self._profiles),
            ip_activity=dict(self._ip_activity),
            now=now,
            window_start=now - window,
            high_risk_user_score=self.config.high_risk_user_score,
            suspicious_ip_ratio=self.config.suspicious_ip_ratio,
            suspicious_ip_min_total=self.config.suspicious_ip_min_total,
        )

    def get_statistics(self) -> Dict[str, Any]:
        with self._entries_lock:
            counters = dict(self._counters)
            pending = len(self._pending)
            in_memory = len(self._recent)

        return {
            "total_logged": counters.get("total", 0),
            "pending": pending,
            "in_memory": in_memory,
            "by_severity": {
                k.split(":", 1)[1]: v for k, v in counters.items() if k.startswith("severity:")
            },
            "by_category": {
                k.split(":", 1)[1]: v for k, v in counters.items() if k.startswith("category:")
            },
            "tracked_ips": len(self._ip_activity),
            "tracked_users": len(self._profiles),
            "alerts": {
                "total": len(self.alerts),
                "unacknowledged": self.alerts.count_open(),
            },
        }
