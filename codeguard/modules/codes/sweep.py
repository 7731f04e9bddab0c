"""
Adaptive sweep over all access codes.

Runs on the scheduler, never inline with a request. For each code, under
its lock:
1. Purge: codes past expires_at become EXPIRED and are removed
2. Usage pattern analysis; MEDIUM/HIGH patterns shorten expiry and cap
   max_usage (never lengthening anything, never capping below current usage)
3. Anomaly detection: SUDDEN_USAGE_SPIKE suspends the code,
   HIGH_FAILURE_RATE raises an alert
4. Risk profile refresh

A failure on one code is reported and the sweep moves on to the next.
"""

import logging
from datetime import datetime, timedelta
from typing import List

from codeguard.core.config import CodePolicy, SweepPolicy
from codeguard.core.sentry import capture_business_error
from codeguard.core.timeutil import Clock, utcnow
from codeguard.models.access_code import AccessCode, CodeStatus, RiskLevel, SweepReport, UsagePattern
from codeguard.models.audit import AlertSeverity
from codeguard.modules.codes.repository import CodeRepository
from codeguard.modules.codes.risk import RiskAssessor

logger = logging.getLogger(__name__)

FAILURE_HISTORY_LIMIT = 200


class AdaptiveSweep:
    """
    Usage:
        sweep = AdaptiveSweep(repository, assessor, SweepPolicy(), CodePolicy(), audit)
        report = sweep.run()
    """

    def __init__(
        self,
        repository: CodeRepository,
        assessor: RiskAssessor,
        policy: SweepPolicy,
        code_policy: CodePolicy,
        audit,
        clock: Clock = utcnow
    ):
        self.repository = repository
        self.assessor = assessor
        self.policy = policy
        self.code_policy = code_policy
        self.audit = audit
        self._clock = clock

    def run(self) -> SweepReport:
        now = self._clock()
        report = SweepReport(started_at=now)
        expired_ids: List[str] = []

        for record in self.repository.snapshot():
            try:
                self._sweep_one(record, now, report, expired_ids)
            except Exception as e:
                capture_business_error(e, context={"operation": "adaptive_sweep", "code_id": record.code_id})

        report.expired_removed = len(expired_ids)
        if expired_ids:
            self.audit.log_activity(
                "BULK_DELETE_EXPIRED",
                data={"count": len(expired_ids), "code_ids": expired_ids},
            )

        logger.info("Adaptive sweep complete", extra=report.to_dict())
        return report

    def _sweep_one(self, record: AccessCode, now: datetime, report: SweepReport, expired_ids: List[str]):
        with self.repository.lock(record.code_id):
            if self.repository.get(record.code_id) is not record:
                return
            report.codes_scanned += 1

            if record.is_expired(now):
                record.status = CodeStatus.EXPIRED
                self.repository.remove(record.code_id)
                expired_ids.append(record.code_id)
                return

            cutoff = now - timedelta(seconds=self.policy.failure_window_seconds)
            record.failure_times = [ts for ts in record.failure_times if ts >= cutoff][-FAILURE_HISTORY_LIMIT:]

            pattern = self.assessor.analyze_usage_pattern(record, now)
            record.usage_pattern = pattern
            if self._tighten_limits(record, pattern):
                report.limits_tightened += 1

            for anomaly_type, severity in self.assessor.detect_anomalies(record, now):
                report.anomalies += 1
                if self._handle_anomaly(record, anomaly_type, severity):
                    report.suspended += 1

            self.assessor.refresh_profile(record, pattern, now)
            if record.risk_profile.overall_risk == RiskLevel.HIGH:
                report.high_risk += 1

    def _tighten_limits(self, record: AccessCode, pattern: UsagePattern) -> bool:
        """Shorten expiry and cap usage for risky patterns. Returns True if anything changed."""
        if pattern.multiplier >= 1.0:
            return False

        changes = {}
        target_expiry = record.created_at + timedelta(hours=self.code_policy.expiry_hours * pattern.multiplier)
        if target_expiry < record.expires_at:
            changes["expires_at"] = target_expiry.isoformat()
            record.expires_at = target_expiry

        limit = self.policy.usage_limits.get(pattern.risk_level.value)
        if limit is not None:
            cap = max(int(limit * pattern.multiplier), record.usage_count)
            if record.max_usage is None or cap < record.max_usage:
                changes["max_usage"] = cap
                record.max_usage = cap

        if not changes:
            return False

        self.audit.log_activity(
            "CODE_LIMITS_ADJUSTED",
            data={
                "code_id": record.code_id,
                "risk_level": pattern.risk_level.value,
                "indicators": pattern.indicators,
                **changes,
            },
        )
        return True

    def _handle_anomaly(self, record: AccessCode, anomaly_type: str, severity: str) -> bool:
        """Alert on an anomaly; HIGH severity suspends the code. Returns True if suspended."""
        data = {
            "code_id": record.code_id,
            "institution_id": record.institution_id,
            "anomaly_type": anomaly_type,
        }
        self.audit.log_activity("ANOMALY_DETECTED", success=False, data=data)

        if severity == "HIGH":
            suspended = record.status == CodeStatus.ACTIVE
            if suspended:
                record.status = CodeStatus.SUSPENDED
                record.suspension_reason = anomaly_type
            self.audit.create_alert(
                "HIGH_SEVERITY_ANOMALY",
                f"{anomaly_type} on {record.code_id}",
                AlertSeverity.HIGH,
                data,
            )
            return suspended

        self.audit.create_alert(
            "ANOMALY_DETECTED",
            f"{anomaly_type} on {record.code_id}",
            AlertSeverity.MEDIUM,
            data,
        )
        return False
