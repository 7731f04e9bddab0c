"""
Risk scoring for access codes.

Three separate models share the same shape (named factors, additive
weights, threshold bands), with every weight taken from RiskPolicy or
SweepPolicy:

1. assess(): validation-time risk of one attempt (code + caller context)
2. analyze_usage_pattern() / detect_anomalies(): per-code usage analysis
   run by the adaptive sweep
3. refresh_profile(): the code's standing risk profile, recomputed by the
   sweep from base factors plus the accumulated adjustment

Callers holding a record mutate it under the repository lock; assess()
only reads.
"""

import logging
import statistics
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from codeguard.core.config import RiskPolicy, SweepPolicy
from codeguard.core.timeutil import is_off_hours
from codeguard.models.access_code import (
    AccessCode,
    RiskAssessment,
    RiskLevel,
    SecurityLevel,
    UsagePattern,
    ValidationContext,
)

logger = logging.getLogger(__name__)

REFRESH_FACTORS = ("SHORT_CODE_LENGTH", "NEAR_EXPIRY", "HIGH_USAGE_RATIO", "SUSPICIOUS_USAGE_PATTERN")


def _clamp(score: int) -> int:
    return max(0, min(100, score))


def uses_in_last_hour(record: AccessCode, now: datetime) -> int:
    cutoff = now - timedelta(hours=1)
    return sum(1 for access in record.access_history if access.timestamp >= cutoff)


def is_usage_spike(record: AccessCode, now: datetime, factor: float, minimum: int) -> bool:
    """Last hour's uses exceed `factor` times the hourly average (and at least `minimum`)."""
    last_hour = uses_in_last_hour(record, now)
    age_hours = max((now - record.created_at).total_seconds() / 3600, 1.0)
    hourly_average = record.usage_count / age_hours
    return last_hour >= minimum and last_hour > factor * hourly_average


class RiskAssessor:
    """
    Usage:
        assessor = RiskAssessor(RiskPolicy(), SweepPolicy(), rate_limiter, audit)
        assessment = assessor.assess(record, context, now)
        if assessment.risk_score >= assessor.policy.block_threshold:
            ...
    """

    def __init__(self, policy: RiskPolicy, sweep_policy: SweepPolicy, rate_limiter=None, audit=None):
        self.policy = policy
        self.sweep_policy = sweep_policy
        self.rate_limiter = rate_limiter
        self.audit = audit

    def band(self, score: int) -> RiskLevel:
        if score >= self.policy.high_band:
            return RiskLevel.HIGH
        if score >= self.policy.medium_band:
            return RiskLevel.MEDIUM
        return RiskLevel.LOW

    def assess(self, record: AccessCode, context: ValidationContext, now: datetime) -> RiskAssessment:
        """
        Composite risk of one validation attempt.

        Factors: HIGH_SECURITY_CODE, NEAR_EXPIRY, USAGE_SPIKE, BLOCKED_IP,
        POOR_IP_REPUTATION, OFF_HOURS, AUTOMATION_USER_AGENT,
        MISSING_USER_AGENT.
        """
        policy = self.policy
        score = 0
        factors = []

        if record.security_level == SecurityLevel.HIGH:
            score += policy.high_security_level
            factors.append("HIGH_SECURITY_CODE")

        age_ratio = (now - record.created_at).total_seconds() / record.lifetime_seconds
        if age_ratio > policy.near_expiry_ratio:
            score += policy.near_expiry
            factors.append("NEAR_EXPIRY")

        if is_usage_spike(record, now, policy.usage_spike_factor, policy.usage_spike_min):
            score += policy.usage_spike
            factors.append("USAGE_SPIKE")

        ip = context.ip_address
        if ip and ip != "unknown":
            if self.rate_limiter is not None and self.rate_limiter.is_blocked(ip=ip):
                score += policy.blocked_ip
                factors.append("BLOCKED_IP")

            activity = self.audit.get_ip_activity(ip) if self.audit is not None else None
            if (
                activity
                and activity["total"] >= policy.ip_min_events
                and activity["failure_ratio"] > policy.ip_failure_ratio
            ):
                score += policy.poor_ip_reputation
                factors.append("POOR_IP_REPUTATION")

        if is_off_hours(now, policy.off_hours_start, policy.off_hours_end):
            score += policy.off_hours
            factors.append("OFF_HOURS")

        agent = (context.user_agent or "").strip().lower()
        if not agent:
            score += policy.missing_user_agent
            factors.append("MISSING_USER_AGENT")
        elif any(marker in agent for marker in policy.automation_agents):
            score += policy.automation_user_agent
            factors.append("AUTOMATION_USER_AGENT")

        return RiskAssessment(risk_score=_clamp(score), factors=factors)

    def apply_usage_feedback(self, record: AccessCode, assessment: RiskAssessment, now: datetime) -> Optional[str]:
        """
        Nudge the code's profile after a successful use.

        Returns:
            The factor applied (GOOD_USAGE_PATTERN / POOR_USAGE_PATTERN), or None
        """
        policy = self.policy
        if assessment.risk_score < policy.good_usage_below:
            delta, factor = policy.good_usage_adjustment, "GOOD_USAGE_PATTERN"
        elif assessment.risk_score > policy.poor_usage_above:
            delta, factor = policy.poor_usage_adjustment, "POOR_USAGE_PATTERN"
        else:
            return None

        self.apply_adjustment(record, delta, factor, now)
        return factor

    def apply_adjustment(self, record: AccessCode, delta: int, factor: str, now: datetime):
        profile = record.risk_profile
        profile.adjustment += delta
        profile.risk_score = _clamp(profile.risk_score + delta)
        profile.overall_risk = self.band(profile.risk_score)
        profile.add_factor(factor)
        profile.last_updated = now

    def analyze_usage_pattern(self, record: AccessCode, now: datetime) -> UsagePattern:
        """
        Usage indicators: HIGH_USAGE, LOW_USAGE, OFF_HOURS_USAGE,
        MANY_DISTINCT_IPS, RISKY_ACCESSES. Three or more make the code HIGH
        risk (multiplier 0.5), two make it MEDIUM (0.75).
        """
        sweep = self.sweep_policy
        age_days = max((now - record.created_at).total_seconds() / 86400, 1 / 24)
        usage_per_day = record.usage_count / age_days
        history = record.access_history
        indicators = []

        if usage_per_day > sweep.expected_daily_usage * sweep.high_usage_factor and record.usage_count >= sweep.high_usage_min:
            indicators.append("HIGH_USAGE")

        if age_days >= sweep.low_usage_min_age_days and usage_per_day < sweep.expected_daily_usage * sweep.low_usage_factor:
            indicators.append("LOW_USAGE")

        distinct_ips = len({access.ip_address for access in history if access.ip_address})
        if distinct_ips >= sweep.distinct_ip_threshold:
            indicators.append("MANY_DISTINCT_IPS")

        off_hours_ratio = 0.0
        average_risk = 0.0
        if len(history) >= sweep.min_history_for_ratios:
            off_hours = sum(
                1 for access in history
                if is_off_hours(access.timestamp, self.policy.off_hours_start, self.policy.off_hours_end)
            )
            off_hours_ratio = off_hours / len(history)
            if off_hours_ratio > sweep.off_hours_ratio:
                indicators.append("OFF_HOURS_USAGE")

            average_risk = statistics.mean(access.risk_score for access in history)
            if average_risk >= sweep.risky_access_score:
                indicators.append("RISKY_ACCESSES")

        if len(indicators) >= sweep.high_indicators:
            level = RiskLevel.HIGH
        elif len(indicators) >= sweep.medium_indicators:
            level = RiskLevel.MEDIUM
        else:
            level = RiskLevel.LOW

        return UsagePattern(
            usage_per_day=round(usage_per_day, 2),
            off_hours_ratio=round(off_hours_ratio, 3),
            distinct_ips=distinct_ips,
            average_access_risk=round(average_risk, 1),
            indicators=indicators,
            risk_level=level,
            multiplier=sweep.multipliers.get(level.value, 1.0),
            analyzed_at=now,
        )

    def detect_anomalies(self, record: AccessCode, now: datetime) -> List[Tuple[str, str]]:
        """
        Returns:
            (anomaly_type, severity) pairs: SUDDEN_USAGE_SPIKE (HIGH),
            HIGH_FAILURE_RATE (MEDIUM)
        """
        sweep = self.sweep_policy
        anomalies = []

        if is_usage_spike(record, now, sweep.spike_factor, sweep.spike_min):
            anomalies.append(("SUDDEN_USAGE_SPIKE", "HIGH"))

        cutoff = now - timedelta(seconds=sweep.failure_window_seconds)
        recent_failures = sum(1 for ts in record.failure_times if ts >= cutoff)
        if recent_failures > sweep.failure_threshold:
            anomalies.append(("HIGH_FAILURE_RATE", "MEDIUM"))

        return anomalies

    def refresh_profile(self, record: AccessCode, pattern: Optional[UsagePattern], now: datetime):
        """Recompute the standing profile from base factors plus the accumulated adjustment."""
        policy = self.policy
        score = 0
        factors = []

        if record.code_length and record.code_length < policy.short_code_length:
            score += policy.short_code
            factors.append("SHORT_CODE_LENGTH")

        age_ratio = (now - record.created_at).total_seconds() / record.lifetime_seconds
        if age_ratio > policy.profile_near_expiry_ratio:
            score += policy.profile_near_expiry
            factors.append("NEAR_EXPIRY")

        if record.max_usage and record.usage_count / record.max_usage > policy.usage_ratio_threshold:
            score += policy.high_usage_ratio
            factors.append("HIGH_USAGE_RATIO")

        if pattern is not None and len(pattern.indicators) > policy.suspicious_pattern_indicators:
            score += policy.suspicious_pattern
            factors.append("SUSPICIOUS_USAGE_PATTERN")

        profile = record.risk_profile
        profile.risk_score = _clamp(score + profile.adjustment)
        profile.overall_risk = self.band(profile.risk_score)
        profile.factors = [f for f in profile.factors if f not in REFRESH_FACTORS] + factors
        profile.last_updated = now
