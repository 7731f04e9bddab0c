"""
Usage reports and security trends built from in-memory audit state.
"""

from collections import Counter
from datetime import datetime
from typing import Dict, Iterable, List

from codeguard.models.audit import (
    Alert,
    AlertSeverity,
    AuditLogEntry,
    BehavioralProfile,
    IPActivity,
    SecurityTrends,
    UsageReport,
)

TOP_N = 10


def _top(counter: Counter, label: str) -> List[Dict]:
    return [{label: value, "count": count} for value, count in counter.most_common(TOP_N)]


def build_usage_report(
    entries: Iterable[AuditLogEntry],
    alerts: List[Alert],
    now: datetime,
    window_start: datetime
) -> UsageReport:
    """
    Summarize entries logged since `window_start`.

    Args:
        entries: Candidate entries (filtered to the window here)
        alerts: Alerts raised in the window
        now: Report time
        window_start: Start of the window

    Returns:
        UsageReport with totals, breakdowns, top users/IPs and an hourly histogram
    """
    in_window = [e for e in entries if e.timestamp >= window_start]

    successful = sum(1 for e in in_window if e.success)
    users = Counter(e.user_id for e in in_window if e.user_id)
    ips = Counter(e.ip_address for e in in_window if e.ip_address)
    hourly = [0] * 24
    for entry in in_window:
        hourly[entry.timestamp.hour] += 1

    total = len(in_window)
    return UsageReport(
        generated_at=now,
        window_start=window_start,
        total_activities=total,
        successful=successful,
        failed=total - successful,
        success_rate=round(successful / total, 4) if total else 0.0,
        categories=dict(Counter(e.category.value for e in in_window)),
        severities=dict(Counter(e.severity.value for e in in_window)),
        top_users=_top(users, "user_id"),
        top_ips=_top(ips, "ip_address"),
        hourly=hourly,
        alerts=alerts,
    )


def build_security_trends(
    alerts: List[Alert],
    profiles: Dict[str, BehavioralProfile],
    ip_activity: Dict[str, IPActivity],
    now: datetime,
    window_start: datetime,
    high_risk_user_score: int = 70,
    suspicious_ip_ratio: float = 0.3,
    suspicious_ip_min_total: int = 10
) -> SecurityTrends:
    """
    Security posture over a window.

    security_score = max(0, 100 - 5 * alerts_in_window - 10 * high_risk_users)
    """
    in_window = [a for a in alerts if a.timestamp >= window_start]
    threat_alerts = [
        a for a in in_window
        if a.severity in (AlertSeverity.HIGH, AlertSeverity.CRITICAL)
    ]

    high_risk_users = [
        {"user_id": user_id, **profile.summary()}
        for user_id, profile in profiles.items()
        if profile.risk_score > high_risk_user_score
    ]
    high_risk_users.sort(key=lambda item: item["risk_score"], reverse=True)

    suspicious_ips = [
        {"ip_address": ip, **activity.summary()}
        for ip, activity in ip_activity.items()
        if activity.total > suspicious_ip_min_total and activity.failure_ratio > suspicious_ip_ratio
    ]
    suspicious_ips.sort(key=lambda item: item["failure_ratio"], reverse=True)

    score = 100 - 5 * len(in_window) - 10 * len(high_risk_users)

    return SecurityTrends(
        generated_at=now,
        window_start=window_start,
        threat_alerts=threat_alerts,
        alerts_in_window=len(in_window),
        high_risk_users=high_risk_users,
        suspicious_ips=suspicious_ips,
        security_score=max(0, score),
    )
