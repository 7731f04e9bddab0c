"""
Behavioral scoring for rate-limited requests.

Combines timing and request-shape signals into a 0-100 score:
- Regular request intervals (scripted clients): 1 - coefficient of variation
- Bursts and sustained high request rates
- Sensitive paths (/admin, /config, ...)
- Missing, short or automation user agents
- Off-hours and weekend timing

Scores at or above the suspicious threshold tighten the actor's quotas; they
do not deny on their own.
"""

import statistics
from datetime import datetime
from typing import Sequence

from codeguard.core.config import BehaviorPolicy
from codeguard.core.timeutil import is_off_hours
from codeguard.models.rate_limit import BehaviorScore, RateLimitRequest


class BehaviorAnalyzer:
    """
    Scores one request against the actor's recent request timestamps.

    Usage:
        analyzer = BehaviorAnalyzer(BehaviorPolicy())
        result = analyzer.score(request, history=[...], now=utcnow())
    """

    def __init__(self, policy: BehaviorPolicy):
        self.policy = policy

    def score(self, request: RateLimitRequest, history: Sequence[float], now: datetime) -> BehaviorScore:
        """
        Args:
            request: Request being evaluated
            history: Earlier request timestamps (epoch seconds) for the same IP
            now: Current time

        Returns:
            BehaviorScore with the contributing factor names
        """
        policy = self.policy
        now_ts = now.timestamp()
        timestamps = list(history) + [now_ts]

        score = 0
        factors = []

        regularity = self._regularity(timestamps[-policy.regularity_sample:])
        if regularity is not None and regularity > policy.regularity_threshold:
            score += policy.regularity_weight
            factors.append("REGULAR_INTERVALS")

        in_burst = sum(1 for ts in timestamps if ts > now_ts - policy.burst_window_seconds)
        if in_burst > policy.burst_threshold:
            score += policy.burst_weight
            factors.append("BURST")

        last_minute = sum(1 for ts in timestamps if ts > now_ts - 60)
        if last_minute > policy.high_rate_per_minute:
            score += policy.high_rate_weight
            factors.append("HIGH_REQUEST_RATE")

        path = (request.path or "").lower()
        if any(path.startswith(sensitive) for sensitive in policy.sensitive_paths):
            score += policy.sensitive_path_weight
            factors.append("SENSITIVE_PATH")

        agent = (request.user_agent or "").strip()
        if len(agent) < policy.min_agent_length:
            score += policy.missing_agent_weight
            factors.append("MISSING_USER_AGENT")
        elif any(marker in agent.lower() for marker in policy.automation_agents):
            score += policy.automation_agent_weight
            factors.append("AUTOMATION_USER_AGENT")

        if is_off_hours(now, policy.off_hours_start, policy.off_hours_end):
            score += policy.off_hours_weight
            factors.append("OFF_HOURS")

        if now.weekday() >= 5:
            score += policy.weekend_weight
            factors.append("WEEKEND")

        return BehaviorScore(score=min(score, 100), factors=factors)

    def _regularity(self, timestamps: Sequence[float]):
        """1 - CV of the intervals, or None when there is too little data."""
        intervals = [b - a for a, b in zip(timestamps, timestamps[1:])]
        if len(intervals) < self.policy.min_intervals:
            return None
        mean = statistics.mean(intervals)
        if mean <= 0:
            return None
        cv = statistics.pstdev(intervals) / mean
        return 1.0 - cv
