"""
Multi-dimensional sliding-window rate limiter.

Every request passes through, in order:
1. Blocklist: IP, user and session blocked sets (BLOCKED)
2. Signature scan of path, user agent, body and headers (ATTACK_DETECTED)
3. Lockout check on the general key (LOCKED_OUT)
4. Behavioral scoring: high scores put the IP in strict mode (quotas
   halved); a strict-mode actor that still scores as hostile is denied
   (SUSPICIOUS_BEHAVIOR)
5. Quotas on six dimensions (RATE_LIMIT_EXCEEDED):
   - general: ip + user (or "anonymous"), 100 per minute
   - ip: 1000 per hour
   - user: 500 per hour (when a user is known)
   - session: 200 per minute (when a session is known)
   - api_key: 10000 per hour (when a key is given)
   - path: 1000 per minute, or a per-path custom limit

Quota and signature failures count as failed attempts on the general key.
Reaching max_failed_attempts triggers an exponential lockout
(base_delay * 2 ** lockout_count); max_lockouts consecutive lockouts become a
permanent IP ban.

An unexpected fault fails open (SYSTEM_ERROR, neutral risk 50): availability
is favored over strictness at this gate.

Thread safety: each dimension has its own KeyedLocks pool. Quota checks take
one lock per dimension in the fixed DIMENSIONS order, so check-and-record is
atomic per key and lock ordering is deadlock free.
"""

import hashlib
import logging
import threading
import time
from contextlib import ExitStack
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, NamedTuple, Optional, Tuple

from codeguard.core.config import QuotaRule, RateLimitConfig
from codeguard.core.locks import KeyedLocks
from codeguard.core.security import generate_identifier
from codeguard.core.sentry import capture_business_error
from codeguard.core.timeutil import Clock, utcnow
from codeguard.models.rate_limit import (
    DenialReason,
    LockoutOutcome,
    RateDecision,
    RateLimitRequest,
    RateTracker,
    SignatureMatch,
    ThreatRecord,
    ThreatSeverity,
)
from codeguard.modules.detection.signatures import AttackSignatureDetector
from codeguard.modules.ratelimit.behavior import BehaviorAnalyzer
from codeguard.modules.ratelimit.threat_store import RedisThreatStore, ThreatStore

logger = logging.getLogger(__name__)

DIMENSIONS = ("general", "ip", "user", "session", "api_key", "path")

AlertSink = Callable[[str, str, str, Dict[str, Any]], Any]


class _QuotaOutcome(NamedTuple):
    allowed: bool
    dimension: Optional[str]
    limit: Optional[int]
    remaining: Optional[int]
    retry_after: Optional[float]


class RateLimiter:
    """
    Adaptive rate limiter with blocklists, lockouts and attack detection.

    Usage:
        limiter = RateLimiter(RateLimitConfig())
        decision = limiter.check_rate_limit(RateLimitRequest(ip="203.0.113.7", path="/codes/validate"))
        if not decision.allowed:
            # honor decision.retry_after
    """

    def __init__(
        self,
        config: Optional[RateLimitConfig] = None,
        detector: Optional[AttackSignatureDetector] = None,
        threat_store: Optional[ThreatStore] = None,
        alert_sink: Optional[AlertSink] = None,
        clock: Clock = utcnow
    ):
        """
        Args:
            config: Quotas and lockout policy (defaults to RateLimitConfig())
            detector: Signature detector shared with the code service
            threat_store: Where threat and ban records live
            alert_sink: Callable(alert_type, message, severity, data) for alerts
            clock: Time source
        """
        self.config = config or RateLimitConfig()
        self.detector = detector or AttackSignatureDetector(default_ban_seconds=self.config.default_ban_seconds)
        if threat_store is None:
            threat_store = ThreatStore(capacity=self.config.max_threat_records)
        self.threat_store = threat_store
        self.behavior = BehaviorAnalyzer(self.config.behavior)
        self._alert_sink = alert_sink
        self._clock = clock

        self._trackers: Dict[str, Dict[str, RateTracker]] = {dim: {} for dim in DIMENSIONS}
        self._locks: Dict[str, KeyedLocks] = {dim: KeyedLocks() for dim in DIMENSIONS}
        self._path_limits: Dict[str, QuotaRule] = dict(self.config.path_limits)

        self._blocked: Dict[str, set] = {"ip": set(), "user": set(), "session": set()}
        self._block_lock = threading.Lock()

        self._metrics = {
            "total_requests": 0,
            "blocked_requests": 0,
            "legitimate_requests": 0,
            "attack_attempts": 0,
            "system_errors": 0,
            "total_response_ms": 0.0,
            "peak_load": 0,
        }
        self._current_minute = 0
        self._current_minute_count = 0
        self._metrics_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Keys
    # ------------------------------------------------------------------

    @staticmethod
    def general_key(request: RateLimitRequest) -> str:
        return f"{request.ip}:{request.user_id or 'anonymous'}"

    def _dimensions(self, request: RateLimitRequest) -> List[Tuple[str, str, QuotaRule]]:
        """Applicable (dimension, key, rule) triples, in lock order."""
        dims = [
            ("general", self.general_key(request), self.config.general),
            ("ip", request.ip, self.config.ip),
        ]
        if request.user_id:
            dims.append(("user", request.user_id, self.config.user))
        if request.session_id:
            dims.append(("session", request.session_id, self.config.session))
        if request.api_key:
            # Keys are secrets: track a fingerprint, never the key itself
            fingerprint = hashlib.sha256(request.api_key.encode()).hexdigest()[:16]
            dims.append(("api_key", fingerprint, self.config.api_key))
        dims.append(("path", request.path, self._path_limits.get(request.path, self.config.path)))
        return dims

    def _tracker(self, dimension: str, key: str) -> RateTracker:
        """Get or create a tracker. Caller holds the key's lock."""
        table = self._trackers[dimension]
        tracker = table.get(key)
        if tracker is None:
            tracker = RateTracker()
            table[key] = tracker
        return tracker

    # ------------------------------------------------------------------
    # Decision
    # ------------------------------------------------------------------

    def check_rate_limit(self, request: RateLimitRequest) -> RateDecision:
        """
        Decide whether a request may proceed.

        Args:
            request: Request context (ip, user, session, api key, path, ...)

        Returns:
            RateDecision; `reason` is set on denial and on SYSTEM_ERROR
        """
        started = time.perf_counter()
        try:
            decision = self._evaluate(request)
        except Exception as e:
            capture_business_error(
                e,
                context={"operation": "check_rate_limit", "ip": request.ip, "path": request.path}
            )
            decision = RateDecision(allowed=True, reason=DenialReason.SYSTEM_ERROR, risk_score=50)

        self._record_metrics(decision, (time.perf_counter() - started) * 1000)
        return decision

    def _evaluate(self, request: RateLimitRequest) -> RateDecision:
        now_dt = self._clock()
        now = now_dt.timestamp()

        # 1. Blocklists
        blocked = self._blocked_subject(request)
        if blocked:
            kind, value = blocked
            logger.info(
                f"Request from blocked {kind} denied",
                extra={"block_kind": kind, "ip": request.ip, "path": request.path}
            )
            return RateDecision(
                allowed=False,
                reason=DenialReason.BLOCKED,
                retry_after=self._block_retry_after(kind, value, now_dt),
                risk_score=100,
            )

        # 2. Attack signatures
        matches = self.detector.scan_fields({
            "path": request.path,
            "user_agent": request.user_agent,
            "body": request.body,
            "headers": request.headers or None,
        })
        if matches:
            threat = self.handle_attack(request, matches)
            self.record_failed_attempt(request)
            return RateDecision(
                allowed=False,
                reason=DenialReason.ATTACK_DETECTED,
                retry_after=threat.retry_after(now_dt),
                risk_score=threat.severity_score,
                flags=sorted({m.threat_type for m in matches}),
                threat_id=threat.threat_id,
            )

        # 3. Lockout
        general_key = self.general_key(request)
        with self._locks["general"].lock_for(general_key):
            general = self._trackers["general"].get(general_key)
            if general is not None and general.is_locked(now):
                return RateDecision(
                    allowed=False,
                    reason=DenialReason.LOCKED_OUT,
                    retry_after=general.lockout_until - now,
                    risk_score=max(general.risk_score, 50),
                )

        # 4. Behavior
        behavior_policy = self.config.behavior
        with self._locks["ip"].lock_for(request.ip):
            ip_tracker = self._tracker("ip", request.ip)
            ip_tracker.prune(now, self.config.ip.window_seconds)
            history = list(ip_tracker.requests)
            was_strict = ip_tracker.in_strict_mode(now)

        behavior = self.behavior.score(request, history, now_dt)

        if was_strict and behavior.score >= behavior_policy.deny_threshold:
            logger.warning(
                f"Suspicious behavior denied for {request.ip}",
                extra={"ip": request.ip, "behavior_score": behavior.score, "factors": behavior.factors}
            )
            return RateDecision(
                allowed=False,
                reason=DenialReason.SUSPICIOUS_BEHAVIOR,
                retry_after=ip_tracker.strict_until - now,
                risk_score=behavior.score,
                flags=behavior.factors,
                strict_mode=True,
            )

        strict = was_strict
        if behavior.score >= behavior_policy.suspicious_threshold and not was_strict:
            with self._locks["ip"].lock_for(request.ip):
                ip_tracker.strict_until = now + self.config.strict_mode_seconds
                ip_tracker.risk_score = behavior.score
            strict = True
            logger.warning(
                f"Strict mode enabled for {request.ip}",
                extra={"ip": request.ip, "behavior_score": behavior.score, "factors": behavior.factors}
            )

        flags = list(behavior.factors)
        if strict:
            flags.append(DenialReason.SUSPICIOUS_BEHAVIOR.value)

        # 5. Quotas
        outcome = self._consume_quotas(request, now, strict)
        if not outcome.allowed:
            self.record_failed_attempt(request)
            logger.info(
                f"Rate limit exceeded on {outcome.dimension}",
                extra={"ip": request.ip, "dimension": outcome.dimension, "limit": outcome.limit}
            )
            return RateDecision(
                allowed=False,
                reason=DenialReason.RATE_LIMIT_EXCEEDED,
                retry_after=outcome.retry_after,
                risk_score=behavior.score,
                remaining=0,
                limit=outcome.limit,
                dimension=outcome.dimension,
                flags=flags,
                strict_mode=strict,
            )

        return RateDecision(
            allowed=True,
            risk_score=behavior.score,
            remaining=outcome.remaining,
            limit=outcome.limit,
            dimension=outcome.dimension,
            flags=flags,
            strict_mode=strict,
        )

    def _consume_quotas(self, request: RateLimitRequest, now: float, strict: bool) -> _QuotaOutcome:
        """Check every applicable dimension, then record the request in all of them."""
        factor = self.config.strict_mode_factor if strict else 1.0
        dims = self._dimensions(request)

        with ExitStack() as stack:
            for dimension, key, _ in dims:
                stack.enter_context(self._locks[dimension].lock_for(key))

            checked = []
            for dimension, key, rule in dims:
                tracker = self._tracker(dimension, key)
                tracker.prune(now, rule.window_seconds)
                tracker.last_activity = now
                limit = max(1, int(rule.max_requests * factor))
                left = limit - len(tracker.requests)
                if left <= 0:
                    oldest = tracker.requests[0] if tracker.requests else now
                    retry_after = max(0.0, oldest + rule.window_seconds - now)
                    return _QuotaOutcome(False, dimension, limit, 0, retry_after)
                checked.append((dimension, tracker, limit, left))

            tightest = None
            for dimension, tracker, limit, left in checked:
                tracker.requests.append(now)
                if tightest is None or left - 1 < tightest[2]:
                    tightest = (dimension, limit, left - 1)

        dimension, limit, remaining = tightest
        return _QuotaOutcome(True, dimension, limit, remaining, None)

    # ------------------------------------------------------------------
    # Failures and lockouts
    # ------------------------------------------------------------------

    def record_failed_attempt(self, request: RateLimitRequest) -> LockoutOutcome:
        """
        Count a failure against the general key.

        Returns:
            LockoutOutcome; `locked` is True when this failure started a lockout
        """
        now = self._clock().timestamp()
        key = self.general_key(request)
        promote = False

        with self._locks["general"].lock_for(key):
            tracker = self._tracker("general", key)
            tracker.failed_attempts += 1
            tracker.risk_score = min(100, tracker.risk_score + 10)
            tracker.last_activity = now
            outcome = LockoutOutcome(
                failed_attempts=tracker.failed_attempts,
                lockout_count=tracker.lockout_count,
            )

            if tracker.failed_attempts >= self.config.max_failed_attempts:
                duration = self.config.base_delay_seconds * (2 ** tracker.lockout_count)
                tracker.lockout_until = now + duration
                tracker.lockout_count += 1
                promote = tracker.lockout_count >= self.config.max_lockouts
                outcome = LockoutOutcome(
                    failed_attempts=tracker.failed_attempts,
                    locked=True,
                    retry_after=duration,
                    lockout_count=tracker.lockout_count,
                    permanent_ban=promote,
                )
                tracker.failed_attempts = 0

        if outcome.locked:
            logger.warning(
                f"Lockout applied to {key} for {outcome.retry_after:.0f}s",
                extra={"tracker_key": key, "lockout_count": outcome.lockout_count}
            )

        if promote:
            self.block_ip(request.ip, reason="REPEATED_LOCKOUTS", duration_seconds=None)

        return outcome

    def record_success(self, request: RateLimitRequest):
        """Lower the general key's risk and reset consecutive failures."""
        key = self.general_key(request)
        with self._locks["general"].lock_for(key):
            tracker = self._trackers["general"].get(key)
            if tracker is None:
                return
            tracker.risk_score = max(0, tracker.risk_score - 5)
            tracker.failed_attempts = 0
            tracker.lockout_count = 0

    # ------------------------------------------------------------------
    # Threats and blocklists
    # ------------------------------------------------------------------

    def handle_attack(self, request: RateLimitRequest, matches: List[SignatureMatch]) -> ThreatRecord:
        """
        Record a signature match, ban its source and raise an alert.

        Severity comes from the highest-scoring family; the ban lasts as long
        as the longest family ban.
        """
        threat_types = sorted({m.threat_type for m in matches})
        score = self.detector.threat_score(matches)
        ban_seconds = max(self.detector.ban_seconds(t) for t in threat_types)
        # A path that carried the payload is not kept
        path = None if any(m.field == "path" for m in matches) else request.path

        record = self._ban(
            ip=request.ip,
            user_id=request.user_id,
            session_id=None,
            threat_types=threat_types,
            score=score,
            duration_seconds=ban_seconds,
            path=path,
            evidence=[f"{m.field}:{m.threat_type}" for m in matches],
        )

        with self._metrics_lock:
            self._metrics["attack_attempts"] += 1

        logger.warning(
            f"Attack detected from {request.ip}: {', '.join(threat_types)}",
            extra={
                "threat_id": record.threat_id,
                "ip": request.ip,
                "threat_types": threat_types,
                "severity": record.severity.value,
            }
        )

        self._raise_alert(
            "THREAT_DETECTED",
            f"{', '.join(threat_types)} detected from {request.ip}",
            record.severity.value,
            {
                "threat_id": record.threat_id,
                "ip": request.ip,
                "user_id": request.user_id,
                "threat_types": threat_types,
                "path": path,
                "banned_until": record.banned_until.isoformat() if record.banned_until else None,
            }
        )
        return record

    def block_ip(
        self,
        ip: str,
        reason: str = "MANUAL",
        duration_seconds: Optional[float] = None,
        severity_score: int = 90
    ) -> ThreatRecord:
        """
        Ban an IP. `duration_seconds=None` makes the ban permanent.
        """
        record = self._ban(
            ip=ip,
            user_id=None,
            session_id=None,
            threat_types=[reason],
            score=severity_score,
            duration_seconds=duration_seconds,
        )
        logger.warning(
            f"IP blocked: {ip} ({reason})",
            extra={"ip": ip, "reason": reason, "permanent": record.is_permanent}
        )
        if record.is_permanent:
            self._raise_alert(
                "IP_PERMANENTLY_BLOCKED",
                f"{ip} permanently blocked ({reason})",
                ThreatSeverity.HIGH.value,
                {"ip": ip, "reason": reason, "threat_id": record.threat_id}
            )
        return record

    def block_session(self, session_id: str, reason: str = "MANUAL", duration_seconds: Optional[float] = None) -> ThreatRecord:
        return self._ban(
            ip=None,
            user_id=None,
            session_id=session_id,
            threat_types=[reason],
            score=70,
            duration_seconds=duration_seconds,
        )

    def _ban(
        self,
        *,
        ip: Optional[str],
        user_id: Optional[str],
        session_id: Optional[str],
        threat_types: List[str],
        score: int,
        duration_seconds: Optional[float],
        path: Optional[str] = None,
        evidence: Optional[List[str]] = None
    ) -> ThreatRecord:
        now = self._clock()
        record = ThreatRecord(
            threat_id=generate_identifier("THREAT_"),
            ip=ip,
            user_id=user_id,
            session_id=session_id,
            threat_types=threat_types,
            severity=ThreatSeverity.from_score(score),
            severity_score=score,
            detected_at=now,
            banned_until=None if duration_seconds is None else now + timedelta(seconds=duration_seconds),
            path=path,
            evidence=evidence or [],
        )
        self.threat_store.save(record)
        self._apply_block(record)
        return record

    def _apply_block(self, record: ThreatRecord):
        with self._block_lock:
            if record.ip and record.ip != "unknown":
                self._blocked["ip"].add(record.ip)
            if record.user_id:
                self._blocked["user"].add(record.user_id)
            if record.session_id:
                self._blocked["session"].add(record.session_id)

    def _blocked_subject(self, request: RateLimitRequest) -> Optional[Tuple[str, str]]:
        with self._block_lock:
            if request.ip in self._blocked["ip"]:
                return "ip", request.ip
            if request.user_id and request.user_id in self._blocked["user"]:
                return "user", request.user_id
            if request.session_id and request.session_id in self._blocked["session"]:
                return "session", request.session_id
        return None

    def _records_for(self, kind: str, value: str) -> List[ThreatRecord]:
        attr = {"ip": "ip", "user": "user_id", "session": "session_id"}[kind]
        return [r for r in self.threat_store.unresolved() if getattr(r, attr) == value]

    def _block_retry_after(self, kind: str, value: str, now: datetime) -> Optional[float]:
        """Seconds until the subject's bans lapse; None when permanent or unknown."""
        records = self._records_for(kind, value)
        if not records or any(r.is_permanent for r in records):
            return None
        return max(r.retry_after(now) for r in records)

    def _release_subjects(self, record: ThreatRecord):
        """Unblock a resolved record's subjects unless another ban still covers them."""
        for kind, value in (("ip", record.ip), ("user", record.user_id), ("session", record.session_id)):
            if value and not self._records_for(kind, value):
                with self._block_lock:
                    self._blocked[kind].discard(value)

    def is_blocked(self, ip: Optional[str] = None, user_id: Optional[str] = None) -> bool:
        with self._block_lock:
            return bool(
                (ip and ip in self._blocked["ip"]) or
                (user_id and user_id in self._blocked["user"])
            )

    def _unblock(self, kind: str, value: str) -> int:
        now = self._clock()
        records = self._records_for(kind, value)
        for record in records:
            self.threat_store.resolve(record.threat_id, now)
        # Resolving a record lifts it for every subject it names
        for record in records:
            self._release_subjects(record)
        with self._block_lock:
            was_blocked = value in self._blocked[kind]
            self._blocked[kind].discard(value)
        if was_blocked or records:
            logger.info(f"Unblocked {kind} {value}", extra={"block_kind": kind, "resolved": len(records)})
        return len(records)

    def unblock_ip(self, ip: str) -> int:
        """Lift every ban on `ip`. Returns the number of records resolved."""
        count = self._unblock("ip", ip)
        # A permanent ban came from repeated lockouts: start the lockout ladder again
        for key in [k for k in list(self._trackers["general"]) if k.startswith(f"{ip}:")]:
            with self._locks["general"].lock_for(key):
                tracker = self._trackers["general"].get(key)
                if tracker is not None:
                    tracker.lockout_count = 0
                    tracker.lockout_until = 0.0
                    tracker.failed_attempts = 0
        return count

    def unblock_user(self, user_id: str) -> int:
        return self._unblock("user", user_id)

    def restore_blocks(self) -> int:
        """
        Re-apply unresolved bans from the threat store (call at startup).

        Returns:
            Number of bans re-applied
        """
        if isinstance(self.threat_store, RedisThreatStore):
            self.threat_store.load()

        now = self._clock()
        restored = 0
        for record in self.threat_store.unresolved():
            if record.is_expired(now):
                self.threat_store.resolve(record.threat_id, now)
                continue
            self._apply_block(record)
            restored += 1
        return restored

    def get_threats(
        self,
        severity: Optional[ThreatSeverity] = None,
        resolved: Optional[bool] = None,
        since: Optional[datetime] = None,
        limit: int = 100
    ) -> List[ThreatRecord]:
        """Threat records, newest first."""
        records = self.threat_store.all()
        if severity is not None:
            records = [r for r in records if r.severity == severity]
        if resolved is not None:
            records = [r for r in records if r.resolved == resolved]
        if since is not None:
            records = [r for r in records if r.detected_at >= since]
        records.sort(key=lambda r: r.detected_at, reverse=True)
        return records[:limit]

    # ------------------------------------------------------------------
    # Path limits
    # ------------------------------------------------------------------

    def add_path_limit(self, path: str, max_requests: int, window_seconds: float):
        self._path_limits[path] = QuotaRule(max_requests=max_requests, window_seconds=window_seconds)
        logger.info(f"Path limit set for {path}", extra={"path": path, "max_requests": max_requests})

    def remove_path_limit(self, path: str) -> bool:
        return self._path_limits.pop(path, None) is not None

    # ------------------------------------------------------------------
    # Maintenance and statistics
    # ------------------------------------------------------------------

    def run_maintenance(self) -> Dict[str, Any]:
        """
        Resolve lapsed bans, end expired strict modes, evict idle trackers.

        Iterates a snapshot of keys and locks one key at a time.
        """
        now_dt = self._clock()
        now = now_dt.timestamp()

        resolved = 0
        for record in self.threat_store.unresolved():
            if record.is_expired(now_dt):
                self.threat_store.resolve(record.threat_id, now_dt)
                self._release_subjects(record)
                resolved += 1

        evicted = 0
        strict_ended = 0
        for dimension in DIMENSIONS:
            table = self._trackers[dimension]
            for key in list(table.keys()):
                with self._locks[dimension].lock_for(key):
                    tracker = table.get(key)
                    if tracker is None:
                        continue
                    if tracker.strict_until and not tracker.in_strict_mode(now):
                        tracker.strict_until = 0.0
                        strict_ended += 1
                    idle = now - tracker.last_activity
                    if idle > self.config.tracker_idle_seconds and not tracker.is_locked(now):
                        del table[key]
                        evicted += 1

        report = {
            "resolved_threats": resolved,
            "evicted_trackers": evicted,
            "strict_modes_ended": strict_ended,
            "active_trackers": sum(len(table) for table in self._trackers.values()),
            "blocked_ips": len(self._blocked["ip"]),
        }
        logger.info("Rate limiter maintenance complete", extra=report)
        return report

    def reset(self) -> Dict[str, int]:
        """
        Administrative reset: drop trackers, blocklists, threat records and
        counters, and restore the configured path limits.
        """
        cleared = {
            "trackers": sum(len(table) for table in self._trackers.values()),
            "threats": len(self.threat_store),
        }
        for dimension in DIMENSIONS:
            self._trackers[dimension] = {}
        with self._block_lock:
            cleared["blocked"] = sum(len(values) for values in self._blocked.values())
            for values in self._blocked.values():
                values.clear()
        self.threat_store.clear()
        self._path_limits = dict(self.config.path_limits)
        with self._metrics_lock:
            for name in self._metrics:
                self._metrics[name] = 0
            self._current_minute_count = 0

        logger.warning("Rate limiter state reset", extra=cleared)
        return cleared

    def _record_metrics(self, decision: RateDecision, elapsed_ms: float):
        minute = int(self._clock().timestamp() // 60)
        with self._metrics_lock:
            self._metrics["total_requests"] += 1
            self._metrics["total_response_ms"] += elapsed_ms
            if decision.reason == DenialReason.SYSTEM_ERROR:
                self._metrics["system_errors"] += 1
            if decision.allowed:
                self._metrics["legitimate_requests"] += 1
            else:
                self._metrics["blocked_requests"] += 1

            if minute != self._current_minute:
                self._current_minute = minute
                self._current_minute_count = 0
            self._current_minute_count += 1
            self._metrics["peak_load"] = max(self._metrics["peak_load"], self._current_minute_count)

    def get_statistics(self) -> Dict[str, Any]:
        """Counters, tracker sizes, blocklist sizes and threat totals."""
        with self._metrics_lock:
            metrics = dict(self._metrics)
        total = metrics["total_requests"]
        metrics["average_response_ms"] = round(metrics.pop("total_response_ms") / total, 3) if total else 0.0

        with self._block_lock:
            blocked = {kind: len(values) for kind, values in self._blocked.items()}

        threats = self.threat_store.all()
        return {
            "metrics": metrics,
            "trackers": {dimension: len(table) for dimension, table in self._trackers.items()},
            "blocked": blocked,
            "threats": {
                "total": len(threats),
                "unresolved": sum(1 for t in threats if not t.resolved),
            },
            "path_limits": {path: rule.model_dump() for path, rule in self._path_limits.items()},
        }

    def _raise_alert(self, alert_type: str, message: str, severity: str, data: Dict[str, Any]):
        if self._alert_sink is None:
            return
        try:
            self._alert_sink(alert_type, message, severity, data)
        except Exception as e:
            logger.error(f"Failed to raise {alert_type} alert: {e}", exc_info=True)
