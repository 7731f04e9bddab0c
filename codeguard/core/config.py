"""
Core configuration using Pydantic Settings.

Environment variables are loaded into `Settings`. The tunable knobs of each
component live in typed policy models (plain pydantic models with documented
defaults) which `Settings` knows how to build:

- CodePolicy: expiry, code composition, usage caps
- RiskPolicy: validation risk factors and thresholds
- SweepPolicy: adaptive sweep (usage patterns, anomalies)
- RateLimitConfig / BehaviorPolicy: quotas, lockouts, behavioral scoring
- AuditConfig: retention, batching, anomaly thresholds
- SchedulerConfig: background job intervals

Risk weights are calibration knobs, not protocol. Override them per
deployment rather than editing the defaults.
"""

from pathlib import Path
from typing import Dict, List, Optional

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class QuotaRule(BaseModel):
    """Sliding-window quota: at most `max_requests` per `window_seconds`."""
    max_requests: int = Field(..., gt=0)
    window_seconds: float = Field(..., gt=0)


class BehaviorPolicy(BaseModel):
    """Weights and thresholds for per-request behavioral scoring."""

    suspicious_threshold: int = 80  # Score that puts the actor in strict mode
    deny_threshold: int = 95  # Score that denies an actor already in strict mode

    # Request timing
    regularity_sample: int = 10  # Timestamps considered for interval regularity
    min_intervals: int = 3
    regularity_threshold: float = 0.8  # 1 - coefficient of variation
    regularity_weight: int = 30
    burst_window_seconds: float = 30
    burst_threshold: int = 5
    burst_weight: int = 20
    high_rate_per_minute: int = 50
    high_rate_weight: int = 20

    # Request shape
    sensitive_paths: List[str] = Field(
        default_factory=lambda: ["/admin", "/config", "/api/admin", "/users"]
    )
    sensitive_path_weight: int = 15
    automation_agents: List[str] = Field(
        default_factory=lambda: ["bot", "crawler", "spider", "scraper", "curl", "wget", "python-requests"]
    )
    automation_agent_weight: int = 25
    min_agent_length: int = 10
    missing_agent_weight: int = 15

    # Calendar
    off_hours_start: int = 23  # Off-hours are [start, 24) and [0, end)
    off_hours_end: int = 6
    off_hours_weight: int = 10
    weekend_weight: int = 5


class RateLimitConfig(BaseModel):
    """Quotas per dimension plus lockout and ban policy."""

    general: QuotaRule = Field(default_factory=lambda: QuotaRule(max_requests=100, window_seconds=60))
    ip: QuotaRule = Field(default_factory=lambda: QuotaRule(max_requests=1000, window_seconds=3600))
    user: QuotaRule = Field(default_factory=lambda: QuotaRule(max_requests=500, window_seconds=3600))
    session: QuotaRule = Field(default_factory=lambda: QuotaRule(max_requests=200, window_seconds=60))
    api_key: QuotaRule = Field(default_factory=lambda: QuotaRule(max_requests=10000, window_seconds=3600))
    path: QuotaRule = Field(default_factory=lambda: QuotaRule(max_requests=1000, window_seconds=60))
    path_limits: Dict[str, QuotaRule] = Field(default_factory=dict)  # Exact path overrides

    max_failed_attempts: int = 5
    base_delay_seconds: float = 30.0  # Lockout = base * 2 ** lockout_count
    max_lockouts: int = 3  # Consecutive lockouts before a permanent IP ban

    tracker_idle_seconds: float = 3600  # Maintenance evicts trackers idle this long
    strict_mode_seconds: float = 1800
    strict_mode_factor: float = 0.5  # Quota multiplier while in strict mode
    max_threat_records: int = 1000
    default_ban_seconds: float = 900

    behavior: BehaviorPolicy = Field(default_factory=BehaviorPolicy)


class CodePolicy(BaseModel):
    """Issuance and composition policy for access codes."""

    expiry_hours: float = 12
    default_length: int = 16
    min_length: int = 12
    max_length: int = 128
    require_lowercase: bool = True
    require_uppercase: bool = True
    require_digits: bool = True
    require_special: bool = True
    privileged_types: List[str] = Field(default_factory=lambda: ["admin", "system"])
    access_history_limit: int = 50
    max_input_length: int = 4096  # Longer candidates are scanned up to this length, then rejected


class RiskPolicy(BaseModel):
    """Composite risk factors applied at validation and profile refresh."""

    # Validation-time assessment
    high_security_level: int = 20
    near_expiry_ratio: float = 0.8
    near_expiry: int = 15
    usage_spike_factor: float = 3.0
    usage_spike_min: int = 5
    usage_spike: int = 25
    blocked_ip: int = 40
    poor_ip_reputation: int = 20
    ip_failure_ratio: float = 0.5
    ip_min_events: int = 10
    off_hours: int = 10
    off_hours_start: int = 23
    off_hours_end: int = 6
    automation_user_agent: int = 20
    automation_agents: List[str] = Field(
        default_factory=lambda: ["bot", "crawler", "spider", "scraper", "curl", "wget", "python-requests", "headless"]
    )
    missing_user_agent: int = 10
    block_threshold: int = 80
    ip_block_threshold: int = 90
    ip_block_seconds: float = 3600

    # Post-use feedback
    good_usage_below: int = 30
    good_usage_adjustment: int = -5
    poor_usage_above: int = 70
    poor_usage_adjustment: int = 10

    # Profile refresh
    short_code_length: int = 20
    short_code: int = 20
    profile_near_expiry_ratio: float = 0.9
    profile_near_expiry: int = 15
    usage_ratio_threshold: float = 0.9
    high_usage_ratio: int = 25
    suspicious_pattern_indicators: int = 2
    suspicious_pattern: int = 30
    high_band: int = 70
    medium_band: int = 40

    # Threat handling on issued secrets
    threat_adjustments: Dict[str, int] = Field(
        default_factory=lambda: {"HIGH": 30, "MEDIUM": 15, "LOW": 5}
    )


class SweepPolicy(BaseModel):
    """Adaptive sweep: usage-pattern indicators and anomaly thresholds."""

    expected_daily_usage: float = 24
    high_usage_factor: float = 2.0
    high_usage_min: int = 5
    low_usage_factor: float = 0.1
    low_usage_min_age_days: float = 1.0
    distinct_ip_threshold: int = 5
    risky_access_score: float = 50
    off_hours_ratio: float = 0.5
    min_history_for_ratios: int = 4

    medium_indicators: int = 2
    high_indicators: int = 3
    multipliers: Dict[str, float] = Field(
        default_factory=lambda: {"LOW": 1.0, "MEDIUM": 0.75, "HIGH": 0.5}
    )
    usage_limits: Dict[str, int] = Field(
        default_factory=lambda: {"LOW": 100, "MEDIUM": 50, "HIGH": 20}
    )

    spike_factor: float = 5.0
    spike_min: int = 5
    failure_threshold: int = 10
    failure_window_seconds: float = 1800


class AuditConfig(BaseModel):
    """Audit log persistence, retention and anomaly detection."""

    log_dir: Path = Path("logs/audit")
    retention_days: int = 90
    batch_size: int = 50  # Pending entries flushed to disk at this size
    memory_limit: int = 5000  # Recent entries kept in memory for reporting
    encrypt_at_rest: bool = False

    alert_capacity: int = 500
    alert_cooldown_seconds: float = 300
    aggregate_idle_seconds: float = 86400
    ip_history_limit: int = 1000
    user_history_limit: int = 1000

    high_activity_total: int = 100
    high_activity_recent: int = 20
    high_activity_window_seconds: float = 300
    failure_min_total: int = 10
    failure_ratio: float = 0.5
    unusual_ip_min_total: int = 5
    common_ip_count: int = 3

    high_risk_user_score: int = 70
    suspicious_ip_ratio: float = 0.3
    suspicious_ip_min_total: int = 10
    off_hours_start: int = 23
    off_hours_end: int = 6


class SchedulerConfig(BaseModel):
    """Intervals (seconds) of the background maintenance jobs."""

    enabled: bool = True
    code_sweep_seconds: float = 60
    rate_limit_maintenance_seconds: float = 300
    audit_flush_seconds: float = 30
    audit_cleanup_seconds: float = 3600
    security_report_seconds: float = 3600


class Settings(BaseSettings):
    """Settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore"
    )

    # App Configuration
    APP_NAME: str = "codeguard"
    ENVIRONMENT: str = "development"
    DEBUG: bool = False

    # Security & Encryption
    SECRET_KEY: Optional[str] = None  # HMAC key for code signatures
    ENCRYPTION_KEY: Optional[str] = None  # Fernet key (44-char base64)
    HASH_ITERATIONS: int = 200_000  # PBKDF2 iterations

    # Redis (optional durable threat store and alert dedupe)
    REDIS_URL: Optional[str] = None

    # Sentry Monitoring
    SENTRY_DSN: Optional[str] = None

    # Audit Log
    AUDIT_LOG_DIR: str = "logs/audit"
    AUDIT_ENCRYPT_AT_REST: bool = False
    AUDIT_RETENTION_DAYS: int = 90
    AUDIT_BATCH_SIZE: int = 50

    # Access Codes
    CODE_EXPIRY_HOURS: float = 12

    # Rate Limiting
    RATE_LIMIT_MAX_REQUESTS: int = 100
    RATE_LIMIT_WINDOW_SECONDS: float = 60
    MAX_FAILED_ATTEMPTS: int = 5

    # Background jobs
    SCHEDULER_ENABLED: bool = True

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.ENVIRONMENT.lower() == "production"

    def code_policy(self) -> CodePolicy:
        return CodePolicy(expiry_hours=self.CODE_EXPIRY_HOURS)

    def rate_limit_config(self) -> RateLimitConfig:
        return RateLimitConfig(
            general=QuotaRule(
                max_requests=self.RATE_LIMIT_MAX_REQUESTS,
                window_seconds=self.RATE_LIMIT_WINDOW_SECONDS
            ),
            session=QuotaRule(
                max_requests=self.RATE_LIMIT_MAX_REQUESTS * 2,
                window_seconds=self.RATE_LIMIT_WINDOW_SECONDS
            ),
            max_failed_attempts=self.MAX_FAILED_ATTEMPTS,
        )

    def audit_config(self) -> AuditConfig:
        return AuditConfig(
            log_dir=Path(self.AUDIT_LOG_DIR),
            retention_days=self.AUDIT_RETENTION_DAYS,
            batch_size=self.AUDIT_BATCH_SIZE,
            encrypt_at_rest=self.AUDIT_ENCRYPT_AT_REST,
        )

    def scheduler_config(self) -> SchedulerConfig:
        return SchedulerConfig(enabled=self.SCHEDULER_ENABLED)
