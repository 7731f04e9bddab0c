"""
SecurityContext: the one handle that owns every component.

Build it once at startup and pass it to whatever needs codes, the rate
limiter or the audit log. Tests build as many isolated contexts as they
like.

    context = SecurityContext.create(Settings())
    context.start()      # Sentry, restored bans, background jobs
    issued = context.codes.issue_code("ORG1", "standard")
    ...
    context.stop()       # stop jobs, flush the audit log

Nothing is scheduled until start() is called.
"""

import logging
from typing import Dict, Optional

import redis

from codeguard.core.alerting import AdminNotifier
from codeguard.core.config import (
    AuditConfig,
    CodePolicy,
    RateLimitConfig,
    RiskPolicy,
    SchedulerConfig,
    Settings,
    SweepPolicy,
)
from codeguard.core.scheduler import Scheduler
from codeguard.core.security import CryptoProvider
from codeguard.core.sentry import init_sentry
from codeguard.core.timeutil import Clock, utcnow
from codeguard.modules.audit.logger import AuditLogger
from codeguard.modules.codes.service import CodeService
from codeguard.modules.detection.signatures import AttackSignatureDetector
from codeguard.modules.ratelimit.limiter import RateLimiter
from codeguard.modules.ratelimit.threat_store import RedisThreatStore, ThreatStore
from codeguard.tasks.maintenance import register_maintenance_jobs

logger = logging.getLogger(__name__)


def _resolve_keys(settings: Settings):
    """
    SECRET_KEY and ENCRYPTION_KEY from settings.

    Production requires both. Elsewhere missing keys are generated for the
    life of the process (codes and encrypted audit lines do not survive a
    restart).
    """
    secret_key = settings.SECRET_KEY
    encryption_key = settings.ENCRYPTION_KEY

    if settings.is_production:
        if not secret_key:
            raise ValueError("SECRET_KEY must be set in production")
        if not encryption_key:
            raise ValueError("ENCRYPTION_KEY must be set in production")
        return secret_key, encryption_key

    if not secret_key:
        logger.warning("SECRET_KEY not set - generated an ephemeral key")
        secret_key = CryptoProvider.generate_secret_key()
    if not encryption_key:
        logger.warning("ENCRYPTION_KEY not set - generated an ephemeral key")
        encryption_key = CryptoProvider.generate_encryption_key()
    return secret_key, encryption_key


class SecurityContext:
    """Owns crypto, detector, rate limiter, audit logger, code service and scheduler."""

    def __init__(
        self,
        settings: Settings,
        crypto: CryptoProvider,
        detector: AttackSignatureDetector,
        rate_limiter: RateLimiter,
        audit: AuditLogger,
        codes: CodeService,
        notifier: AdminNotifier,
        scheduler: Scheduler,
        scheduler_config: SchedulerConfig
    ):
        self.settings = settings
        self.crypto = crypto
        self.detector = detector
        self.rate_limiter = rate_limiter
        self.audit = audit
        self.codes = codes
        self.notifier = notifier
        self.scheduler = scheduler
        self.scheduler_config = scheduler_config
        self._jobs_registered = False
        self._started = False

    @classmethod
    def create(
        cls,
        settings: Optional[Settings] = None,
        *,
        clock: Optional[Clock] = None,
        redis_client=None,
        code_policy: Optional[CodePolicy] = None,
        risk_policy: Optional[RiskPolicy] = None,
        sweep_policy: Optional[SweepPolicy] = None,
        rate_limit_config: Optional[RateLimitConfig] = None,
        audit_config: Optional[AuditConfig] = None,
        scheduler_config: Optional[SchedulerConfig] = None
    ) -> "SecurityContext":
        """
        Build a fully wired context.

        Args:
            settings: Environment settings (default: Settings() from env/.env)
            clock: Time source shared by every component
            redis_client: Redis client; built from REDIS_URL when not given
            *_policy / *_config: Override the policies derived from settings

        Raises:
            ValueError: Missing keys in production
        """
        settings = settings or Settings()
        clock = clock or utcnow

        secret_key, encryption_key = _resolve_keys(settings)
        crypto = CryptoProvider(secret_key, encryption_key, hash_iterations=settings.HASH_ITERATIONS)

        if redis_client is None and settings.REDIS_URL:
            redis_client = redis.from_url(settings.REDIS_URL, decode_responses=True)

        notifier = AdminNotifier(redis_client=redis_client, environment=settings.ENVIRONMENT, clock=clock)

        audit_config = audit_config or settings.audit_config()
        audit = AuditLogger(audit_config, cipher=crypto.cipher, notifier=notifier, clock=clock)

        rate_limit_config = rate_limit_config or settings.rate_limit_config()
        detector = AttackSignatureDetector(default_ban_seconds=rate_limit_config.default_ban_seconds)
        if redis_client is not None:
            threat_store = RedisThreatStore(redis_client, capacity=rate_limit_config.max_threat_records)
        else:
            threat_store = ThreatStore(capacity=rate_limit_config.max_threat_records)

        rate_limiter = RateLimiter(
            rate_limit_config,
            detector=detector,
            threat_store=threat_store,
            alert_sink=audit.create_alert,
            clock=clock,
        )

        codes = CodeService(
            crypto,
            rate_limiter,
            audit,
            detector=detector,
            code_policy=code_policy or settings.code_policy(),
            risk_policy=risk_policy or RiskPolicy(),
            sweep_policy=sweep_policy or SweepPolicy(),
            clock=clock,
        )

        return cls(
            settings=settings,
            crypto=crypto,
            detector=detector,
            rate_limiter=rate_limiter,
            audit=audit,
            codes=codes,
            notifier=notifier,
            scheduler=Scheduler(clock=clock),
            scheduler_config=scheduler_config or settings.scheduler_config(),
        )

    def start(self):
        """Initialize Sentry, restore persisted bans and start background jobs."""
        if self._started:
            return

        init_sentry(self.settings.SENTRY_DSN, environment=self.settings.ENVIRONMENT)
        restored = self.rate_limiter.restore_blocks()

        if self.scheduler_config.enabled:
            if not self._jobs_registered:
                register_maintenance_jobs(self.scheduler, self, self.scheduler_config)
                self._jobs_registered = True
            self.scheduler.start()

        self._started = True
        self.audit.log_activity("SYSTEM_STARTUP", data={"restored_bans": restored})
        logger.info(
            f"{self.settings.APP_NAME} started",
            extra={"environment": self.settings.ENVIRONMENT, "restored_bans": restored}
        )

    def stop(self):
        """Stop background jobs and flush the audit log."""
        if not self._started:
            return

        self.scheduler.stop()
        self.audit.log_activity("SYSTEM_SHUTDOWN")
        self.audit.flush()
        self._started = False
        logger.info(f"{self.settings.APP_NAME} stopped")

    def reset(self) -> Dict[str, int]:
        """
        Clear every code, tracker, block and threat record.

        Background jobs keep running. Audit partitions and queued alerts are
        kept so the reset itself stays on the record.

        Returns:
            Counts of what was cleared
        """
        cleared = {"codes": self.codes.repository.clear()}
        cleared.update(self.rate_limiter.reset())

        self.audit.log_activity("SYSTEM_RESET", data=cleared)
        logger.warning(f"{self.settings.APP_NAME} security state reset", extra=cleared)
        return cleared

    def __enter__(self) -> "SecurityContext":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.stop()
