"""
Periodic maintenance jobs.

Each job is a plain function taking the SecurityContext, so it can be run
directly from tests or a shell:

    from codeguard.tasks.maintenance import run_code_sweep
    run_code_sweep(context)

MAINTENANCE_SCHEDULE maps job names to the task function and the
SchedulerConfig field holding its interval.
"""

import logging
from functools import partial
from typing import Any, Dict

from codeguard.core.config import SchedulerConfig
from codeguard.core.scheduler import Scheduler

logger = logging.getLogger(__name__)


def run_code_sweep(context) -> Dict[str, Any]:
    """Adaptive sweep over all codes (purge, tighten, anomalies, profile refresh)."""
    report = context.codes.run_adaptive_sweep()
    return report.to_dict()


def run_rate_limit_maintenance(context) -> Dict[str, Any]:
    """Resolve lapsed bans, end strict modes, evict idle trackers."""
    return context.rate_limiter.run_maintenance()


def flush_audit_log(context) -> Dict[str, Any]:
    written = context.audit.flush()
    return {"written": written}


def cleanup_audit_log(context) -> Dict[str, Any]:
    """Delete audit partitions past retention and evict idle aggregates."""
    return context.audit.cleanup()


def generate_security_report(context) -> Dict[str, Any]:
    """
    Log system statistics and security trends.

    Runs hourly. A CRITICAL system status is logged at ERROR so it reaches
    Sentry through the logging integration.
    """
    stats = context.codes.get_stats()
    trends = context.audit.get_security_trends()

    summary = {
        "system_status": stats.status,
        "total_codes": stats.total_codes,
        "active_codes": stats.active_codes,
        "high_risk_codes": stats.high_risk_codes,
        "blocked_ips": stats.blocked_ips,
        "open_alerts": stats.open_alerts,
        "security_score": trends.security_score,
        "recommendations": stats.recommendations,
    }

    if stats.status == "CRITICAL":
        logger.error(f"Security report: system status {stats.status}", extra=summary)
    elif stats.status == "WARNING":
        logger.warning(f"Security report: system status {stats.status}", extra=summary)
    else:
        logger.info(f"Security report: system status {stats.status}", extra=summary)

    return summary


MAINTENANCE_SCHEDULE = {
    # Adaptive sweep every minute
    "codes.adaptive_sweep": {
        "task": run_code_sweep,
        "interval": "code_sweep_seconds",
    },

    # Rate limiter cleanup every 5 minutes
    "ratelimit.maintenance": {
        "task": run_rate_limit_maintenance,
        "interval": "rate_limit_maintenance_seconds",
    },

    # Write pending audit entries every 30 seconds
    "audit.flush": {
        "task": flush_audit_log,
        "interval": "audit_flush_seconds",
    },

    # Retention hourly
    "audit.cleanup": {
        "task": cleanup_audit_log,
        "interval": "audit_cleanup_seconds",
    },

    # Security report hourly
    "security.report": {
        "task": generate_security_report,
        "interval": "security_report_seconds",
    },
}


def register_maintenance_jobs(scheduler: Scheduler, context, config: SchedulerConfig):
    """
    Register every job in MAINTENANCE_SCHEDULE on `scheduler`.

    Args:
        scheduler: Scheduler that is not running yet
        context: SecurityContext passed to each task
        config: Job intervals
    """
    for job_name, entry in MAINTENANCE_SCHEDULE.items():
        interval = getattr(config, entry["interval"])
        scheduler.add_job(job_name, interval, partial(entry["task"], context))

    logger.info(
        f"Registered {len(MAINTENANCE_SCHEDULE)} maintenance jobs",
        extra={"jobs": sorted(MAINTENANCE_SCHEDULE)}
    )
