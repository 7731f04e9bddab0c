"""
Background tasks package.

Periodic maintenance (adaptive code sweep, rate limiter cleanup, audit
flush and retention, security reports) registered on the context's
Scheduler by `register_maintenance_jobs`.
"""

from codeguard.tasks.maintenance import MAINTENANCE_SCHEDULE, register_maintenance_jobs

__all__ = ["MAINTENANCE_SCHEDULE", "register_maintenance_jobs"]
