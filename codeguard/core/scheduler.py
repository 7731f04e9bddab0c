"""
Background job scheduler.

Maintenance work (adaptive code sweep, rate limiter cleanup, audit flush and
retention, security reports) runs on periodic jobs that are started and
stopped explicitly by the owning SecurityContext. Nothing is scheduled as a
side effect of constructing a component.

Each job runs on its own daemon thread so a slow job never delays another,
and never runs on a request thread. A failing run is logged and reported to
Sentry; the job keeps its schedule.
"""

import logging
import threading
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from codeguard.core.sentry import capture_business_error
from codeguard.core.timeutil import Clock, utcnow

logger = logging.getLogger(__name__)


class PeriodicJob:
    """One named job with its interval and run statistics."""

    def __init__(self, job_name: str, interval_seconds: float, func: Callable[[], Any]):
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be > 0")
        self.job_name = job_name
        self.interval_seconds = interval_seconds
        self.func = func
        self.runs = 0
        self.failures = 0
        self.last_run: Optional[datetime] = None
        self.last_error: Optional[str] = None

    def __repr__(self):
        return f"<PeriodicJob {self.job_name} every {self.interval_seconds}s>"


class Scheduler:
    """
    Thread-per-job periodic scheduler.

    Usage:
        scheduler = Scheduler()
        scheduler.add_job("audit.flush", 30, audit.flush)
        scheduler.start()
        ...
        scheduler.stop()
    """

    def __init__(self, clock: Clock = utcnow):
        self._clock = clock
        self._jobs: Dict[str, PeriodicJob] = {}
        self._threads: List[threading.Thread] = []
        self._stop_event = threading.Event()
        self._lock = threading.Lock()
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    def add_job(self, job_name: str, interval_seconds: float, func: Callable[[], Any]) -> PeriodicJob:
        """Register a job. Jobs must be added before start()."""
        with self._lock:
            if self._running:
                raise RuntimeError("Cannot add jobs to a running scheduler")
            if job_name in self._jobs:
                raise ValueError(f"Job already registered: {job_name}")
            job = PeriodicJob(job_name, interval_seconds, func)
            self._jobs[job_name] = job
            return job

    def start(self):
        """Start one daemon thread per job. No-op if already running."""
        with self._lock:
            if self._running:
                return
            self._stop_event.clear()
            self._threads = []
            for job in self._jobs.values():
                thread = threading.Thread(
                    target=self._loop,
                    args=(job,),
                    name=f"codeguard-{job.job_name}",
                    daemon=True
                )
                self._threads.append(thread)
            self._running = True

        for thread in self._threads:
            thread.start()

        logger.info(
            f"Scheduler started with {len(self._jobs)} jobs",
            extra={"jobs": sorted(self._jobs)}
        )

    def stop(self, timeout: float = 5.0):
        """Signal every job loop to exit and wait for the threads."""
        with self._lock:
            if not self._running:
                return
            self._stop_event.set()
            threads = list(self._threads)
            self._running = False

        for thread in threads:
            thread.join(timeout=timeout)

        logger.info("Scheduler stopped")

    def _loop(self, job: PeriodicJob):
        while not self._stop_event.wait(job.interval_seconds):
            self.run_job(job.job_name)

    def run_job(self, job_name: str) -> bool:
        """
        Run one job now on the calling thread.

        Returns:
            True if the run succeeded
        """
        job = self._jobs[job_name]
        job.last_run = self._clock()
        job.runs += 1
        try:
            job.func()
            return True
        except Exception as e:
            job.failures += 1
            job.last_error = type(e).__name__
            capture_business_error(e, context={"operation": "scheduled_job", "job_name": job_name})
            return False

    def run_all(self) -> Dict[str, bool]:
        """Run every job once, in registration order."""
        return {job_name: self.run_job(job_name) for job_name in list(self._jobs)}

    def get_status(self) -> List[Dict[str, Any]]:
        return [
            {
                "job_name": job.job_name,
                "interval_seconds": job.interval_seconds,
                "runs": job.runs,
                "failures": job.failures,
                "last_run": job.last_run.isoformat() if job.last_run else None,
                "last_error": job.last_error,
            }
            for job in self._jobs.values()
        ]
