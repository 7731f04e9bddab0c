"""
Unit tests for the background scheduler and maintenance jobs.

Run tests:
    pytest tests/unit/test_scheduler.py -v
"""

import threading
from unittest.mock import Mock, patch

import pytest

from codeguard.core.config import SchedulerConfig
from codeguard.core.scheduler import PeriodicJob, Scheduler
from codeguard.models.access_code import IssueOptions
from codeguard.tasks.maintenance import (
    MAINTENANCE_SCHEDULE,
    generate_security_report,
    register_maintenance_jobs,
    run_code_sweep,
)


class TestPeriodicJob:
    @pytest.mark.parametrize("interval", [0, -5])
    def test_invalid_interval(self, interval):
        with pytest.raises(ValueError):
            PeriodicJob("bad", interval, lambda: None)


class TestScheduler:
    """Test job registration, runs and the thread lifecycle."""

    def test_duplicate_job(self):
        scheduler = Scheduler()
        scheduler.add_job("job", 10, lambda: None)

        with pytest.raises(ValueError):
            scheduler.add_job("job", 10, lambda: None)

    def test_run_job_success(self, clock):
        func = Mock()
        scheduler = Scheduler(clock=clock)
        scheduler.add_job("job", 10, func)

        assert scheduler.run_job("job") is True

        func.assert_called_once_with()
        status = scheduler.get_status()[0]
        assert status["runs"] == 1
        assert status["failures"] == 0
        assert status["last_run"] == clock().isoformat()

    @patch("codeguard.core.scheduler.capture_business_error")
    def test_run_job_failure(self, mock_capture):
        """Test a failing run is reported and counted, not raised."""
        scheduler = Scheduler()
        scheduler.add_job("job", 10, Mock(side_effect=RuntimeError("boom")))

        assert scheduler.run_job("job") is False

        status = scheduler.get_status()[0]
        assert status["failures"] == 1
        assert status["last_error"] == "RuntimeError"
        assert mock_capture.call_args.kwargs["context"]["job_name"] == "job"

    def test_start_and_stop(self):
        """Test jobs run on background threads until stopped."""
        # Setup
        ran = threading.Event()
        scheduler = Scheduler()
        scheduler.add_job("job", 0.01, ran.set)

        # Execute
        scheduler.start()
        try:
            assert ran.wait(timeout=5)
            assert scheduler.is_running
        finally:
            scheduler.stop()

        # Verify
        assert not scheduler.is_running

    def test_no_jobs_added_while_running(self):
        scheduler = Scheduler()
        scheduler.add_job("job", 3600, lambda: None)
        scheduler.start()

        try:
            with pytest.raises(RuntimeError):
                scheduler.add_job("other", 10, lambda: None)
        finally:
            scheduler.stop()

    def test_stop_when_not_running(self):
        Scheduler().stop()


class TestMaintenanceJobs:
    """Test the maintenance schedule against a real context."""

    def test_register(self, context):
        """Test every scheduled job is registered with its configured interval."""
        config = SchedulerConfig(code_sweep_seconds=120)

        register_maintenance_jobs(context.scheduler, context, config)

        status = {job["job_name"]: job for job in context.scheduler.get_status()}
        assert set(status) == set(MAINTENANCE_SCHEDULE)
        assert status["codes.adaptive_sweep"]["interval_seconds"] == 120
        assert status["audit.flush"]["interval_seconds"] == 30

    def test_run_all(self, context):
        """Test every job runs cleanly on an empty context."""
        register_maintenance_jobs(context.scheduler, context, SchedulerConfig())

        results = context.scheduler.run_all()

        assert results == {job_name: True for job_name in MAINTENANCE_SCHEDULE}

    def test_code_sweep_job(self, context, clock):
        context.codes.issue_code("ORG1", "standard", options=IssueOptions(expiry_hours=1))
        clock.advance(hours=2)

        report = run_code_sweep(context)

        assert report["expired_removed"] == 1

    def test_security_report(self, context):
        context.codes.issue_code("ORG1", "standard")

        summary = generate_security_report(context)

        assert summary["system_status"] == "HEALTHY"
        assert summary["total_codes"] == 1
        assert 0 <= summary["security_score"] <= 100
