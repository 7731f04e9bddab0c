"""
Unit tests for the adaptive sweep.

Tests:
- Expired code purge
- Usage pattern analysis and limit tightening
- Anomaly detection (usage spikes, failure bursts)
- Risk profile refresh
- Per-code error isolation

Run tests:
    pytest tests/unit/test_sweep.py -v
"""

from datetime import timedelta
from unittest.mock import patch

import pytest

from codeguard.models.access_code import AccessRecord, CodeStatus, IssueOptions, RiskLevel

LONG_CODE = "Abcdefgh1234!@Qrstuvwx56"


@pytest.fixture
def codes(context):
    return context.codes


def add_accesses(record, now, count, distinct_ips=True, risk_score=0):
    for i in range(count):
        record.access_history.append(AccessRecord(
            timestamp=now,
            ip_address=f"198.51.100.{i + 1}" if distinct_ips else "198.51.100.1",
            user_agent="Mozilla/5.0",
            risk_score=risk_score,
        ))
    record.usage_count += count


class TestPurge:
    """Test removal of expired codes."""

    def test_expired_codes_removed(self, context, codes, clock):
        # Setup
        short = codes.issue_code("ORG1", "standard", options=IssueOptions(expiry_hours=1))
        kept = codes.issue_code("ORG1", "standard")
        clock.advance(hours=2)

        # Execute
        report = codes.run_adaptive_sweep()

        # Verify
        assert report.codes_scanned == 2
        assert report.expired_removed == 1
        assert codes.repository.get(short.code_id) is None
        assert codes.repository.get(kept.code_id) is not None
        entry = context.audit.get_recent_entries(activity="BULK_DELETE_EXPIRED")[0]
        assert entry.data == {"count": 1, "code_ids": [short.code_id]}

    def test_nothing_expired(self, context, codes):
        codes.issue_code("ORG1", "standard")

        report = codes.run_adaptive_sweep()

        assert report.expired_removed == 0
        assert context.audit.get_recent_entries(activity="BULK_DELETE_EXPIRED") == []


class TestLimitTightening:
    """Test MEDIUM and HIGH usage patterns shorten expiry and cap usage."""

    def test_low_pattern_unchanged(self, codes):
        """Test a quiet code keeps its limits."""
        issued = codes.issue_code("ORG1", "standard")

        report = codes.run_adaptive_sweep()

        record = codes.repository.get(issued.code_id)
        assert report.limits_tightened == 0
        assert record.usage_pattern.risk_level == RiskLevel.LOW
        assert record.expires_at == issued.expires_at
        assert record.max_usage is None

    def test_medium_pattern(self, context, codes, clock):
        """Test heavy use from many IPs tightens to 0.75."""
        # Setup
        issued = codes.issue_code("ORG1", "standard")
        record = codes.repository.get(issued.code_id)
        add_accesses(record, clock(), 5)

        # Execute
        report = codes.run_adaptive_sweep()

        # Verify
        assert record.usage_pattern.indicators == ["HIGH_USAGE", "MANY_DISTINCT_IPS"]
        assert record.usage_pattern.risk_level == RiskLevel.MEDIUM
        assert record.expires_at == record.created_at + timedelta(hours=9)
        assert record.max_usage == 37
        assert report.limits_tightened == 1
        entry = context.audit.get_recent_entries(activity="CODE_LIMITS_ADJUSTED")[0]
        assert entry.data["max_usage"] == 37
        assert entry.data["risk_level"] == "MEDIUM"

    def test_high_pattern(self, codes, clock):
        """Test three indicators tighten to 0.5."""
        issued = codes.issue_code("ORG1", "standard")
        record = codes.repository.get(issued.code_id)
        add_accesses(record, clock(), 5, risk_score=60)

        codes.run_adaptive_sweep()

        assert "RISKY_ACCESSES" in record.usage_pattern.indicators
        assert record.usage_pattern.risk_level == RiskLevel.HIGH
        assert record.expires_at == record.created_at + timedelta(hours=6)
        assert record.max_usage == 10
        assert "SUSPICIOUS_USAGE_PATTERN" in record.risk_profile.factors

    def test_expiry_never_lengthened(self, codes, clock):
        """Test a short custom expiry is left alone."""
        issued = codes.issue_code("ORG1", "standard", options=IssueOptions(expiry_hours=2))
        record = codes.repository.get(issued.code_id)
        add_accesses(record, clock(), 5)

        codes.run_adaptive_sweep()

        assert record.expires_at == issued.expires_at
        assert record.max_usage == 37

    def test_cap_not_below_usage(self, codes, clock):
        """Test the usage cap never drops below the current usage count."""
        issued = codes.issue_code("ORG1", "standard", options=IssueOptions(max_usage=100))
        record = codes.repository.get(issued.code_id)
        add_accesses(record, clock(), 5)
        record.usage_count = 40

        codes.run_adaptive_sweep()

        assert record.max_usage == 40


class TestAnomalies:
    """Test anomaly detection during the sweep."""

    def test_usage_spike_suspends(self, context, codes, clock):
        """Test a burst far above the hourly average suspends the code."""
        # Setup: a quiet code that suddenly sees six uses in one hour
        issued = codes.issue_code("ORG1", "standard")
        clock.advance(hours=10)
        record = codes.repository.get(issued.code_id)
        add_accesses(record, clock(), 6, distinct_ips=False)

        # Execute
        report = codes.run_adaptive_sweep()

        # Verify
        assert report.anomalies == 1
        assert report.suspended == 1
        assert record.status == CodeStatus.SUSPENDED
        assert record.suspension_reason == "SUDDEN_USAGE_SPIKE"
        assert context.audit.get_alerts(alert_type="HIGH_SEVERITY_ANOMALY")
        anomaly = context.audit.get_recent_entries(activity="ANOMALY_DETECTED")[0]
        assert anomaly.data["anomaly_type"] == "SUDDEN_USAGE_SPIKE"

    def test_failure_burst_alerts(self, context, codes, clock):
        """Test more than ten recent failures raises a MEDIUM alert only."""
        issued = codes.issue_code("ORG1", "standard")
        record = codes.repository.get(issued.code_id)
        record.failure_times = [clock()] * 11

        report = codes.run_adaptive_sweep()

        assert report.anomalies == 1
        assert report.suspended == 0
        assert record.status == CodeStatus.ACTIVE
        alert = context.audit.get_alerts(alert_type="ANOMALY_DETECTED")[0]
        assert alert.data["anomaly_type"] == "HIGH_FAILURE_RATE"

    def test_old_failures_pruned(self, codes, clock):
        """Test failures outside the window are dropped and ignored."""
        issued = codes.issue_code("ORG1", "standard")
        record = codes.repository.get(issued.code_id)
        record.failure_times = [clock()] * 11
        clock.advance(hours=1)

        report = codes.run_adaptive_sweep()

        assert report.anomalies == 0
        assert record.failure_times == []


class TestProfileRefresh:
    def test_short_code_factor(self, codes):
        """Test codes under 20 characters carry SHORT_CODE_LENGTH."""
        short = codes.issue_code("ORG1", "standard")
        long = codes.issue_code("ORG1", "standard", custom_code=LONG_CODE)

        codes.run_adaptive_sweep()

        short_profile = codes.repository.get(short.code_id).risk_profile
        long_profile = codes.repository.get(long.code_id).risk_profile
        assert "SHORT_CODE_LENGTH" in short_profile.factors
        assert short_profile.risk_score == 20
        assert "SHORT_CODE_LENGTH" not in long_profile.factors
        assert long_profile.risk_score == 0
        assert "NEW_CODE" in long_profile.factors

    def test_adjustment_carried(self, codes, client_context):
        """Test post-use feedback survives the refresh."""
        issued = codes.issue_code("ORG1", "standard")
        codes.validate_code(issued.raw_code, "ORG1", client_context())

        codes.run_adaptive_sweep()

        profile = codes.repository.get(issued.code_id).risk_profile
        assert profile.risk_score == 15
        assert "GOOD_USAGE_PATTERN" in profile.factors


class TestErrorIsolation:
    def test_failure_on_one_code(self, codes):
        """Test a fault on one code does not stop the sweep."""
        # Setup
        first = codes.issue_code("ORG1", "standard")
        second = codes.issue_code("ORG1", "standard")
        analyze = codes.assessor.analyze_usage_pattern

        def failing(record, now):
            if record.code_id == first.code_id:
                raise RuntimeError("bad record")
            return analyze(record, now)

        # Execute
        with patch.object(codes.assessor, "analyze_usage_pattern", side_effect=failing), \
                patch("codeguard.modules.codes.sweep.capture_business_error") as mock_capture:
            report = codes.run_adaptive_sweep()

        # Verify
        assert report.codes_scanned == 2
        assert codes.repository.get(first.code_id).usage_pattern is None
        assert codes.repository.get(second.code_id).usage_pattern is not None
        mock_capture.assert_called_once()
        assert mock_capture.call_args.kwargs["context"]["code_id"] == first.code_id
