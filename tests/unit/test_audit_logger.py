"""
Unit tests for AuditLogger.

Tests:
- Severity and category assignment
- Batching, flushing and encryption at rest
- Per-IP and per-user aggregates
- Anomaly detection with cooldown
- Retention cleanup
- Usage reports and security trends

Run tests:
    pytest tests/unit/test_audit_logger.py -v
"""

from datetime import timedelta
from unittest.mock import patch

import pytest
from cryptography.fernet import Fernet

from codeguard.core.config import AuditConfig
from codeguard.core.security import TokenEncryption
from codeguard.models.audit import AlertSeverity, LogCategory, LogSeverity
from codeguard.modules.audit.logger import AuditLogger

CHROME_UA = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)


@pytest.fixture
def log_dir(tmp_path):
    return tmp_path / "audit"


@pytest.fixture
def audit(log_dir, clock):
    return AuditLogger(AuditConfig(log_dir=log_dir, batch_size=3), clock=clock)


def latest(audit):
    return audit.get_recent_entries(limit=1)[0]


class TestClassification:
    """Test severity and category assignment."""

    @pytest.mark.parametrize("activity,success,severity,category", [
        ("VALID_CODE_USED", True, LogSeverity.INFO, LogCategory.AUTH),
        ("INVALID_CODE", False, LogSeverity.WARNING, LogCategory.AUTH),
        ("VALIDATION_THREAT_DETECTED", False, LogSeverity.CRITICAL, LogCategory.SECURITY),
        ("CODE_CREATED", True, LogSeverity.INFO, LogCategory.BUSINESS),
        ("DATA_EXPORT", True, LogSeverity.WARNING, LogCategory.DATA),
        ("SYSTEM_STARTUP", True, LogSeverity.INFO, LogCategory.SYSTEM),
        ("SOMETHING_ELSE", True, LogSeverity.INFO, LogCategory.OTHER),
        ("SOMETHING_ELSE", False, LogSeverity.WARNING, LogCategory.OTHER),
    ])
    def test_tables(self, audit, activity, success, severity, category):
        """Test the activity tables drive severity and category."""
        audit.log_activity(activity, success=success)

        entry = latest(audit)
        assert entry.severity == severity
        assert entry.category == category

    def test_hint_raises_severity(self, audit):
        """Test a severity hint can raise the table severity."""
        audit.log_activity("CODE_CREATED", severity=LogSeverity.CRITICAL)

        assert latest(audit).severity == LogSeverity.CRITICAL

    def test_hint_never_lowers_severity(self, audit):
        """Test a severity hint cannot lower the table severity."""
        audit.log_activity("THREAT_DETECTED", severity=LogSeverity.INFO)

        assert latest(audit).severity == LogSeverity.CRITICAL

    def test_log_id_and_client_metadata(self, audit):
        """Test log ids and browser metadata."""
        log_id = audit.log_activity("VALID_CODE_USED", user_agent=CHROME_UA)

        entry = latest(audit)
        assert log_id.startswith("LOG_")
        assert entry.log_id == log_id
        assert entry.metadata["client"] == {"browser": "Chrome", "platform": "Windows", "is_mobile": False}

    def test_data_redacted(self, audit):
        """Test sensitive keys are redacted at any depth."""
        # Setup
        data = {
            "password": "hunter2",
            "nested": {"api_key": "k-123", "items": [{"auth_token": "t-456"}]},
            "code_id": "CODE_1",
        }

        # Execute
        audit.log_activity("CODE_UPDATED", data=data)

        # Verify
        stored = latest(audit).data
        assert stored["password"] == "***REDACTED***"
        assert stored["nested"]["api_key"] == "***REDACTED***"
        assert stored["nested"]["items"][0]["auth_token"] == "***REDACTED***"
        assert stored["code_id"] == "CODE_1"
        assert data["password"] == "hunter2"


class TestPersistence:
    """Test batching, flushing and encryption."""

    def test_batch_flushes_at_size(self, audit, log_dir):
        """Test entries reach disk once the batch is full."""
        partition = log_dir / "audit_2025-11-05.jsonl"

        audit.log_activity("LOGIN")
        audit.log_activity("LOGIN")
        assert not partition.exists()

        audit.log_activity("LOGIN")

        assert len(partition.read_text().splitlines()) == 3
        assert audit.get_statistics()["pending"] == 0

    def test_flush_writes_pending(self, audit, clock):
        """Test flush() writes whatever is pending."""
        audit.log_activity("LOGIN", user_id="u1")

        written = audit.flush()
        entries = list(audit.storage.read_entries(clock().date()))

        assert written == 1
        assert entries[0].activity == "LOGIN"
        assert entries[0].user_id == "u1"
        assert audit.flush() == 0

    def test_flush_failure_requeues(self, audit):
        """Test a failed write keeps the batch for the next flush."""
        # Setup
        audit.log_activity("LOGIN")
        audit.log_activity("LOGOUT")

        # Execute
        with patch.object(audit.storage, "write_entries", side_effect=OSError("disk full")):
            assert audit.flush() == 0

        # Verify
        assert audit.get_statistics()["pending"] == 2
        assert audit.flush() == 2

    def test_partial_flush_failure_no_duplicates(self, audit, log_dir, clock):
        """Test days already written are not appended again on retry."""
        # Setup: one batch spanning two days, second partition unwritable
        audit.log_activity("LOGIN")
        clock.advance(days=1)
        audit.log_activity("LOGOUT")
        blocker = log_dir / "audit_2025-11-06.jsonl"
        blocker.mkdir(parents=True)

        # Execute
        first = audit.flush()
        blocker.rmdir()
        second = audit.flush()

        # Verify
        assert first == 1
        assert second == 1
        assert len((log_dir / "audit_2025-11-05.jsonl").read_text().splitlines()) == 1
        assert len(blocker.read_text().splitlines()) == 1
        assert audit.get_statistics()["pending"] == 0

    def test_encryption_at_rest(self, log_dir, clock):
        """Test lines are encrypted on disk and readable with the key."""
        # Setup
        cipher = TokenEncryption(Fernet.generate_key().decode())
        audit = AuditLogger(
            AuditConfig(log_dir=log_dir, encrypt_at_rest=True),
            cipher=cipher,
            clock=clock,
        )

        # Execute
        audit.log_activity("CODE_CREATED", data={"code_id": "CODE_ABC"})
        audit.flush()

        # Verify
        raw = (log_dir / "audit_2025-11-05.jsonl").read_text()
        assert "CODE_CREATED" not in raw
        assert "CODE_ABC" not in raw
        entries = list(audit.storage.read_entries(clock().date()))
        assert entries[0].data == {"code_id": "CODE_ABC"}

    def test_encryption_requires_cipher(self, log_dir):
        with pytest.raises(ValueError):
            AuditLogger(AuditConfig(log_dir=log_dir, encrypt_at_rest=True))

    def test_unreadable_lines_skipped(self, audit, log_dir, clock):
        """Test corrupt lines are skipped on read."""
        audit.log_activity("LOGIN")
        audit.flush()
        with open(log_dir / "audit_2025-11-05.jsonl", "a", encoding="utf-8") as f:
            f.write("{corrupt\n")

        entries = list(audit.storage.read_entries(clock().date()))

        assert len(entries) == 1


class TestAggregates:
    """Test per-IP and per-user aggregates."""

    def test_ip_activity(self, audit):
        audit.log_activity("INVALID_CODE", ip_address="198.51.100.1", success=False)
        audit.log_activity("VALID_CODE_USED", ip_address="198.51.100.1", user_id="u1")

        summary = audit.get_ip_activity("198.51.100.1")

        assert summary["total"] == 2
        assert summary["failures"] == 1
        assert summary["failure_ratio"] == 0.5
        assert summary["unique_users"] == 1
        assert audit.get_ip_activity("198.51.100.99") is None

    def test_user_risk_decays_gradually(self, audit):
        """Test user risk falls by at most 5 per event."""
        # Setup
        for _ in range(5):
            audit.log_activity("LOGIN_FAILED", user_id="u1", success=False)
        assert audit.get_user_profile("u1")["risk_score"] == 50

        # Execute
        audit.log_activity("LOGIN", user_id="u1")

        # Verify
        assert audit.get_user_profile("u1")["risk_score"] == 45

    def test_user_common_ips(self, audit):
        for ip in ["198.51.100.1", "198.51.100.1", "198.51.100.2"]:
            audit.log_activity("LOGIN", user_id="u1", ip_address=ip)

        profile = audit.get_user_profile("u1")

        assert profile["common_ips"] == ["198.51.100.1", "198.51.100.2"]
        assert profile["peak_hours"] == [12]


class TestAnomalies:
    """Test anomaly detection and cooldown."""

    def test_high_failure_rate(self, audit):
        """Test repeated failures from one IP raise one HIGH alert."""
        for _ in range(15):
            audit.log_activity("INVALID_CODE", ip_address="198.51.100.1", success=False)

        alerts = audit.get_alerts(alert_type="HIGH_FAILURE_RATE")

        assert len(alerts) == 1
        assert alerts[0].severity == AlertSeverity.HIGH
        assert alerts[0].data["ip_address"] == "198.51.100.1"

    def test_cooldown_expires(self, audit, clock):
        """Test the same anomaly can alert again after the cooldown."""
        for _ in range(11):
            audit.log_activity("INVALID_CODE", ip_address="198.51.100.1", success=False)
        clock.advance(seconds=301)

        audit.log_activity("INVALID_CODE", ip_address="198.51.100.1", success=False)

        assert len(audit.get_alerts(alert_type="HIGH_FAILURE_RATE")) == 2

    def test_high_activity_rate(self, log_dir, clock):
        audit = AuditLogger(
            AuditConfig(log_dir=log_dir, high_activity_total=10, high_activity_recent=5),
            clock=clock,
        )

        for _ in range(15):
            audit.log_activity("VALID_CODE_USED", ip_address="198.51.100.1")

        alerts = audit.get_alerts(alert_type="HIGH_ACTIVITY_RATE")
        assert len(alerts) == 1
        assert alerts[0].severity == AlertSeverity.MEDIUM

    def test_unusual_ip_address(self, audit):
        """Test a user appearing from an IP outside their top three."""
        # Setup
        for ip, count in [("198.51.100.1", 6), ("198.51.100.2", 3), ("198.51.100.3", 3)]:
            for _ in range(count):
                audit.log_activity("LOGIN", user_id="u1", ip_address=ip)
        assert audit.get_alerts(alert_type="UNUSUAL_IP_ADDRESS") == []

        # Execute
        audit.log_activity("LOGIN", user_id="u1", ip_address="198.51.100.9")

        # Verify
        alerts = audit.get_alerts(alert_type="UNUSUAL_IP_ADDRESS")
        assert len(alerts) == 1
        assert alerts[0].data["ip_address"] == "198.51.100.9"


class TestCleanup:
    """Test retention."""

    def test_old_partitions_deleted(self, audit, log_dir):
        """Test partitions past retention are deleted and recent ones kept."""
        # Setup
        audit.log_activity("LOGIN")
        audit.flush()
        old = log_dir / "audit_2025-01-01.jsonl"
        old.write_text("")

        # Execute
        result = audit.cleanup()

        # Verify
        assert result["partitions_deleted"] == 1
        assert not old.exists()
        assert (log_dir / "audit_2025-11-05.jsonl").exists()

    def test_idle_aggregates_evicted(self, audit, clock):
        audit.log_activity("LOGIN", user_id="u1", ip_address="198.51.100.1")
        clock.advance(hours=25)

        result = audit.cleanup()

        assert result["ip_aggregates_evicted"] == 1
        assert result["user_profiles_evicted"] == 1
        assert audit.get_ip_activity("198.51.100.1") is None


class TestReports:
    """Test usage reports and security trends."""

    def test_usage_report(self, audit):
        # Setup
        audit.log_activity("VALID_CODE_USED", user_id="u1", ip_address="198.51.100.1")
        audit.log_activity("VALID_CODE_USED", user_id="u1", ip_address="198.51.100.1")
        audit.log_activity("INVALID_CODE", user_id="u2", ip_address="198.51.100.2", success=False)

        # Execute
        report = audit.generate_usage_report()

        # Verify
        assert report.total_activities == 3
        assert report.successful == 2
        assert report.failed == 1
        assert report.success_rate == 0.6667
        assert report.hourly[12] == 3
        assert report.top_users[0] == {"user_id": "u1", "count": 2}
        assert report.categories == {"AUTH": 3}

    def test_usage_report_window(self, audit, clock):
        """Test entries outside the window are excluded."""
        audit.log_activity("LOGIN")
        clock.advance(hours=25)
        audit.log_activity("LOGIN")

        assert audit.generate_usage_report().total_activities == 1

    def test_security_trends(self, audit):
        """Test the security score and threat alert selection."""
        audit.create_alert("TEST_ALERT", "first", AlertSeverity.MEDIUM)
        audit.create_alert("TEST_ALERT", "second", AlertSeverity.HIGH)

        trends = audit.get_security_trends()

        assert trends.alerts_in_window == 2
        assert len(trends.threat_alerts) == 1
        assert trends.security_score == 90

    def test_suspicious_ips(self, audit):
        for _ in range(11):
            audit.log_activity("INVALID_CODE", ip_address="198.51.100.1", success=False)

        trends = audit.get_security_trends()

        assert trends.suspicious_ips[0]["ip_address"] == "198.51.100.1"

    def test_recent_entries_filters(self, audit):
        audit.log_activity("LOGIN", user_id="u1")
        audit.log_activity("LOGOUT", user_id="u1")
        audit.log_activity("LOGIN", user_id="u2")

        assert [e.user_id for e in audit.get_recent_entries(activity="LOGIN")] == ["u2", "u1"]
        assert [e.activity for e in audit.get_recent_entries(user_id="u1")] == ["LOGOUT", "LOGIN"]

    def test_statistics(self, audit):
        audit.log_activity("LOGIN")
        audit.log_activity("INVALID_CODE", success=False)

        stats = audit.get_statistics()

        assert stats["total_logged"] == 2
        assert stats["by_severity"] == {"INFO": 1, "WARNING": 1}
        assert stats["by_category"] == {"AUTH": 2}
