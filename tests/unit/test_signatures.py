"""
Unit tests for AttackSignatureDetector.

Tests:
- Each attack family matches its typical payloads
- Legitimate inputs and generated codes never match
- At most one match per family
- Severity, ban duration and threat level lookups
- Matches never carry the matched text

Run tests:
    pytest tests/unit/test_signatures.py -v
"""

import pytest

from codeguard.core.config import CodePolicy
from codeguard.models.rate_limit import ThreatSeverity
from codeguard.modules.codes.generator import CodeGenerator
from codeguard.modules.detection.signatures import AttackSignatureDetector


@pytest.fixture
def detector():
    return AttackSignatureDetector()


def threat_types(matches):
    return {m.threat_type for m in matches}


class TestFamilies:
    """Test each signature family against representative payloads."""

    @pytest.mark.parametrize("payload", [
        "1' OR '1'='1",
        "x UNION SELECT password FROM users",
        "1; DROP TABLE codes",
        "admin' --",
        "1 AND sleep(5)",
    ])
    def test_sql_injection(self, detector, payload):
        """Test SQL injection payloads are detected."""
        assert "sql_injection" in threat_types(detector.scan(payload))

    @pytest.mark.parametrize("payload", [
        "<script>alert(1)</script>",
        "javascript:alert(document.cookie)",
        '<img src=x onerror="alert(1)">',
    ])
    def test_xss(self, detector, payload):
        """Test XSS payloads are detected."""
        assert "xss" in threat_types(detector.scan(payload))

    @pytest.mark.parametrize("payload", [
        "../../etc/passwd",
        "..\\..\\windows\\win.ini",
        "%2e%2e%2fetc%2fpasswd",
    ])
    def test_path_traversal(self, detector, payload):
        """Test raw and URL-encoded traversal sequences are detected."""
        assert "path_traversal" in threat_types(detector.scan(payload))

    @pytest.mark.parametrize("payload", [
        "; rm -rf /",
        "$(whoami)",
        "`id`",
        "| cat /etc/hosts",
    ])
    def test_command_injection(self, detector, payload):
        """Test shell injection payloads are detected."""
        assert "command_injection" in threat_types(detector.scan(payload))

    @pytest.mark.parametrize("payload", ["admin", "root", "admin:admin", "password=123456"])
    def test_brute_force(self, detector, payload):
        """Test default credentials are detected."""
        assert "brute_force" in threat_types(detector.scan(payload))


class TestCleanInput:
    """Test that legitimate inputs do not match."""

    @pytest.mark.parametrize("value", [
        "Hello world",
        "/codes/validate",
        "ORG1",
        "john.doe@example.com",
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0 Safari/537.36",
    ])
    def test_normal_values(self, detector, value):
        """Test ordinary request values are clean."""
        assert detector.scan(value) == []

    def test_empty_and_none(self, detector):
        """Test empty input never matches."""
        assert detector.scan("") == []
        assert detector.scan(None) == []

    def test_generated_codes_never_match(self, detector):
        """Test generated codes are never flagged as attacks."""
        generator = CodeGenerator(CodePolicy())

        for _ in range(300):
            code = generator.generate_code()
            assert detector.scan(code) == [], code


class TestMatching:
    """Test match shape and scoring."""

    def test_one_match_per_family(self, detector):
        """Test several SQL patterns in one value produce one match."""
        # Setup
        payload = "' OR 1=1 -- UNION SELECT secret FROM codes"

        # Execute
        matches = detector.scan(payload)

        # Verify
        assert [m.threat_type for m in matches].count("sql_injection") == 1

    def test_match_records_field(self, detector):
        """Test the field name is recorded on the match."""
        matches = detector.scan("<script>", field="user_agent")

        assert matches[0].field == "user_agent"

    def test_match_never_contains_payload(self, detector):
        """Test the matched text is not stored on the match."""
        payload = "1' OR '1'='1"

        matches = detector.scan(payload)

        assert matches
        assert payload not in matches[0].model_dump_json()

    def test_confidence(self, detector):
        """Test base confidence plus family boost."""
        matches = detector.scan("1; DROP TABLE codes")
        sql = next(m for m in matches if m.threat_type == "sql_injection")

        assert sql.confidence == 80

    def test_confidence_raised_for_long_input(self, detector):
        """Test long inputs raise confidence."""
        payload = "UNION SELECT x FROM y " + "a" * 1200

        matches = detector.scan(payload)

        assert matches[0].confidence == 90

    def test_scan_fields_serializes_structures(self, detector):
        """Test dict bodies are serialized and scanned."""
        # Execute
        matches = detector.scan_fields({
            "path": "/codes/validate",
            "body": {"query": "<script>alert(1)</script>"},
            "headers": None,
        })

        # Verify
        assert len(matches) == 1
        assert matches[0].threat_type == "xss"
        assert matches[0].field == "body"


class TestSeverity:
    """Test severity and ban lookups."""

    @pytest.mark.parametrize("payload,level", [
        ("1' OR '1'='1", ThreatSeverity.CRITICAL),
        ("<script>alert(1)</script>", ThreatSeverity.HIGH),
        ("../../etc/passwd", ThreatSeverity.HIGH),
        ("$(whoami)", ThreatSeverity.CRITICAL),
        ("admin", ThreatSeverity.HIGH),
    ])
    def test_threat_level(self, detector, payload, level):
        """Test the highest family score determines the level."""
        assert detector.threat_level(detector.scan(payload)) == level

    def test_ban_seconds(self, detector):
        """Test per-family ban durations and the default."""
        assert detector.ban_seconds("brute_force") == 86400
        assert detector.ban_seconds("sql_injection") == 3600
        assert detector.ban_seconds("unknown") == 900

    def test_threat_score_empty(self, detector):
        """Test no matches score zero."""
        assert detector.threat_score([]) == 0
