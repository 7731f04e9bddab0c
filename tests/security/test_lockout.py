"""
CRITICAL SECURITY TEST: Brute Force Lockout

Tests that repeated wrong codes from one source lock it out with
exponential backoff and that repeated lockouts become a permanent ban.

Security Requirements:
- 5 consecutive failures start a 30s lockout
- Each further lockout doubles the delay
- The 3rd consecutive lockout permanently bans the IP
- A locked-out caller cannot validate even a correct code
- Success resets the consecutive failure count

Run before every commit:
    pytest tests/security/test_lockout.py -v
"""

WRONG_CODE = "Wrong-Code-1234!"


def fail_times(context, client_context, count):
    return [context.codes.validate_code(WRONG_CODE, "ORG1", client_context()) for _ in range(count)]


class TestLockout:
    """Test lockout and backoff."""

    def test_fifth_failure_locks_out(self, context, client_context):
        """Test the 5th wrong code starts a 30 second lockout."""
        # Execute
        results = fail_times(context, client_context, 5)

        # Verify
        assert [r.error for r in results[:4]] == ["CODE_NOT_FOUND"] * 4
        assert results[4].error == "LOCKED_OUT"
        assert results[4].retry_after == 30
        assert results[4].risk_score == 70

    def test_locked_out_correct_code_refused(self, context, clock, client_context):
        """Test a correct code is refused during the lockout and accepted after."""
        # Setup
        issued = context.codes.issue_code("ORG1", "standard")
        fail_times(context, client_context, 5)

        # Execute
        during = context.codes.validate_code(issued.raw_code, "ORG1", client_context())
        clock.advance(seconds=31)
        after = context.codes.validate_code(issued.raw_code, "ORG1", client_context())

        # Verify
        assert during.error == "LOCKED_OUT"
        assert 0 < during.retry_after <= 30
        assert after.is_valid

    def test_other_ip_unaffected(self, context, client_context):
        issued = context.codes.issue_code("ORG1", "standard")
        fail_times(context, client_context, 5)

        result = context.codes.validate_code(issued.raw_code, "ORG1", client_context("198.51.100.50"))

        assert result.is_valid

    def test_backoff_doubles(self, context, clock, client_context):
        """Test the second lockout lasts 60 seconds."""
        fail_times(context, client_context, 5)
        clock.advance(seconds=31)

        results = fail_times(context, client_context, 5)

        assert results[4].error == "LOCKED_OUT"
        assert results[4].retry_after == 60

    def test_success_resets_failures(self, context, client_context):
        """Test a correct code in between keeps the caller under the threshold."""
        issued = context.codes.issue_code("ORG1", "standard")

        fail_times(context, client_context, 4)
        context.codes.validate_code(issued.raw_code, "ORG1", client_context())
        results = fail_times(context, client_context, 4)

        assert all(r.error == "CODE_NOT_FOUND" for r in results)

    def test_lockout_audited(self, context, client_context):
        fail_times(context, client_context, 5)

        assert len(context.audit.get_recent_entries(activity="INVALID_CODE")) == 5
        denial = context.audit.get_recent_entries(activity="RATE_LIMIT_EXCEEDED")[0]
        assert denial.data["error"] == "LOCKED_OUT"
        assert denial.data["retry_after"] == 30


class TestPermanentBan:
    """Test escalation to a permanent IP ban."""

    def test_third_lockout_bans_permanently(self, context, clock, client_context):
        # Setup: two lockouts, each waited out
        fail_times(context, client_context, 5)
        clock.advance(seconds=31)
        fail_times(context, client_context, 5)
        clock.advance(seconds=61)

        # Execute
        third = fail_times(context, client_context, 5)
        clock.advance(days=30)
        later = context.codes.validate_code(WRONG_CODE, "ORG1", client_context())

        # Verify
        assert third[4].error == "LOCKED_OUT"
        assert later.error == "BLOCKED"
        assert later.retry_after is None
        assert context.rate_limiter.is_blocked(ip="203.0.113.7")
        assert context.audit.get_alerts(alert_type="IP_PERMANENTLY_BLOCKED")

    def test_manual_unblock(self, context, clock, client_context):
        """Test an admin unblock lifts the permanent ban."""
        issued = context.codes.issue_code("ORG1", "standard")
        for _ in range(3):
            fail_times(context, client_context, 5)
            clock.advance(seconds=200)

        context.rate_limiter.unblock_ip("203.0.113.7")

        assert context.codes.validate_code(issued.raw_code, "ORG1", client_context()).is_valid
