"""
Shared fixtures.

Time is controlled through FakeClock, pinned to a Wednesday at 12:00 UTC
so off-hours and weekend factors stay out of scores unless a test moves
the clock there on purpose.
"""

from datetime import datetime, timedelta, timezone

import pytest
from cryptography.fernet import Fernet

from codeguard.context import SecurityContext
from codeguard.core.config import Settings
from codeguard.models.access_code import ValidationContext

WEDNESDAY_NOON = datetime(2025, 11, 5, 12, 0, 0, tzinfo=timezone.utc)

CHROME_UA = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = WEDNESDAY_NOON):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now

    def set(self, moment: datetime):
        self.now = moment


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings(tmp_path):
    """Test settings: fixed keys, cheap hashing, audit under tmp_path, no scheduler."""
    return Settings(
        _env_file=None,
        ENVIRONMENT="test",
        SECRET_KEY="test-secret-key-for-signatures",
        ENCRYPTION_KEY=Fernet.generate_key().decode(),
        HASH_ITERATIONS=1000,
        REDIS_URL=None,
        SENTRY_DSN=None,
        AUDIT_LOG_DIR=str(tmp_path / "audit"),
        SCHEDULER_ENABLED=False,
    )


@pytest.fixture
def context(settings, clock):
    """Isolated SecurityContext (not started)."""
    return SecurityContext.create(settings, clock=clock)


@pytest.fixture
def client_context():
    """Factory for a browser-like ValidationContext."""
    def _make(ip_address: str = "203.0.113.7", **kwargs) -> ValidationContext:
        kwargs.setdefault("user_agent", CHROME_UA)
        return ValidationContext(ip_address=ip_address, **kwargs)
    return _make
