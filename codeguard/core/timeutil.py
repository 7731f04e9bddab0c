"""Clock helpers. Components take a `Clock` so tests can control time."""

from datetime import datetime, timezone
from typing import Callable

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def is_off_hours(moment: datetime, start: int, end: int) -> bool:
    """True when the hour falls in [start, 24) or [0, end)."""
    return moment.hour >= start or moment.hour < end
