"""Time helpers shared by the stores and the token codec."""

from collections.abc import Callable
from datetime import UTC, datetime

# Injected into every time-dependent component so tests can drive time directly
Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Timezone-aware UTC now."""
    return datetime.now(UTC)


def ensure_utc(value: datetime) -> datetime:
    """Label naive datetimes (e.g. read back from SQLite) as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)
