from datetime import datetime, timedelta, timezone
from typing import Callable

# Anything that returns the current instant as an aware datetime.
Clock = Callable[[], datetime]

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_millis(moment: datetime) -> int:
    """Milliseconds since the Unix epoch, truncated."""
    return (moment - EPOCH) // timedelta(milliseconds=1)


def duration_millis(duration: timedelta) -> int:
    return duration // timedelta(milliseconds=1)
