# checkgate/internal/utils/clock.py

"""
Time source used by the scheduler, retention and aggregation.
Tests substitute a clock that advances without sleeping.
"""

import asyncio
import time
from datetime import UTC, datetime


class Clock:
    def now(self) -> datetime:
        """Current wall-clock time, timezone-aware UTC"""
        raise NotImplementedError

    def monotonic(self) -> float:
        raise NotImplementedError

    async def sleep(self, seconds: float) -> None:
        raise NotImplementedError


class SystemClock(Clock):
    def now(self) -> datetime:
        return datetime.now(UTC)

    def monotonic(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(max(0.0, seconds))


def to_utc(value: datetime) -> datetime:
    """Naive datetimes are taken to be UTC already."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def truncate_to_millis(value: datetime) -> datetime:
    value = to_utc(value)
    return value.replace(microsecond=value.microsecond // 1000 * 1000)


def to_millis(value: datetime) -> int:
    """Integer milliseconds since the epoch"""
    value = to_utc(value)
    epoch = datetime(1970, 1, 1, tzinfo=UTC)
    delta = value - epoch
    return (delta.days * 86_400 + delta.seconds) * 1000 + delta.microseconds // 1000
