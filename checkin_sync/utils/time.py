from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional


UTC = timezone.utc


def utcnow() -> datetime:
    """
    Returns timezone-aware current UTC time.
    """
    return datetime.now(UTC)


def ensure_aware(dt: datetime, assume_utc: bool = True) -> datetime:
    """
    Ensure a datetime is timezone-aware. If naive and assume_utc is True,
    interpret as UTC; otherwise raise ValueError.
    """
    if dt.tzinfo is not None:
        return dt.astimezone(UTC)
    if assume_utc:
        return dt.replace(tzinfo=UTC)
    raise ValueError("Naive datetime provided and assume_utc=False")


def elapsed_seconds(since: datetime, *, now: Optional[datetime] = None) -> int:
    """
    Whole seconds elapsed between `since` and `now`, never negative.
    """
    n = ensure_aware(now or utcnow())
    delta = int((n - ensure_aware(since)).total_seconds())
    return max(0, delta)


def format_countdown(seconds: int) -> str:
    """
    Countdown display like '09:05'. Minutes are not wrapped into hours.
    """
    seconds = max(0, int(seconds))
    minutes, secs = divmod(seconds, 60)
    return f"{minutes:02d}:{secs:02d}"
