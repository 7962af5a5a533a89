"""Time and timeframe utilities."""
from datetime import datetime, timedelta, timezone
from typing import Optional

from topicbot.core.logging import get_logger

logger = get_logger(__name__)

TIMEFRAMES = {
    "24h": timedelta(hours=24),
    "7d": timedelta(days=7),
    "30d": timedelta(days=30),
}
DEFAULT_TIMEFRAME = "24h"


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Normalize a datetime to aware UTC.

    Naive datetimes are assumed to already be in UTC (SQLite drops tzinfo).
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_timeframe(timeframe: Optional[str], now: Optional[datetime] = None) -> datetime:
    """
    Convert a timeframe label into the earliest publication time it covers.

    Supported labels are "24h", "7d" and "30d". Unknown labels fall back to 24h.
    """
    now = ensure_utc(now) or utcnow()
    window = TIMEFRAMES.get((timeframe or "").strip().lower())
    if window is None:
        logger.warning(f"Unknown timeframe {timeframe!r}, using {DEFAULT_TIMEFRAME}")
        window = TIMEFRAMES[DEFAULT_TIMEFRAME]
    return now - window


def hours_between(earlier: datetime, later: datetime) -> float:
    """Hours from ``earlier`` to ``later``, never negative."""
    delta = ensure_utc(later) - ensure_utc(earlier)
    return max(0.0, delta.total_seconds() / 3600)
