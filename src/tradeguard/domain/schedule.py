from __future__ import annotations

from datetime import UTC, datetime, timedelta

ROLLING_DAY_SECONDS = 24 * 60 * 60


def should_reset_rolling_window(
    last_reset_time: float, now: float, window_seconds: float = ROLLING_DAY_SECONDS
) -> bool:
    return now - last_reset_time > window_seconds


def next_daily_boundary(now: datetime) -> datetime:
    """Return the first UTC midnight strictly after ``now``."""

    if now.tzinfo is None:
        now = now.replace(tzinfo=UTC)
    current_day = now.astimezone(UTC).replace(hour=0, minute=0, second=0, microsecond=0)
    return current_day + timedelta(days=1)


def should_reset_daily(next_reset_at: datetime, now: datetime) -> bool:
    if now.tzinfo is None:
        now = now.replace(tzinfo=UTC)
    return now >= next_reset_at
