"""
Timezone utilities for MediaCanon.
Provides consistent UTC datetime handling for freshness markers and cooldowns.
"""
from datetime import datetime, timedelta, timezone
from typing import Optional


def utc_now() -> datetime:
    """
    Get current UTC datetime with timezone info.
    Replacement for deprecated datetime.utcnow().
    """
    return datetime.now(timezone.utc)


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Ensure a datetime is UTC and timezone-aware.
    If timezone-naive, assumes it's already UTC and adds UTC timezone
    (SQLite hands timestamps back without tzinfo).
    """
    if dt is None:
        return None

    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def within_cooldown(last_checked: Optional[datetime], cooldown: timedelta, now: Optional[datetime] = None) -> bool:
    """True if `last_checked` is set and less than `cooldown` ago."""
    last = ensure_utc(last_checked)
    if last is None:
        return False
    now = ensure_utc(now) if now is not None else utc_now()
    return now - last < cooldown


def format_iso_utc(dt: Optional[datetime]) -> Optional[str]:
    """Format datetime as ISO string in UTC."""
    if dt is None:
        return None
    return ensure_utc(dt).isoformat()
