"""
Time utilities for cooldowns, deadlines and proposed match times.

All ladder timestamps are timezone-aware UTC. Parsing accepts the formats
players type into the Discord commands.
"""

import re
from datetime import datetime, timedelta, timezone
from typing import Optional


_RELATIVE_PATTERN = re.compile(r'^\+(\d+)\s*([mhd])$', re.IGNORECASE)
_ABSOLUTE_FORMATS = ('%Y-%m-%d %H:%M', '%Y-%m-%dT%H:%M', '%Y-%m-%d')


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes and convert aware ones to UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_when(when_str: str, now: Optional[datetime] = None) -> datetime:
    """
    Parse a proposed match time.

    Supported formats:
    - +Nm / +Nh / +Nd relative to now (e.g., +3h, +2d)
    - YYYY-MM-DD HH:MM (UTC)
    - YYYY-MM-DD (UTC midnight)

    Raises:
        ValueError: If the format is invalid or the time is in the past
    """
    now = now or utcnow()
    when_str = when_str.strip()

    match = _RELATIVE_PATTERN.match(when_str)
    if match:
        amount = int(match.group(1))
        unit = match.group(2).lower()
        delta = {
            'm': timedelta(minutes=amount),
            'h': timedelta(hours=amount),
            'd': timedelta(days=amount),
        }[unit]
        return now + delta

    for fmt in _ABSOLUTE_FORMATS:
        try:
            parsed = datetime.strptime(when_str.upper(), fmt)
        except ValueError:
            continue
        parsed = parsed.replace(tzinfo=timezone.utc)
        if parsed < now:
            raise ValueError(f"Proposed time {when_str} is in the past")
        return parsed

    raise ValueError(f"Invalid time format: {when_str}. Use +3h, +2d or YYYY-MM-DD HH:MM")


def format_duration(delta: timedelta) -> str:
    """
    Format a duration for display (e.g., "14h 5m", "2d 3h", "45m").

    Durations under a minute render as "<1m"; negative durations as "0m".
    """
    total_seconds = int(delta.total_seconds())
    if total_seconds <= 0:
        return "0m"
    if total_seconds < 60:
        return "<1m"

    days, remainder = divmod(total_seconds, 86400)
    hours, remainder = divmod(remainder, 3600)
    minutes = remainder // 60

    if days > 0:
        return f"{days}d {hours}h" if hours else f"{days}d"
    if hours > 0:
        return f"{hours}h {minutes}m" if minutes else f"{hours}h"
    return f"{minutes}m"
