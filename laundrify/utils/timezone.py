"""
UTC helpers.
All persisted timestamps are UTC. SQLite hands DateTime(timezone=True) columns
back naive, so comparisons go through ensure_utc().
"""
from datetime import datetime, timezone
from typing import Optional


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes; convert aware ones to UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
