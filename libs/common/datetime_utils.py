"""Timezone-aware UTC timestamps.

Columns are declared ``DateTime(timezone=True)`` with ``default=utc_now``.
Some backends hand timestamps back without tzinfo; ``as_utc`` normalises
those before they are compared or serialised.
"""

from datetime import datetime, timezone
from typing import Optional


def utc_now() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes as UTC; convert aware ones to UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
