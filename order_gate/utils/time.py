from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable, Optional

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """Server-side 'now', timezone-aware UTC."""
    return datetime.now(timezone.utc)


def as_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Normalize a datetime read back from the store to aware UTC.
    SQLite drops tzinfo, so naive values are interpreted as UTC.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_utc_z(dt: Optional[datetime]) -> Optional[str]:
    """ISO-8601 with trailing 'Z'; naive input is treated as UTC."""
    if dt is None:
        return None
    dt_utc = as_utc(dt).replace(microsecond=0)
    return dt_utc.isoformat().replace("+00:00", "Z")
