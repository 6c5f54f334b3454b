from datetime import datetime, timezone, timedelta
from typing import Optional

# Fixed width so that string order in SQL matches time order.
ISO_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(dt: datetime) -> str:
    """UTC timestamp like '2025-11-06T09:12:34.123456Z'. Naive datetimes are taken as UTC."""
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc)
    return dt.strftime(ISO_FORMAT)


def now_iso(now: Optional[datetime] = None) -> str:
    return to_iso(now or utcnow())


def iso_seconds_from(now: Optional[datetime], seconds: float) -> str:
    """Return the UTC ISO time `seconds` after `now`."""
    return to_iso((now or utcnow()) + timedelta(seconds=seconds))
