from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional


def utcnow() -> datetime:
    """Server-side 'now' in UTC (naive, canonical)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def expires_in(ttl: timedelta) -> datetime:
    """Absolute expiry for a record created now."""
    return utcnow() + ttl


def is_expired(expires_at: Optional[datetime], now: Optional[datetime] = None) -> bool:
    """
    True when expires_at is missing or not strictly in the future.

    Aware datetimes are normalized to UTC-naive before comparing.
    """
    if expires_at is None:
        return True
    if expires_at.tzinfo is not None:
        expires_at = expires_at.astimezone(timezone.utc).replace(tzinfo=None)
    return expires_at <= (now or utcnow())


def to_utc_z(dt: Optional[datetime]) -> Optional[str]:
    """
    Serializes datetime to ISO-8601 with trailing 'Z'.
    If dt is naive, it is treated as UTC.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    dt_utc = dt.astimezone(timezone.utc).replace(microsecond=0)
    return dt_utc.isoformat().replace("+00:00", "Z")
