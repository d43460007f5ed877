"""Time helpers. All timestamps inside the engine are timezone-aware UTC."""

from datetime import date, datetime, time, timezone
from typing import Any, Optional


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_iso(dt: Optional[datetime]) -> Optional[str]:
    """Render as RFC 3339 UTC ("2024-01-01T00:00:00Z")."""
    if dt is None:
        return None
    return ensure_utc(dt).isoformat().replace("+00:00", "Z")


def from_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return ensure_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))


def to_epoch(dt: datetime) -> int:
    """Seconds since the Unix epoch (the ledger stores seconds, not millis)."""
    return int(ensure_utc(dt).timestamp())


def parse_date(value: Any) -> datetime:
    """
    Parse a user supplied date.

    Accepts datetime, date, epoch seconds, or an ISO 8601 string
    (date-only strings are taken as midnight UTC).

    Raises:
        ValueError: if the value cannot be interpreted as a date
    """
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, date):
        return datetime.combine(value, time.min, tzinfo=timezone.utc)
    if isinstance(value, bool):
        raise ValueError(f"Not a date: {value!r}")
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    if isinstance(value, str) and value.strip():
        s = value.strip()
        if len(s) == 10:
            return datetime.combine(date.fromisoformat(s), time.min, tzinfo=timezone.utc)
        return from_iso(s)
    raise ValueError(f"Not a date: {value!r}")
