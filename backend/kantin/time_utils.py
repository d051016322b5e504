from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional

# Midtrans reports local times (Asia/Jakarta) without an offset
GATEWAY_UTC_OFFSET = timezone(timedelta(hours=7))


def utcnow() -> datetime:
    """Server-side 'now' in UTC (naive, canonical)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def parse_iso_datetime(value: Optional[str], *, default_tz: timezone = timezone.utc) -> Optional[datetime]:
    """
    Parse an ISO-8601 datetime string and normalize to UTC-naive datetime.

    - None / "" -> None
    - naive values are interpreted in default_tz (UTC unless told otherwise)
    - "...Z" or "...+/-HH:MM" is converted to UTC and tzinfo is stripped
    """
    if value is None:
        return None
    s = value.strip()
    if not s:
        return None

    if s.endswith("Z"):
        s = s[:-1] + "+00:00"

    dt = datetime.fromisoformat(s)

    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=default_tz)

    return dt.astimezone(timezone.utc).replace(tzinfo=None)


def parse_gateway_datetime(value: Optional[str]) -> Optional[datetime]:
    """
    Parse a gateway timestamp such as '2024-05-01 13:05:00' (UTC+7) to UTC-naive.

    Raises ValueError for anything that is not a parseable string.
    """
    if value is not None and not isinstance(value, str):
        raise ValueError(f"Expected a timestamp string, got {type(value).__name__}")
    return parse_iso_datetime(value, default_tz=GATEWAY_UTC_OFFSET)


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
