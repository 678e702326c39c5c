"""UTC-everywhere time handling and the clock seam used by the identity core."""

from datetime import datetime, timezone
from typing import Protocol


def now_utc() -> datetime:
    """
    Current time in UTC.

    Use this instead of datetime.now() everywhere.
    """
    return datetime.now(timezone.utc)


def to_utc(dt: datetime) -> datetime:
    """
    Convert a datetime to UTC.

    Raises ValueError if datetime is naive (no timezone).
    """
    if dt.tzinfo is None:
        raise ValueError(
            "Cannot convert naive datetime to UTC. Datetime must be timezone-aware."
        )
    return dt.astimezone(timezone.utc)


def parse_iso(iso_string: str) -> datetime:
    """
    Parse ISO 8601 datetime string to UTC datetime.

    Raises ValueError if string has no timezone info.
    """
    dt = datetime.fromisoformat(iso_string)
    if dt.tzinfo is None:
        raise ValueError(
            "Cannot parse naive datetime string. "
            "Include timezone offset (e.g., 'Z' or '+00:00')."
        )
    return to_utc(dt)


class Clock(Protocol):
    """Source of the current UTC time.

    Services take a Clock instead of calling now_utc() directly so expiry,
    cooldown and lockout windows can be tested deterministically.
    """

    def now(self) -> datetime:
        ...


class SystemClock:
    """Wall-clock implementation backed by now_utc()."""

    def now(self) -> datetime:
        return now_utc()
