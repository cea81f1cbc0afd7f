"""
Timestamp helpers.

Everything persisted by the discovery pipeline is stored as naive UTC so that
SQLite (which drops tzinfo) and PostgreSQL compare the same way.
"""
from datetime import datetime, timezone
from typing import Optional, Union


def utc_now() -> datetime:
    """Current time as a naive UTC datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def parse_timestamp(value: Union[str, datetime, None]) -> Optional[datetime]:
    """
    Parse an ISO-8601 timestamp (GitHub and PulseMCP style) into naive UTC.

    Examples:
        >>> parse_timestamp("2024-03-01T12:00:00Z")
        datetime.datetime(2024, 3, 1, 12, 0)

    Returns None for empty or unparseable input.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def age_in_days(value: Union[str, datetime, None], now: Optional[datetime] = None) -> float:
    """
    Days elapsed since the given timestamp.

    A missing timestamp is treated as the Unix epoch, i.e. very old.
    """
    now = now or utc_now()
    parsed = parse_timestamp(value) or datetime(1970, 1, 1)
    return (now - parsed).total_seconds() / 86400


def to_iso(value: Optional[datetime]) -> Optional[str]:
    """Serialize a naive UTC datetime with a trailing Z."""
    if value is None:
        return None
    return value.isoformat() + "Z"
