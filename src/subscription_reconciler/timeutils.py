import datetime
from typing import Any, Optional


def utc_now() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def as_utc(value: Optional[datetime.datetime]) -> Optional[datetime.datetime]:
    """
    Normalize a datetime to an aware UTC value.

    SQLite hands back naive datetimes; those are stored as UTC, so they are
    tagged rather than converted.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=datetime.timezone.utc)
    return value.astimezone(datetime.timezone.utc)


def parse_timestamp(raw: Any) -> Optional[datetime.datetime]:
    """
    Parse an ISO-8601 string or a millisecond epoch into an aware UTC datetime.

    :param raw: Value from the webhook payload; None and blanks yield None.
    :return: The parsed datetime, or None when the value is absent.
    :raises ValueError: if the value is present but cannot be parsed.
    """
    if raw is None:
        return None
    if isinstance(raw, bool):
        raise ValueError(f"Invalid timestamp: {raw!r}")
    if isinstance(raw, (int, float)):
        return datetime.datetime.fromtimestamp(raw / 1000.0, tz=datetime.timezone.utc)
    value = str(raw).strip()
    if not value:
        return None
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    return as_utc(datetime.datetime.fromisoformat(value))
