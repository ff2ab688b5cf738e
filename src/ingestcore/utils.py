"""Small time helpers shared across the pipeline."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from dateutil import parser as dateutil_parser

_PARSE_DEFAULT = datetime(1970, 1, 1)


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _as_aware(value: datetime) -> datetime:
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value


def parse_datetime(value: Any, keep_offset: bool = False) -> Optional[datetime]:
    """
    Parse a loosely formatted date.

    Accepts datetimes, unix timestamps and anything python-dateutil
    understands. Returns None when the value cannot be interpreted. Aware
    results are converted to UTC unless ``keep_offset`` is set; naive ones
    are always read as UTC.
    """
    if value is None or value == "":
        return None
    finish = _as_aware if keep_offset else ensure_utc
    if isinstance(value, datetime):
        return finish(value)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        try:
            return datetime.fromtimestamp(float(value), tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    try:
        # A fixed default keeps partial dates independent of the current day.
        return finish(dateutil_parser.parse(str(value).strip(), default=_PARSE_DEFAULT))
    except (ValueError, OverflowError, TypeError):
        return None


def to_iso(value: Optional[datetime]) -> Optional[str]:
    """Serialize a datetime for storage, UTC with second precision."""
    if value is None:
        return None
    return ensure_utc(value).isoformat(timespec="seconds")


def from_iso(value: Optional[str]) -> Optional[datetime]:
    """Inverse of :func:`to_iso`."""
    if not value:
        return None
    return ensure_utc(datetime.fromisoformat(value))
