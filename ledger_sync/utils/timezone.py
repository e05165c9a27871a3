"""
Timezone utilities for provider timestamps.

All times are stored as naive UTC datetimes.

Providers disagree on how they send time:
- epoch seconds (oroplay), sometimes milliseconds
- ISO 8601 with a real offset (honorapi, familyapi)
- ISO 8601 whose offset is WRONG: invest labels its UTC wall clock with
  ``+09:00``. That suffix has to be dropped, not applied.
  See ``strip_mislabeled_offset``.
"""
import re
from datetime import datetime, timezone, timedelta
from typing import Optional, Union

# Trailing "Z", "+09:00", "+0900" or "+09"
_OFFSET_SUFFIX = re.compile(r"(?:[zZ]|[+-]\d{2}(?::?\d{2})?)$")

# Anything above this is treated as epoch milliseconds (year 2286 in seconds)
_EPOCH_MS_THRESHOLD = 10_000_000_000

PROVIDER_DATETIME_FORMAT = "%Y-%m-%d %H:%M:%S"


def utc_now() -> datetime:
    """Current time as a naive UTC datetime (the storage convention)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    """Convert an aware datetime to naive UTC; naive input is assumed UTC already."""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _parse_iso(text: str) -> Optional[datetime]:
    normalized = text.strip().replace(" ", "T", 1)
    if normalized.endswith(("Z", "z")):
        normalized = normalized[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(normalized)
    except ValueError:
        return None


def strip_mislabeled_offset(value: str) -> Optional[datetime]:
    """
    Read a timestamp whose offset suffix is known to be wrong.

    The wall clock is kept as-is and interpreted as UTC:

        >>> strip_mislabeled_offset("2025-10-20T05:30:00+09:00")
        datetime.datetime(2025, 10, 20, 5, 30)

    Only invest uses this today. Re-check against the provider before
    applying it anywhere else.
    """
    if not value:
        return None
    text = value.strip()
    # Only the time part can carry an offset ("2025-10-20" ends in "-20")
    for separator in ("T", " "):
        if separator in text:
            date_part, time_part = text.split(separator, 1)
            text = f"{date_part}T{_OFFSET_SUFFIX.sub('', time_part.strip())}"
            break
    parsed = _parse_iso(text)
    if parsed is None:
        return None
    return parsed.replace(tzinfo=None)


def parse_provider_timestamp(value: Union[str, int, float, datetime, None]) -> Optional[datetime]:
    """
    Parse a provider timestamp into naive UTC.

    Numbers are epoch seconds (or milliseconds when implausibly large).
    Strings honor their offset; strings without one are taken as UTC.
    Returns None when the value cannot be parsed.
    """
    if value is None or value == "":
        return None

    if isinstance(value, datetime):
        return to_naive_utc(value)

    if isinstance(value, bool):
        return None

    if isinstance(value, (int, float)):
        seconds = value / 1000 if value > _EPOCH_MS_THRESHOLD else value
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc).replace(tzinfo=None)
        except (OverflowError, OSError, ValueError):
            return None

    text = str(value).strip()
    if text.isdigit():
        return parse_provider_timestamp(int(text))

    parsed = _parse_iso(text)
    if parsed is None:
        return None
    return to_naive_utc(parsed)


def format_utc(value: datetime, fmt: str = PROVIDER_DATETIME_FORMAT) -> str:
    """Format a datetime as UTC text for provider query parameters."""
    return to_naive_utc(value).strftime(fmt)


def lookback_start(now: datetime, minutes: int) -> datetime:
    """Start of a history window ``minutes`` before ``now``."""
    return now - timedelta(minutes=minutes)
