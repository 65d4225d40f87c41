"""Timestamp utilities for plrsync.

All timestamps that cross the wire or land in storage use one canonical,
fixed-width UTC form (``YYYY-MM-DDTHH:MM:SS.ffffffZ``) so that string order
matches time order.
"""

from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone
from typing import Optional, Union

# strftime("%Y") does not zero-pad years below 1000 on every platform
CANONICAL_FORMAT = "{year:04d}-%m-%dT%H:%M:%S.%fZ"

EPOCH = "1970-01-01T00:00:00.000000Z"


def utc_now() -> datetime:
    """Get the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def parse_timestamp(value: Union[str, datetime]) -> datetime:
    """Parse an ISO 8601 timestamp into an aware UTC datetime.

    Accepts a trailing ``Z``, an explicit offset, or no offset at all
    (treated as UTC).

    Args:
        value: ISO 8601 string or datetime

    Returns:
        Timezone-aware datetime in UTC

    Raises:
        ValueError: If the value is not a parseable timestamp
    """
    if isinstance(value, datetime):
        dt = value
    else:
        if not isinstance(value, str) or not value.strip():
            raise ValueError(f"Invalid timestamp: {value!r}")
        text = value.strip()
        if text.endswith("Z") or text.endswith("z"):
            text = text[:-1] + "+00:00"
        # fromisoformat before 3.11 only takes 0, 3 or 6 fractional digits
        if "." in text:
            head, _, rest = text.partition(".")
            digits = ""
            while rest and rest[0].isdigit():
                digits += rest[0]
                rest = rest[1:]
            text = f"{head}.{(digits + '000000')[:6]}{rest}"
        dt = datetime.fromisoformat(text)

    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    try:
        return dt.astimezone(timezone.utc)
    except OverflowError as e:
        raise ValueError(f"Timestamp out of range: {value!r}") from e


def format_timestamp(dt: datetime) -> str:
    """Format a datetime in the canonical UTC form."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    dt = dt.astimezone(timezone.utc)
    return dt.strftime(CANONICAL_FORMAT.format(year=dt.year))


def normalize_timestamp(value: Union[str, datetime]) -> str:
    """Parse any accepted timestamp and return its canonical string."""
    return format_timestamp(parse_timestamp(value))


def now_timestamp() -> str:
    """Get the current time as a canonical timestamp string."""
    return format_timestamp(utc_now())


class MonotonicClock:
    """Issues strictly increasing canonical timestamps.

    Server-assigned ``updatedAt`` values must never repeat or go backwards,
    even when the wall clock stalls or is stepped back, otherwise two writes
    could become indistinguishable to the change feed.
    """

    def __init__(self) -> None:
        self._last: Optional[datetime] = None
        self._lock = threading.Lock()

    def now(self) -> str:
        """Get the next timestamp, strictly after any previously returned."""
        with self._lock:
            current = utc_now()
            if self._last is not None and current <= self._last:
                current = self._last + timedelta(microseconds=1)
            self._last = current
            return format_timestamp(current)
