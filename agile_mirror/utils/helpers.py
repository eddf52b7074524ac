"""
Helper Utilities Module
Common utility functions used across the engine.
"""

from datetime import datetime, timedelta
from statistics import median
from typing import Any, Dict, Iterable, List, Optional

from dateutil import parser as date_parser
import pytz


def utcnow() -> datetime:
    """Current time as naive UTC, the form every stored timestamp uses."""
    return datetime.now(pytz.UTC).replace(tzinfo=None)


def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """
    Normalize a datetime to naive UTC.

    Naive input is assumed to already be UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value
    return value.astimezone(pytz.UTC).replace(tzinfo=None)


def parse_jira_datetime(dt_string: Optional[str]) -> Optional[datetime]:
    """
    Parse Jira datetime string to naive UTC datetime.

    Args:
        dt_string: Jira datetime string (ISO 8601 format)

    Returns:
        datetime object or None if parsing fails
    """
    if not dt_string:
        return None

    try:
        return to_naive_utc(date_parser.parse(dt_string))
    except (ValueError, TypeError, OverflowError):
        return None


def safe_get(data: Dict, *keys, default=None) -> Any:
    """
    Safely get nested dictionary value.

    Args:
        data: Dictionary to traverse
        *keys: Keys to follow
        default: Default value if key not found

    Returns:
        Value at path or default
    """
    result = data
    for key in keys:
        if isinstance(result, dict):
            result = result.get(key)
        else:
            return default
        if result is None:
            return default
    return result


def sanitize_string(text: Optional[str], max_length: int = None) -> Optional[str]:
    """
    Sanitize string for database storage.

    Args:
        text: Text to sanitize
        max_length: Maximum length (truncate if exceeded)

    Returns:
        Sanitized string
    """
    if text is None:
        return None

    text = str(text).replace('\x00', '')

    if max_length and len(text) > max_length:
        text = text[:max_length - 3] + '...'

    return text


def parse_float(value: Any) -> Optional[float]:
    """Parse a numeric field value, returning None for blanks and garbage."""
    if value is None or value == '':
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def split_id_list(value: Optional[str]) -> List[str]:
    """Split a comma separated changelog value ('12, 15') into stripped parts."""
    if not value:
        return []
    return [part.strip() for part in str(value).split(',') if part.strip()]


def duration_days(start: Optional[datetime], end: Optional[datetime]) -> Optional[float]:
    """
    Calculate duration in days between two datetimes.

    Args:
        start: Start datetime
        end: End datetime

    Returns:
        Duration in days, or None when either bound is missing
    """
    if not start or not end:
        return None
    return (end - start).total_seconds() / 86400


def round_metric(value: Optional[float], digits: int = 2) -> Optional[float]:
    """Round a metric value; None stays None."""
    if value is None:
        return None
    return round(float(value), digits)


def mean_or_none(values: Iterable[float]) -> Optional[float]:
    """Arithmetic mean, or None for an empty input."""
    values = list(values)
    if not values:
        return None
    return sum(values) / len(values)


def median_or_none(values: Iterable[float]) -> Optional[float]:
    """Median, or None for an empty input."""
    values = list(values)
    if not values:
        return None
    return median(values)


def window_for(anchor: datetime, now: datetime, period: timedelta) -> tuple:
    """
    Find the fixed-length period containing now, aligned to anchor.

    Args:
        anchor: Start of any period in the series
        now: Point in time to locate
        period: Length of each period

    Returns:
        Tuple of (period_start, period_end)
    """
    offset = (now - anchor) // period
    start = anchor + offset * period
    return start, start + period
