"""
Timestamp helpers shared by both sync directions.

Watermarks are always derived from data: the highest mutation timestamp seen
in a fetched batch, normalized to aware UTC.
"""

from collections.abc import Iterable
from datetime import date, datetime, time, timezone
from typing import Any


def as_utc(value: Any) -> datetime | None:
    """
    Normalize a timestamp value to an aware UTC datetime.

    Naive values are taken to be UTC, matching the session timezone the
    store pools pin. Dates are widened to midnight.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    if isinstance(value, date):
        return datetime.combine(value, time.min, tzinfo=timezone.utc)
    return None


def max_timestamp(rows: Iterable[dict[str, Any]], columns: Iterable[str]) -> datetime | None:
    """
    Highest value of the given timestamp columns across rows.

    Args:
        rows: Fetched rows (before any transformation)
        columns: Timestamp columns present on the source table

    Returns:
        The maximum as aware UTC, or None when no row has a timestamp
    """
    columns = list(columns)
    latest: datetime | None = None
    for row in rows:
        for column in columns:
            value = as_utc(row.get(column))
            if value is not None and (latest is None or value > latest):
                latest = value
    return latest
