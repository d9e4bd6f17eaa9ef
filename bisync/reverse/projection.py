"""
Projection of cloud rows onto the origin schema.

The origin tables are older and narrower than their cloud counterparts:
bookkeeping columns do not exist there, some time-of-day columns are full
timestamps, and text columns have tighter length limits.
"""

from datetime import date, datetime, time
from typing import Any

from bisync.core.models import CombineDateTime, ReverseRule, Truncate
from bisync.observability.logger import get_logger

logger = get_logger(__name__)


def _parse_time(value: Any) -> time | None:
    if isinstance(value, time):
        return value
    if isinstance(value, datetime):
        return value.timetz()
    if isinstance(value, str) and value.strip():
        return time.fromisoformat(value.strip())
    return None


def _parse_date(value: Any) -> date | None:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str) and value.strip():
        # Accept "YYYY-MM-DD" as well as full ISO timestamps
        return date.fromisoformat(value.strip()[:10])
    return None


def combine_date_time(date_value: Any, time_value: Any) -> Any:
    """
    Widen a time-of-day into a timestamp on the given date.

    Args:
        date_value: date, datetime or ISO string supplying the day
        time_value: time, datetime or "HH:MM[:SS]" string

    Returns:
        A datetime, or time_value unchanged when either part is missing
        or it is already a full timestamp

    Raises:
        ValueError: If a string part cannot be parsed
    """
    if time_value is None or isinstance(time_value, datetime):
        return time_value

    day = _parse_date(date_value)
    clock = _parse_time(time_value)
    if day is None or clock is None:
        return time_value
    return datetime.combine(day, clock)


def truncate(value: Any, max_length: int) -> Any:
    """Clip strings longer than max_length; other values pass through."""
    if isinstance(value, str) and len(value) > max_length:
        return value[:max_length]
    return value


def apply_coercions(
    record: dict[str, Any], rule: ReverseRule, source: dict[str, Any] | None = None
) -> dict[str, Any]:
    """
    Apply the rule's explicit coercions in order, in place.

    Date columns are read from source when given, so a date column that the
    origin table lacks can still feed a combined timestamp.
    """
    source = source if source is not None else record
    for coercion in rule.coercions:
        if coercion.column not in record:
            continue
        if isinstance(coercion, CombineDateTime):
            record[coercion.column] = combine_date_time(
                source.get(coercion.date_column), record[coercion.column]
            )
        elif isinstance(coercion, Truncate):
            record[coercion.column] = truncate(record[coercion.column], coercion.max_length)
    return record


def project_record(
    row: dict[str, Any],
    rule: ReverseRule,
    origin_columns: set[str],
    varchar_limits: dict[str, int] | None = None,
) -> dict[str, Any]:
    """
    Turn a fetched cloud row into a row the origin table accepts.

    Args:
        row: Row as read from the cloud store
        rule: Reverse settings of the table
        origin_columns: Column names of the origin table
        varchar_limits: Origin character column limits, used when
            rule.truncate_to_origin is set

    Returns:
        A new record containing only origin columns
    """
    record = {
        column: value
        for column, value in row.items()
        if column in origin_columns and column not in rule.drop_columns
    }

    apply_coercions(record, rule, row)

    if rule.truncate_to_origin and varchar_limits:
        for column, limit in varchar_limits.items():
            if column in record:
                record[column] = truncate(record[column], limit)

    return record
