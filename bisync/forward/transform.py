"""
Record transformation for the forward path.

Turns an extracted origin row into a cloud row: drop skipped columns, add
static and computed columns, resolve lookups, then project onto the columns
the cloud table actually has.
"""

from collections.abc import Iterable
from datetime import datetime, timezone
from typing import Any

from bisync.core.models import SyncDescriptor
from bisync.observability.logger import get_logger

from .lookup_cache import LookupCache

logger = get_logger(__name__)


def transform_record(
    row: dict[str, Any],
    descriptor: SyncDescriptor,
    lookups: LookupCache,
    now: datetime,
    target_columns: set[str] | None = None,
) -> dict[str, Any]:
    """
    Transform one extracted row.

    Args:
        row: Row as read from the origin store
        descriptor: Table being synced
        lookups: Lookup cache built for this table and run
        now: Value for computed "now" columns, shared by the whole batch
        target_columns: Cloud column names; other columns are dropped

    Returns:
        A new record; the input row is not modified
    """
    record = {k: v for k, v in row.items() if k not in descriptor.skip_columns}

    for column, spec in descriptor.add_columns.items():
        record[column] = spec.evaluate(now)

    # Lookups match against the original row so skipped columns stay usable
    for rule in descriptor.lookups:
        record[rule.target_column] = lookups.resolve(rule, row)

    if target_columns is not None:
        record = {k: v for k, v in record.items() if k in target_columns}

    return record


def transform_batch(
    rows: list[dict[str, Any]],
    descriptor: SyncDescriptor,
    lookups: LookupCache,
    target_columns: Iterable[str] | None = None,
    now: datetime | None = None,
) -> list[dict[str, Any]]:
    """
    Transform an extracted batch.

    Args:
        rows: Extracted rows
        descriptor: Table being synced
        lookups: Lookup cache for this table and run
        target_columns: Cloud column names, or None to skip projection
        now: Timestamp for computed columns (defaults to the current UTC time)

    Returns:
        Transformed records in extraction order
    """
    now = now or datetime.now(timezone.utc)
    allowed = set(target_columns) if target_columns is not None else None

    if allowed is not None and rows:
        produced = (set(rows[0]) - set(descriptor.skip_columns)) | set(descriptor.add_columns)
        produced |= {rule.target_column for rule in descriptor.lookups}
        dropped = sorted(produced - allowed)
        if dropped:
            logger.debug(
                f"Dropping columns absent from cloud table {descriptor.target_table}: {dropped}",
                extra={"table": descriptor.name, "dropped_columns": dropped},
            )

    return [transform_record(row, descriptor, lookups, now, allowed) for row in rows]
