"""
Reverse sync engine: cloud store to origin store.

Only tables whose rows can be authored on the mobile side take part. Rows are
applied insert-only: a row already present at the origin is skipped, never
updated, so edits made directly at the origin are never overwritten.
"""

import time
from datetime import datetime, timezone
from typing import Any

import psycopg
from psycopg import sql

from bisync.core.exceptions import StoreConnectionError, SyncError, TableSyncError
from bisync.core.models import CLOUD_MARKER, RunSummary, SyncDescriptor, TableSyncResult
from bisync.core.registry import SyncDescriptorRegistry
from bisync.observability.logger import get_logger, log_operation
from bisync.observability.metrics import (
    increment_counter,
    record_table_sync,
    table_sync_duration_seconds,
    table_sync_errors_total,
    track_duration,
)
from bisync.stores.connection import StorePool
from bisync.stores.introspection import SchemaInspector
from bisync.stores.metadata import WatermarkStore
from bisync.stores.staging import adapt_value
from bisync.utils.timestamps import max_timestamp

from .projection import project_record

logger = get_logger(__name__)


class ReverseSyncEngine:
    """
    Copies mobile-authored rows back to the origin store.

    The watermark advances to the highest timestamp among the rows actually
    fetched, never to the time of the write. A row committed on the cloud
    after the fetch is therefore newer than the stored watermark and is
    picked up by the next run.
    """

    def __init__(
        self,
        origin: StorePool,
        cloud: StorePool,
        registry: SyncDescriptorRegistry,
        watermarks: WatermarkStore,
        strict: bool = False,
    ):
        """
        Initialize reverse sync engine.

        Args:
            origin: Origin store pool (write side, also holds the watermarks)
            cloud: Cloud store pool (read side)
            registry: Sync descriptors
            watermarks: Reverse watermark store on the origin
            strict: Raise TableSyncError on the first failing table
        """
        self.origin = origin
        self.cloud = cloud
        self.registry = registry
        self.watermarks = watermarks
        self.strict = strict
        self.refresh_schema()

    def refresh_schema(self) -> None:
        """Drop cached table structure so the next sync re-reads the catalogs."""
        self.origin_schema = SchemaInspector(self.origin)
        self.cloud_schema = SchemaInspector(self.cloud)

    def run(self) -> RunSummary:
        """
        Reverse-sync every table with a reverse rule.

        Returns:
            Per-table results

        Raises:
            StoreConnectionError: If either store becomes unreachable
            TableSyncError: In strict mode, on the first failing table
        """
        summary = RunSummary(direction="reverse", mode="incremental", started_at=datetime.now(timezone.utc))
        self.refresh_schema()

        with log_operation("reverse sync run", logger=logger, direction="reverse"):
            self.watermarks.ensure_table(self.registry.names("reverse"))
            for descriptor in self.registry.reverse_tables():
                summary.tables.append(self.sync_table(descriptor))

        summary.finished_at = datetime.now(timezone.utc)
        logger.info(
            f"Reverse run finished: {len(summary.tables)} tables, {summary.total_written} rows inserted, "
            f"{len(summary.failed_tables)} failed",
            extra={"direction": "reverse", "rows": summary.total_written, "failed_tables": summary.failed_tables},
        )
        return summary

    def sync_table(self, descriptor: SyncDescriptor) -> TableSyncResult:
        """
        Reverse-sync one table.

        Raises:
            SyncError: If the table has no reverse rule
            StoreConnectionError: If a store becomes unreachable
            TableSyncError: In strict mode, when the table fails
        """
        if descriptor.reverse is None:
            raise SyncError(f"Table '{descriptor.name}' is not configured for reverse sync")

        started = time.perf_counter()
        try:
            with log_operation(
                f"reverse sync {descriptor.name}", logger=logger, table=descriptor.name, direction="reverse"
            ):
                with track_duration(table_sync_duration_seconds, direction="reverse", table=descriptor.name):
                    result = self._sync(descriptor)
        except StoreConnectionError:
            raise
        except (psycopg.Error, SyncError) as e:
            increment_counter(table_sync_errors_total, direction="reverse", table=descriptor.name)
            self.watermarks.record_error(descriptor.name, str(e))
            result = TableSyncResult(
                table=descriptor.name,
                direction="reverse",
                mode="incremental",
                status="error",
                error=str(e),
            )
            if self.strict:
                raise TableSyncError(descriptor.name, e) from e

        result.duration_seconds = round(time.perf_counter() - started, 3)
        return result

    def build_extract_query(
        self, descriptor: SyncDescriptor, has_timestamp: bool, cloud_only: bool
    ) -> sql.Composed:
        """
        Build the cloud extraction query.

        Takes one parameter (the watermark) when has_timestamp is set.
        """
        rule = descriptor.reverse
        conditions = []
        if has_timestamp:
            conditions.append(sql.SQL("{} > %s").format(sql.Identifier(rule.timestamp_column)))
        if cloud_only:
            conditions.append(
                sql.SQL("{} = {}").format(sql.Identifier(descriptor.marker_column), sql.Literal(CLOUD_MARKER))
            )

        query = sql.SQL("SELECT * FROM {}").format(
            sql.Identifier(descriptor.target_schema, descriptor.target_table)
        )
        if conditions:
            query = query + sql.SQL(" WHERE ") + sql.SQL(" AND ").join(conditions)
        if has_timestamp:
            query = query + sql.SQL(" ORDER BY {}").format(sql.Identifier(rule.timestamp_column))
        return query

    def _sync(self, descriptor: SyncDescriptor) -> TableSyncResult:
        rule = descriptor.reverse
        cloud_columns = self.cloud_schema.columns(descriptor.target_table, descriptor.target_schema)
        if not cloud_columns:
            raise SyncError(f"Cloud table {descriptor.target_schema}.{descriptor.target_table} does not exist")
        origin_columns = self.origin_schema.columns(descriptor.source_table, descriptor.source_schema)
        if not origin_columns:
            raise SyncError(f"Origin table {descriptor.source_schema}.{descriptor.source_table} does not exist")

        has_timestamp = rule.timestamp_column in cloud_columns
        cloud_only = rule.cloud_authored_only and descriptor.marker_column in cloud_columns

        since = self.watermarks.get_timestamp(descriptor.name) if has_timestamp else None
        if not has_timestamp:
            logger.warning(
                f"Cloud table {descriptor.target_table} lacks {rule.timestamp_column}; "
                "fetching all rows and relying on existence checks",
                extra={"table": descriptor.name, "direction": "reverse"},
            )

        query = self.build_extract_query(descriptor, has_timestamp, cloud_only)
        rows = self.cloud.execute_query(query, (since,) if has_timestamp else None)
        result = TableSyncResult(table=descriptor.name, direction="reverse", mode="incremental", extracted=len(rows))
        logger.info(
            f"Fetched {len(rows)} {descriptor.target_table} rows from the cloud"
            + (f" since {since.isoformat()}" if since else ""),
            extra={"table": descriptor.name, "direction": "reverse", "rows": len(rows)},
        )

        if rows:
            varchar_limits = (
                self.origin_schema.varchar_limits(descriptor.source_table, descriptor.source_schema)
                if rule.truncate_to_origin
                else None
            )
            self._apply(descriptor, rows, set(origin_columns), varchar_limits, result)

        # Every fetched row counts, whether inserted, skipped or failed
        observed = max_timestamp(rows, [rule.timestamp_column]) if has_timestamp else None
        result.watermark = self.watermarks.record_success(descriptor.name, observed, result.written)

        record_table_sync(
            "reverse",
            descriptor.name,
            extracted=result.extracted,
            written=result.written,
            skipped=result.skipped,
            failed=result.failed,
        )
        return result

    def _apply(
        self,
        descriptor: SyncDescriptor,
        rows: list[dict[str, Any]],
        origin_columns: set[str],
        varchar_limits: dict[str, int] | None,
        result: TableSyncResult,
    ) -> None:
        """Insert absent rows one transaction at a time, updating result counters."""
        rule = descriptor.reverse
        target = sql.Identifier(descriptor.source_schema, descriptor.source_table)
        exists_sql = sql.SQL("SELECT 1 FROM {target} WHERE {pk} = %s LIMIT 1").format(
            target=target, pk=sql.Identifier(rule.primary_key)
        )

        with self.origin.get_connection() as conn:
            for row in rows:
                try:
                    record = project_record(row, rule, origin_columns, varchar_limits)
                    with conn.transaction():
                        inserted = self._insert_if_absent(conn, target, exists_sql, rule.primary_key, record)
                except (psycopg.DataError, psycopg.IntegrityError, psycopg.ProgrammingError, ValueError) as e:
                    result.failed += 1
                    logger.warning(
                        f"Failed to reverse-sync {descriptor.name} row "
                        f"{rule.primary_key}={row.get(rule.primary_key)}: {str(e).splitlines()[0]}",
                        extra={"table": descriptor.name, "direction": "reverse"},
                    )
                    continue

                if inserted:
                    result.written += 1
                else:
                    result.skipped += 1

        logger.info(
            f"Inserted {result.written} new {descriptor.source_table} rows at the origin "
            f"({result.skipped} already existed, {result.failed} failed)",
            extra={
                "table": descriptor.name,
                "direction": "reverse",
                "rows": result.written,
                "skipped": result.skipped,
                "failed": result.failed,
            },
        )

    def _insert_if_absent(
        self,
        conn: psycopg.Connection,
        target: sql.Identifier,
        exists_sql: sql.Composed,
        primary_key: str,
        record: dict[str, Any],
    ) -> bool:
        """
        Insert a record unless a row with the same key exists.

        Returns:
            True when inserted, False when skipped
        """
        with conn.cursor() as cur:
            key = record.get(primary_key)
            if key is not None:
                cur.execute(exists_sql, (key,))
                if cur.fetchone() is not None:
                    return False

            columns = list(record)
            insert_sql = sql.SQL("INSERT INTO {target} ({columns}) VALUES ({values})").format(
                target=target,
                columns=sql.SQL(", ").join(map(sql.Identifier, columns)),
                values=sql.SQL(", ").join(sql.Placeholder() * len(columns)),
            )
            cur.execute(insert_sql, tuple(adapt_value(record[c]) for c in columns))
        return True
