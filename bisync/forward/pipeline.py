"""
Forward sync engine: origin store to cloud store.

Each table runs Extract -> Transform -> Validate -> Stage -> Commit ->
Advance-Watermark to completion before the next one starts. Staging, commit
and the watermark write share one transaction on one cloud connection, so a
failure leaves both the target table and its watermark untouched.
"""

import time
from datetime import datetime, timezone
from typing import Any, Literal

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
from bisync.stores.commit_strategies import strategy_for
from bisync.stores.connection import StorePool
from bisync.stores.introspection import SchemaInspector
from bisync.stores.metadata import WatermarkStore
from bisync.stores.staging import StagingTable, batch_columns
from bisync.utils.timestamps import max_timestamp

from .fk_cache import ForeignKeyCache
from .lookup_cache import LookupCache
from .transform import transform_batch

logger = get_logger(__name__)

SyncMode = Literal["full", "incremental"]


class ForwardSyncEngine:
    """
    Replicates origin-authored rows into the cloud store.

    Reference tables are fully replaced; transactional tables are extracted
    incrementally unless their primary key is unstable, in which case every
    origin-authored row is deleted and reinserted from a full extraction.
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
        Initialize forward sync engine.

        Args:
            origin: Origin store pool (read side)
            cloud: Cloud store pool (write side, also holds the watermarks)
            registry: Sync descriptors
            watermarks: Forward watermark store on the cloud
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

    def load_fk_cache(self) -> ForeignKeyCache:
        return ForeignKeyCache.load(self.cloud, self.registry.all_fk_rules())

    def check_timestamp_columns(self) -> list[str]:
        """
        Warn about incremental tables whose origin table has no timestamp column.

        Returns:
            Names of tables that will fall back to full extraction
        """
        missing = []
        for descriptor in self.registry.transactional_tables():
            if descriptor.pk_reliability == "unstable":
                continue
            present = self.origin_schema.present_columns(
                descriptor.source_table, descriptor.timestamp_columns, descriptor.source_schema
            )
            if not present:
                missing.append(descriptor.name)

        if missing:
            logger.warning(
                f"Tables without timestamp columns will be synced in full: {missing}",
                extra={"tables": missing},
            )
        return missing

    def check_conflict_targets(self) -> list[str]:
        """
        Warn about upserted tables whose configured key is not the cloud primary key.

        ON CONFLICT needs a unique index on exactly the configured columns, so
        a mismatch fails every commit of that table.

        Returns:
            Names of mismatching tables
        """
        mismatched = []
        for descriptor in self.registry.forward_order():
            if descriptor.pk_reliability == "unstable":
                continue
            declared = self.cloud_schema.primary_key(descriptor.target_table, descriptor.target_schema)
            if declared and set(declared) != set(descriptor.primary_key):
                mismatched.append(descriptor.name)
                logger.warning(
                    f"Configured primary key {list(descriptor.primary_key)} of {descriptor.name} "
                    f"differs from the cloud primary key {declared}",
                    extra={"table": descriptor.name},
                )
        return mismatched

    def run(self, mode: SyncMode = "incremental") -> RunSummary:
        """
        Sync every forward table in dependency order.

        Args:
            mode: "incremental" or "full"

        Returns:
            Per-table results

        Raises:
            StoreConnectionError: If either store becomes unreachable
            TableSyncError: In strict mode, on the first failing table
        """
        summary = RunSummary(direction="forward", mode=mode, started_at=datetime.now(timezone.utc))
        self.refresh_schema()

        with log_operation("forward sync run", logger=logger, direction="forward", mode=mode):
            self.watermarks.ensure_table(self.registry.names("forward"))
            fk_cache = self.load_fk_cache()
            self.check_conflict_targets()

            if mode == "incremental":
                self.check_timestamp_columns()

            for descriptor in self.registry.forward_order():
                result, fk_cache = self.sync_table(descriptor, mode, fk_cache)
                summary.tables.append(result)

        summary.finished_at = datetime.now(timezone.utc)
        logger.info(
            f"Forward run finished: {len(summary.tables)} tables, {summary.total_written} rows written, "
            f"{summary.total_filtered} filtered, {len(summary.failed_tables)} failed",
            extra={
                "direction": "forward",
                "mode": mode,
                "rows": summary.total_written,
                "filtered": summary.total_filtered,
                "failed_tables": summary.failed_tables,
            },
        )
        return summary

    def sync_table(
        self,
        descriptor: SyncDescriptor,
        mode: SyncMode = "incremental",
        fk_cache: ForeignKeyCache | None = None,
    ) -> tuple[TableSyncResult, ForeignKeyCache]:
        """
        Sync one table.

        Args:
            descriptor: Table to sync
            mode: Requested mode; may be upgraded to full for this table
            fk_cache: Current foreign key cache (loaded on demand when None)

        Returns:
            The table result and the foreign key cache to use for the next table

        Raises:
            StoreConnectionError: If a store becomes unreachable
            TableSyncError: In strict mode, when the table fails
        """
        if fk_cache is None:
            fk_cache = self.load_fk_cache()

        started = time.perf_counter()
        try:
            with log_operation(
                f"forward sync {descriptor.name}",
                logger=logger,
                table=descriptor.name,
                direction="forward",
                mode=mode,
            ):
                with track_duration(table_sync_duration_seconds, direction="forward", table=descriptor.name):
                    result, fk_cache = self._sync(descriptor, mode, fk_cache)
        except StoreConnectionError:
            raise
        except (psycopg.Error, SyncError, ValueError) as e:
            increment_counter(table_sync_errors_total, direction="forward", table=descriptor.name)
            self.watermarks.record_error(descriptor.name, str(e))
            result = TableSyncResult(
                table=descriptor.name,
                direction="forward",
                mode=mode,
                status="error",
                error=str(e),
                duration_seconds=round(time.perf_counter() - started, 3),
            )
            if self.strict:
                raise TableSyncError(descriptor.name, e) from e
            return result, fk_cache

        result.duration_seconds = round(time.perf_counter() - started, 3)
        return result, fk_cache

    def _sync(
        self, descriptor: SyncDescriptor, mode: SyncMode, fk_cache: ForeignKeyCache
    ) -> tuple[TableSyncResult, ForeignKeyCache]:
        source_columns = self.origin_schema.columns(descriptor.source_table, descriptor.source_schema)
        if not source_columns:
            raise SyncError(f"Origin table {descriptor.source_schema}.{descriptor.source_table} does not exist")
        target_columns = self.cloud_schema.columns(descriptor.target_table, descriptor.target_schema)
        if not target_columns:
            raise SyncError(f"Cloud table {descriptor.target_schema}.{descriptor.target_table} does not exist")

        timestamp_columns = [c for c in descriptor.timestamp_columns if c in source_columns]
        effective_mode, since = self._plan_extraction(descriptor, mode, timestamp_columns)

        # Extract
        rows = self._extract(descriptor, effective_mode, since, timestamp_columns, source_columns)
        observed = max_timestamp(rows, timestamp_columns)
        result = TableSyncResult(
            table=descriptor.name, direction="forward", mode=effective_mode, extracted=len(rows)
        )

        if not rows:
            logger.info(f"No records to sync for {descriptor.name}", extra={"table": descriptor.name})
            result.watermark = self.watermarks.record_success(descriptor.name, None, 0)
            return result, fk_cache

        # Transform
        lookups = LookupCache.build(self.cloud, descriptor) if descriptor.lookups else LookupCache()
        records = transform_batch(rows, descriptor, lookups, target_columns)

        # Validate
        filtered = fk_cache.filter(descriptor, records)
        result.filtered = len(filtered.invalid_records)

        if not filtered.valid_records:
            logger.warning(
                f"No valid records left for {descriptor.name} after foreign key filtering",
                extra={"table": descriptor.name, "filtered": result.filtered},
            )
            result.watermark = self.watermarks.record_success(descriptor.name, observed, 0)
        else:
            # Stage, commit and advance the watermark atomically
            marker_present = descriptor.marker_column in target_columns
            result.written, result.watermark = self._commit(
                descriptor, filtered.valid_records, observed, marker_present
            )
            if descriptor.target_table in fk_cache:
                fk_cache = fk_cache.reload(self.cloud, descriptor.target_table)

        record_table_sync(
            "forward",
            descriptor.name,
            extracted=result.extracted,
            written=result.written,
            filtered=result.filtered,
        )
        return result, fk_cache

    def _plan_extraction(
        self, descriptor: SyncDescriptor, mode: SyncMode, timestamp_columns: list[str]
    ) -> tuple[SyncMode, datetime | None]:
        """Decide the effective mode and the lower timestamp bound."""
        if mode == "full":
            return "full", None

        if descriptor.forces_full_extraction:
            if not descriptor.is_reference:
                # A partial extract followed by delete-and-reinsert would lose every row not in it
                logger.warning(
                    f"Forcing full extraction for {descriptor.name}: unstable primary key",
                    extra={"table": descriptor.name},
                )
            return "full", None

        if not timestamp_columns:
            logger.warning(
                f"Table {descriptor.source_table} has none of {list(descriptor.timestamp_columns)}; "
                "falling back to full extraction",
                extra={"table": descriptor.name},
            )
            return "full", None

        return "incremental", self.watermarks.get_timestamp(descriptor.name)

    def build_extract_query(
        self,
        descriptor: SyncDescriptor,
        mode: SyncMode,
        timestamp_columns: list[str],
        marker_on_origin: bool,
    ) -> sql.Composed:
        """
        Build the extraction query for a table.

        The query takes one parameter per timestamp column in incremental mode.
        """
        conditions = []
        if mode == "incremental":
            newer = sql.SQL(" OR ").join(
                sql.SQL("{} > %s").format(sql.Identifier(col)) for col in timestamp_columns
            )
            conditions.append(sql.SQL("({})").format(newer))

        if marker_on_origin:
            # Rows that came from the cloud through reverse sync must not bounce back
            conditions.append(
                sql.SQL("{} IS DISTINCT FROM {}").format(
                    sql.Identifier(descriptor.marker_column), sql.Literal(CLOUD_MARKER)
                )
            )

        where = sql.SQL("")
        if conditions:
            where = sql.SQL(" WHERE ") + sql.SQL(" AND ").join(conditions)

        source = sql.Identifier(descriptor.source_schema, descriptor.source_table)

        if not descriptor.deduplicate:
            return sql.SQL("SELECT * FROM {source}{where}").format(source=source, where=where)

        pk = sql.SQL(", ").join(map(sql.Identifier, descriptor.primary_key))
        order = [pk] + [
            sql.SQL("{} DESC NULLS LAST").format(sql.Identifier(col)) for col in timestamp_columns
        ]
        return sql.SQL("SELECT DISTINCT ON ({pk}) * FROM {source}{where} ORDER BY {order}").format(
            pk=pk, source=source, where=where, order=sql.SQL(", ").join(order)
        )

    def _extract(
        self,
        descriptor: SyncDescriptor,
        mode: SyncMode,
        since: datetime | None,
        timestamp_columns: list[str],
        source_columns: dict[str, Any],
    ) -> list[dict[str, Any]]:
        marker_on_origin = descriptor.marker_column in source_columns
        query = self.build_extract_query(descriptor, mode, timestamp_columns, marker_on_origin)
        params = [since] * len(timestamp_columns) if mode == "incremental" else None

        rows = self.origin.execute_query(query, params)
        logger.info(
            f"Extracted {len(rows)} {descriptor.name} records ({mode}"
            + (f" since {since.isoformat()})" if since else ")"),
            extra={"table": descriptor.name, "mode": mode, "rows": len(rows)},
        )
        return rows

    def _commit(
        self,
        descriptor: SyncDescriptor,
        records: list[dict[str, Any]],
        observed: datetime | None,
        marker_present: bool,
    ) -> tuple[int, datetime]:
        """
        Stage the batch, apply it and advance the watermark in one transaction.

        Returns:
            Rows written and the stored watermark
        """
        columns = batch_columns(records)
        strategy = strategy_for(descriptor, marker_present)

        with self.cloud.get_connection() as conn:
            with conn.transaction():
                stage = StagingTable(conn, descriptor.target_schema, descriptor.target_table)
                stage.create()
                stage.load(columns, records)

                # Tolerate forward references inside the batch
                conn.execute("SET CONSTRAINTS ALL DEFERRED")

                written = strategy.apply(conn, stage.identifier, columns)
                watermark = self.watermarks.record_success(descriptor.name, observed, written, conn=conn)

        logger.info(
            f"Committed {written} {descriptor.name} records via {strategy.name}",
            extra={"table": descriptor.name, "strategy": strategy.name, "rows": written},
        )
        return written, watermark
