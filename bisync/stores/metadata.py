"""
Watermark persistence for incremental sync.

One metadata table per direction: forward watermarks live on the cloud store
and reverse watermarks on the origin store. Tables are created on first use
and seeded at the epoch so the first incremental run reads everything.
"""

from datetime import datetime
from typing import Any

import psycopg
from psycopg import sql

from bisync.core.models import EPOCH, Watermark
from bisync.observability.logger import get_logger
from bisync.observability.metrics import set_gauge, watermark_timestamp_seconds

from .connection import StorePool

logger = get_logger(__name__)


class WatermarkStore:
    """
    Reads and advances per-table watermarks in one metadata table.

    last_sync_timestamp only ever moves forward: every write goes through
    GREATEST(existing, new), so replaying an older batch cannot rewind it.
    """

    def __init__(self, pool: StorePool, table_name: str, direction: str = "forward"):
        """
        Initialize watermark store.

        Args:
            pool: Pool of the store holding the metadata table
            table_name: Metadata table name (e.g. "_sync_metadata")
            direction: "forward" or "reverse", used for logs and metrics
        """
        self.pool = pool
        self.table_name = table_name
        self.direction = direction
        self._table = sql.Identifier(table_name)

    def ensure_table(self, table_names: list[str] | None = None) -> None:
        """
        Create the metadata table if absent and seed a row per known table.

        Existing rows are never touched.

        Args:
            table_names: Logical table names to seed at the epoch
        """
        create_sql = sql.SQL("""
            CREATE TABLE IF NOT EXISTS {table} (
                table_name VARCHAR(100) PRIMARY KEY,
                last_sync_timestamp TIMESTAMPTZ NOT NULL DEFAULT '1970-01-01 00:00:00+00',
                last_sync_id BIGINT,
                sync_status VARCHAR(20) NOT NULL DEFAULT 'pending',
                records_synced INTEGER NOT NULL DEFAULT 0,
                error_message TEXT,
                updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
            )
        """).format(table=self._table)

        seed_sql = sql.SQL("""
            INSERT INTO {table} (table_name, last_sync_timestamp, sync_status)
            VALUES (%s, %s, 'pending')
            ON CONFLICT (table_name) DO NOTHING
        """).format(table=self._table)

        try:
            with self.pool.get_connection() as conn:
                with conn.cursor() as cur:
                    cur.execute(create_sql)
                    if table_names:
                        cur.executemany(seed_sql, [(name, EPOCH) for name in table_names])
                conn.commit()
        except psycopg.DatabaseError as e:
            logger.error(f"Failed to provision metadata table {self.table_name}: {e}")
            raise

        logger.info(
            f"Metadata table {self.table_name} ready",
            extra={"direction": self.direction, "seeded_tables": len(table_names or [])},
        )

    def get(self, table_name: str) -> Watermark | None:
        """
        Get the watermark row for a table.

        Returns:
            Watermark, or None when the row or the metadata table is missing
        """
        query = sql.SQL("""
            SELECT table_name, last_sync_timestamp, last_sync_id, sync_status,
                   records_synced, error_message, updated_at
            FROM {table}
            WHERE table_name = %s
        """).format(table=self._table)

        try:
            rows = self.pool.execute_query(query, (table_name,))
        except psycopg.errors.UndefinedTable:
            logger.warning(
                f"Metadata table {self.table_name} does not exist yet",
                extra={"direction": self.direction, "table": table_name},
            )
            return None

        return Watermark(**rows[0]) if rows else None

    def get_timestamp(self, table_name: str) -> datetime:
        """Last sync timestamp for a table, the epoch when nothing is recorded."""
        watermark = self.get(table_name)
        return watermark.last_sync_timestamp if watermark else EPOCH

    def record_success(
        self,
        table_name: str,
        timestamp: datetime | None,
        records_synced: int,
        conn: psycopg.Connection | None = None,
    ) -> datetime:
        """
        Mark a table sync successful and advance its watermark.

        When conn is given the write joins the caller's open transaction, so a
        rollback of the data commit also discards the watermark change.

        Args:
            table_name: Logical table name
            timestamp: Highest mutation timestamp observed in the batch, or None
            records_synced: Rows written by the sync
            conn: Connection whose transaction the write should join

        Returns:
            The stored watermark after the update
        """
        upsert_sql = sql.SQL("""
            INSERT INTO {table} (table_name, last_sync_timestamp, sync_status,
                                 records_synced, error_message, updated_at)
            VALUES (%(table_name)s, COALESCE(%(ts)s::timestamptz, '1970-01-01 00:00:00+00'),
                    'success', %(records)s, NULL, now())
            ON CONFLICT (table_name) DO UPDATE SET
                last_sync_timestamp = GREATEST({table}.last_sync_timestamp, EXCLUDED.last_sync_timestamp),
                sync_status = 'success',
                records_synced = EXCLUDED.records_synced,
                error_message = NULL,
                updated_at = now()
            RETURNING last_sync_timestamp
        """).format(table=self._table)

        params = {"table_name": table_name, "ts": timestamp, "records": records_synced}

        if conn is not None:
            with conn.cursor() as cur:
                cur.execute(upsert_sql, params)
                stored = cur.fetchone()["last_sync_timestamp"]
        else:
            with self.pool.get_connection() as own_conn:
                with own_conn.cursor() as cur:
                    cur.execute(upsert_sql, params)
                    stored = cur.fetchone()["last_sync_timestamp"]
                own_conn.commit()

        set_gauge(
            watermark_timestamp_seconds,
            stored.timestamp(),
            direction=self.direction,
            table=table_name,
        )
        logger.debug(
            f"Watermark for {table_name} is now {stored.isoformat()}",
            extra={"direction": self.direction, "table": table_name, "records": records_synced},
        )
        return stored

    def record_error(self, table_name: str, message: str) -> None:
        """
        Record a failed table sync without moving the watermark.

        Uses its own connection because the failed transaction has already
        been rolled back.
        """
        error_sql = sql.SQL("""
            INSERT INTO {table} (table_name, sync_status, error_message, updated_at)
            VALUES (%s, 'error', %s, now())
            ON CONFLICT (table_name) DO UPDATE SET
                sync_status = 'error',
                error_message = EXCLUDED.error_message,
                updated_at = now()
        """).format(table=self._table)

        try:
            self.pool.execute_command(error_sql, (table_name, message))
        except psycopg.DatabaseError as e:
            # The original failure is already being reported; do not mask it
            logger.error(
                f"Failed to record error status for {table_name}: {e}",
                extra={"direction": self.direction, "table": table_name},
            )

    def list_all(self) -> list[Watermark]:
        """
        Get every watermark row ordered by table name.

        Returns:
            List of watermarks; empty when the metadata table does not exist
        """
        query = sql.SQL("""
            SELECT table_name, last_sync_timestamp, last_sync_id, sync_status,
                   records_synced, error_message, updated_at
            FROM {table}
            ORDER BY table_name
        """).format(table=self._table)

        try:
            rows: list[dict[str, Any]] = self.pool.execute_query(query)
        except psycopg.errors.UndefinedTable:
            return []

        return [Watermark(**row) for row in rows]
