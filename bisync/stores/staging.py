"""
Transaction-scoped staging tables.

A staging table is a constraint-free clone of a target table that lives only
inside the commit transaction (ON COMMIT DROP). A batch is bulk-loaded into
it first, so a load failure aborts the transaction before the target is
touched.
"""

from typing import Any

import psycopg
from psycopg import sql
from psycopg.types.json import Jsonb

from bisync.observability.logger import get_logger

logger = get_logger(__name__)

# PostgreSQL truncates identifiers beyond this length
MAX_IDENTIFIER_LENGTH = 63


def adapt_value(value: Any) -> Any:
    """Wrap values psycopg cannot adapt on its own."""
    if isinstance(value, dict):
        return Jsonb(value)
    return value


def batch_columns(records: list[dict[str, Any]]) -> list[str]:
    """Ordered union of the columns present across a batch."""
    columns: dict[str, None] = {}
    for record in records:
        for column in record:
            columns.setdefault(column, None)
    return list(columns)


class StagingTable:
    """
    Ephemeral clone of a target table bound to one open transaction.

    Usage:
        with conn.transaction():
            stage = StagingTable(conn, "public", "jobtasks")
            stage.create()
            stage.load(columns, records)
            ...  # apply from stage.identifier
    """

    def __init__(self, conn: psycopg.Connection, schema: str, target_table: str):
        """
        Args:
            conn: Connection with an open transaction
            schema: Target table schema
            target_table: Table being cloned
        """
        self.conn = conn
        self.target = sql.Identifier(schema, target_table)
        self.name = f"_stage_{target_table}"[:MAX_IDENTIFIER_LENGTH]
        self.identifier = sql.Identifier(self.name)

    def create(self) -> None:
        """Create the staging table; it is dropped automatically at commit or rollback."""
        create_sql = sql.SQL(
            "CREATE TEMP TABLE {stage} (LIKE {target} INCLUDING DEFAULTS) ON COMMIT DROP"
        ).format(stage=self.identifier, target=self.target)

        with self.conn.cursor() as cur:
            cur.execute(create_sql)

    def load(self, columns: list[str], records: list[dict[str, Any]]) -> int:
        """
        Bulk-insert records into the staging table.

        Any failing row raises, which aborts the surrounding transaction.

        Args:
            columns: Column names, in insert order
            records: Rows to load; missing keys load as NULL

        Returns:
            Number of rows loaded
        """
        if not records:
            return 0

        insert_sql = sql.SQL("INSERT INTO {stage} ({columns}) VALUES ({values})").format(
            stage=self.identifier,
            columns=sql.SQL(", ").join(map(sql.Identifier, columns)),
            values=sql.SQL(", ").join(sql.Placeholder() * len(columns)),
        )

        params = [
            tuple(adapt_value(record.get(column)) for column in columns)
            for record in records
        ]

        with self.conn.cursor() as cur:
            cur.executemany(insert_sql, params)

        logger.debug(
            f"Loaded {len(params)} rows into {self.name}",
            extra={"staging_table": self.name, "rows": len(params)},
        )
        return len(params)
