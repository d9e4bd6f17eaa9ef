"""
Catalog queries against information_schema.

Column sets drive projection in both directions and decide whether a table
has timestamp and origin marker columns at all.
"""

from typing import Any

from .connection import StorePool


class SchemaInspector:
    """
    Reads and caches table structure for one store.

    Results are cached for the lifetime of the inspector, so engines create a
    fresh inspector per run to pick up schema changes between runs.
    """

    def __init__(self, pool: StorePool):
        """
        Initialize schema inspector.

        Args:
            pool: Connection pool of the store to inspect
        """
        self.pool = pool
        self._columns: dict[tuple[str, str], dict[str, dict[str, Any]]] = {}

    def columns(self, table: str, schema: str = "public") -> dict[str, dict[str, Any]]:
        """
        Get column metadata for a table in ordinal order.

        Args:
            table: Table name
            schema: Schema name

        Returns:
            Mapping of column name to {data_type, max_length, is_nullable, default};
            empty when the table does not exist
        """
        key = (schema, table)
        if key not in self._columns:
            query = """
                SELECT column_name, data_type, character_maximum_length,
                       is_nullable, column_default
                FROM information_schema.columns
                WHERE table_schema = %s AND table_name = %s
                ORDER BY ordinal_position
            """
            rows = self.pool.execute_query(query, (schema, table))
            self._columns[key] = {
                row["column_name"]: {
                    "data_type": row["data_type"],
                    "max_length": row["character_maximum_length"],
                    "is_nullable": row["is_nullable"] == "YES",
                    "default": row["column_default"],
                }
                for row in rows
            }
        return self._columns[key]

    def column_names(self, table: str, schema: str = "public") -> list[str]:
        return list(self.columns(table, schema))

    def has_column(self, table: str, column: str, schema: str = "public") -> bool:
        return column in self.columns(table, schema)

    def table_exists(self, table: str, schema: str = "public") -> bool:
        return bool(self.columns(table, schema))

    def present_columns(self, table: str, candidates, schema: str = "public") -> list[str]:
        """Return the candidates that exist on the table, keeping candidate order."""
        existing = self.columns(table, schema)
        return [c for c in candidates if c in existing]

    def varchar_limits(self, table: str, schema: str = "public") -> dict[str, int]:
        """Maximum lengths of bounded character columns."""
        return {
            name: info["max_length"]
            for name, info in self.columns(table, schema).items()
            if info["max_length"] and info["data_type"] in ("character varying", "character")
        }

    def primary_key(self, table: str, schema: str = "public") -> list[str]:
        """
        Get the declared primary key columns of a table.

        Returns:
            Key columns in key order; empty when no primary key is declared
        """
        query = """
            SELECT a.attname AS column_name
            FROM pg_index i
            JOIN pg_class c ON c.oid = i.indrelid
            JOIN pg_namespace n ON n.oid = c.relnamespace
            JOIN pg_attribute a ON a.attrelid = c.oid AND a.attnum = ANY(i.indkey)
            WHERE i.indisprimary AND n.nspname = %s AND c.relname = %s
            ORDER BY array_position(i.indkey::int2[], a.attnum)
        """
        return [row["column_name"] for row in self.pool.execute_query(query, (schema, table))]

    def invalidate(self, table: str | None = None, schema: str = "public") -> None:
        if table is None:
            self._columns.clear()
        else:
            self._columns.pop((schema, table), None)
