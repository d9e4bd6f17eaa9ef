"""
Lookup cache for derived columns.

A lookup rule fills a column by joining against another cloud table. The
mapping is read once per table per run so each row resolves from memory.
"""

from typing import Any

from psycopg import sql

from bisync.core.models import LookupRule, SyncDescriptor
from bisync.observability.logger import get_logger
from bisync.stores.connection import StorePool

logger = get_logger(__name__)


class LookupCache:
    """
    Materialized match-value to select-value maps for one descriptor.

    Match values are keyed by their string form so integer and text keys
    from different stores line up.
    """

    def __init__(self, maps: dict[str, dict[str, Any]] | None = None):
        """
        Args:
            maps: target_column -> {str(match value): selected value}
        """
        self._maps = maps or {}

    @classmethod
    def build(cls, pool: StorePool, descriptor: SyncDescriptor) -> "LookupCache":
        """
        Read every lookup mapping the descriptor needs from the cloud store.

        Args:
            pool: Cloud store pool
            descriptor: Table whose lookups to materialize

        Returns:
            Populated cache (empty when the table has no lookups)
        """
        maps: dict[str, dict[str, Any]] = {}
        for rule in descriptor.lookups:
            query = sql.SQL("SELECT {match} AS match, {select} AS value FROM {table}").format(
                match=sql.Identifier(rule.match_column),
                select=sql.Identifier(rule.select_column),
                table=sql.Identifier(descriptor.target_schema, rule.from_table),
            )
            mapping = {
                str(row["match"]): row["value"]
                for row in pool.execute_query(query)
                if row["match"] is not None
            }
            maps[rule.target_column] = mapping
            logger.info(
                f"Built lookup for {descriptor.name}.{rule.target_column}: {len(mapping)} mappings "
                f"from {rule.from_table}.{rule.match_column} -> {rule.select_column}",
                extra={"table": descriptor.name, "lookup": rule.target_column, "mappings": len(mapping)},
            )
        return cls(maps)

    def resolve(self, rule: LookupRule, record: dict[str, Any]) -> Any:
        """
        Resolve a lookup for one record.

        Args:
            rule: Lookup rule to apply
            record: The original extracted row

        Returns:
            The mapped value, or None when the match value is absent or unknown
        """
        match_value = record.get(rule.match_column)
        if match_value is None:
            return None
        return self._maps.get(rule.target_column, {}).get(str(match_value))

    def __len__(self) -> int:
        return sum(len(m) for m in self._maps.values())
