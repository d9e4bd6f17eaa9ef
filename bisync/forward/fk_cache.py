"""
Foreign key validation cache.

Holds the set of valid parent keys for every (reference_table, column) pair
used by a foreign key rule, read from the cloud store. The cache is an
immutable value: reload() returns a new cache, and the forward engine threads
the current cache from one table sync to the next.
"""

from collections.abc import Iterable
from types import MappingProxyType
from typing import Any

from psycopg import sql

from bisync.core.exceptions import SyncError
from bisync.core.models import FilterResult, FkValidationResult, ForeignKeyRule, InvalidRecord, SyncDescriptor
from bisync.core.validators import ForeignKeyValidator, ValidationError
from bisync.observability.logger import get_logger
from bisync.observability.metrics import fk_cache_keys, set_gauge
from bisync.stores.connection import StorePool

logger = get_logger(__name__)

KeySets = dict[tuple[str, str], frozenset[str]]

# Number of rejection reasons echoed to the log per table
SAMPLE_REASONS = 3


def _fetch_keys(pool: StorePool, table: str, column: str, schema: str) -> frozenset[str]:
    query = sql.SQL("SELECT DISTINCT {col} AS key FROM {table} WHERE {col} IS NOT NULL").format(
        col=sql.Identifier(column), table=sql.Identifier(schema, table)
    )
    keys = frozenset(str(row["key"]) for row in pool.execute_query(query))
    set_gauge(fk_cache_keys, len(keys), reference_table=table)
    return keys


class ForeignKeyCache:
    """
    Immutable mapping of reference (table, column) to valid key strings.

    Usage:
        cache = ForeignKeyCache.load(cloud_pool, registry.all_fk_rules())
        result = cache.filter(descriptor, records)
        cache = cache.reload(cloud_pool, descriptor.target_table)
    """

    def __init__(self, keys: KeySets | None = None, schema: str = "public"):
        """
        Args:
            keys: Pre-built key sets, mainly for tests
            schema: Cloud schema holding the reference tables
        """
        self._keys = MappingProxyType(dict(keys or {}))
        self.schema = schema

    @classmethod
    def load(cls, pool: StorePool, rules: Iterable[ForeignKeyRule], schema: str = "public") -> "ForeignKeyCache":
        """
        Build a cache holding every reference key set the rules need.

        Args:
            pool: Cloud store pool
            rules: Every foreign key rule in the registry
            schema: Cloud schema holding the reference tables

        Returns:
            A fully loaded cache
        """
        keys: KeySets = {}
        for rule in rules:
            if rule.reference_key in keys:
                continue
            keys[rule.reference_key] = _fetch_keys(pool, rule.reference_table, rule.reference_column, schema)
            logger.info(
                f"Loaded {len(keys[rule.reference_key])} valid {rule.reference_column} values "
                f"from {rule.reference_table}",
                extra={"reference_table": rule.reference_table, "keys": len(keys[rule.reference_key])},
            )
        return cls(keys, schema)

    def reload(self, pool: StorePool, reference_table: str) -> "ForeignKeyCache":
        """
        Re-read the key sets of one reference table.

        Args:
            pool: Cloud store pool
            reference_table: Table whose rows just changed

        Returns:
            A new cache; this one is left unchanged
        """
        stale = [key for key in self._keys if key[0] == reference_table]
        if not stale:
            return self

        keys: KeySets = dict(self._keys)
        for table, column in stale:
            before = len(keys[(table, column)])
            keys[(table, column)] = _fetch_keys(pool, table, column, self.schema)
            logger.info(
                f"Refreshed {table}.{column} key cache: {before} -> {len(keys[(table, column)])}",
                extra={"reference_table": table, "keys_before": before, "keys": len(keys[(table, column)])},
            )
        return ForeignKeyCache(keys, self.schema)

    def with_keys(self, table: str, column: str, keys: Iterable[Any]) -> "ForeignKeyCache":
        """Return a copy with one key set replaced."""
        updated: KeySets = dict(self._keys)
        updated[(table, column)] = frozenset(str(k) for k in keys)
        return ForeignKeyCache(updated, self.schema)

    def keys_for(self, table: str, column: str) -> frozenset[str]:
        try:
            return self._keys[(table, column)]
        except KeyError:
            raise SyncError(
                f"Foreign key cache has no key set for {table}.{column}; load() it with the rule first"
            ) from None

    def reference_tables(self) -> set[str]:
        return {table for table, _ in self._keys}

    def __contains__(self, reference_table: str) -> bool:
        return reference_table in self.reference_tables()

    def validators(self, descriptor: SyncDescriptor) -> list[ForeignKeyValidator]:
        return [
            ForeignKeyValidator(rule, self.keys_for(rule.reference_table, rule.reference_column))
            for rule in descriptor.fk_rules
        ]

    def validate(self, descriptor: SyncDescriptor, record: dict[str, Any]) -> FkValidationResult:
        """
        Check one record against every foreign key rule of its table.

        Tables without rules are unchecked and always valid.
        """
        reasons = []
        for validator in self.validators(descriptor):
            try:
                validator.check(record)
            except ValidationError as e:
                reasons.append(e.message)
        return FkValidationResult(valid=not reasons, reasons=reasons)

    def filter(self, descriptor: SyncDescriptor, records: list[dict[str, Any]]) -> FilterResult:
        """
        Partition a batch into valid and invalid records.

        Invalid records are reported and dropped for this run; they are not
        retried.
        """
        if not descriptor.fk_rules:
            return FilterResult(valid_records=list(records))

        validators = self.validators(descriptor)
        result = FilterResult()
        for record in records:
            reasons = []
            for validator in validators:
                try:
                    validator.check(record)
                except ValidationError as e:
                    reasons.append(e.message)
            if reasons:
                result.invalid_records.append(InvalidRecord(record=record, reasons=reasons))
            else:
                result.valid_records.append(record)

        if result.invalid_records:
            samples = [inv.reasons[0] for inv in result.invalid_records[:SAMPLE_REASONS]]
            logger.warning(
                f"Filtered {len(result.invalid_records)} of {len(records)} {descriptor.name} records "
                f"failing foreign key checks",
                extra={
                    "table": descriptor.name,
                    "filtered": len(result.invalid_records),
                    "sample_reasons": samples,
                },
            )
        return result
