"""
Strategies for applying a staged batch to its target table.

Both strategies run inside the caller's transaction, after the staging table
has been loaded. Neither ever modifies a row whose origin marker is "M".
"""

from abc import ABC, abstractmethod

import psycopg
from psycopg import sql

from bisync.core.models import ORIGIN_MARKER, SyncDescriptor
from bisync.observability.logger import get_logger

logger = get_logger(__name__)


class CommitStrategy(ABC):
    """
    Applies rows from a staging table to the target table.

    Args:
        descriptor: Table being synced
        marker_present: Whether the cloud target has the origin marker column;
            without it every row is treated as origin-authored
    """

    def __init__(self, descriptor: SyncDescriptor, marker_present: bool):
        self.descriptor = descriptor
        self.marker_present = marker_present
        self.target = sql.Identifier(descriptor.target_schema, descriptor.target_table)

    @property
    @abstractmethod
    def name(self) -> str:
        """Strategy identifier used in logs."""

    @abstractmethod
    def statements(self, staging: sql.Identifier, columns: list[str]) -> list[sql.Composed]:
        """
        Build the statements that move staged rows into the target.

        Args:
            staging: Staging table identifier
            columns: Columns loaded into the staging table

        Returns:
            Statements to execute in order
        """

    def apply(self, conn: psycopg.Connection, staging: sql.Identifier, columns: list[str]) -> int:
        """
        Execute the strategy inside the caller's transaction.

        Returns:
            Rows inserted or updated in the target
        """
        with conn.cursor() as cur:
            for statement in self.statements(staging, columns):
                cur.execute(statement)
            # The final statement is always the insert into the target
            return max(cur.rowcount, 0)

    def _marker_filter(self, qualifier: sql.Composable | None = None) -> sql.Composed:
        """WHERE condition matching origin-authored rows (marker "D" or NULL)."""
        marker = sql.Identifier(self.descriptor.marker_column)
        column = sql.SQL("{}.{}").format(qualifier, marker) if qualifier is not None else marker
        return sql.SQL("{column} = {origin} OR {column} IS NULL").format(
            column=column, origin=sql.Literal(ORIGIN_MARKER)
        )

    def _insert_select(self, staging: sql.Identifier, columns: list[str]) -> sql.Composed:
        column_list = sql.SQL(", ").join(map(sql.Identifier, columns))
        return sql.SQL("INSERT INTO {target} ({columns}) SELECT {columns} FROM {staging}").format(
            target=self.target, columns=column_list, staging=staging
        )


class UpsertStrategy(CommitStrategy):
    """
    INSERT ... ON CONFLICT (pk) DO UPDATE for tables with a stable primary key.

    The update is restricted to target rows whose marker is "D" or NULL, so a
    cloud-authored row sharing the key is left untouched.

    The origin enforces no uniqueness, so the staged batch may repeat a key.
    Only the newest staged row per key is inserted; ON CONFLICT cannot touch
    the same target row twice in one statement.
    """

    name = "upsert"

    def statements(self, staging: sql.Identifier, columns: list[str]) -> list[sql.Composed]:
        pk = list(self.descriptor.primary_key)
        missing = [col for col in pk if col not in columns]
        if missing:
            raise ValueError(
                f"Primary key columns {missing} of {self.descriptor.target_table} are not in the staged batch"
            )

        conflict = sql.SQL(", ").join(map(sql.Identifier, pk))
        # Added timestamp columns hold the same value for the whole batch
        newest_first = [conflict] + [
            sql.SQL("{} DESC NULLS LAST").format(sql.Identifier(col))
            for col in self.descriptor.timestamp_columns
            if col in columns and col not in self.descriptor.add_columns
        ]
        # Later-loaded rows win ties
        newest_first.append(sql.SQL("ctid DESC"))
        column_list = sql.SQL(", ").join(map(sql.Identifier, columns))
        insert = sql.SQL(
            "INSERT INTO {target} ({columns}) SELECT DISTINCT ON ({conflict}) {columns} FROM {staging} "
            "ORDER BY {order}"
        ).format(
            target=self.target,
            columns=column_list,
            conflict=conflict,
            staging=staging,
            order=sql.SQL(", ").join(newest_first),
        )
        update_columns = [col for col in columns if col not in pk]

        if not update_columns:
            action = sql.SQL("DO NOTHING")
        else:
            assignments = sql.SQL(", ").join(
                sql.SQL("{col} = EXCLUDED.{col}").format(col=sql.Identifier(col))
                for col in update_columns
            )
            action = sql.SQL("DO UPDATE SET {assignments}").format(assignments=assignments)
            if self.marker_present:
                action = sql.SQL("{action} WHERE {condition}").format(
                    action=action,
                    condition=self._marker_filter(sql.Identifier(self.descriptor.target_table)),
                )

        return [
            sql.SQL("{insert} ON CONFLICT ({conflict}) {action}").format(
                insert=insert, conflict=conflict, action=action
            )
        ]


class DeleteInsertStrategy(CommitStrategy):
    """
    Replace every origin-authored row for tables without a stable primary key.

    Deletes rows marked "D" (or unmarked) and reinserts the staged batch.
    Columns absent from the batch take the target's defaults, so surrogate
    keys are regenerated each run while "M" rows keep theirs.
    """

    name = "delete_insert"

    def statements(self, staging: sql.Identifier, columns: list[str]) -> list[sql.Composed]:
        if self.marker_present:
            delete = sql.SQL("DELETE FROM {target} WHERE {condition}").format(
                target=self.target, condition=self._marker_filter()
            )
        else:
            delete = sql.SQL("DELETE FROM {target}").format(target=self.target)

        return [delete, self._insert_select(staging, columns)]

    def apply(self, conn: psycopg.Connection, staging: sql.Identifier, columns: list[str]) -> int:
        delete, insert = self.statements(staging, columns)
        with conn.cursor() as cur:
            cur.execute(delete)
            deleted = cur.rowcount
            cur.execute(insert)
            written = cur.rowcount

        logger.info(
            f"Replaced {deleted} origin-authored rows in {self.descriptor.target_table} with {written} staged rows",
            extra={"table": self.descriptor.name, "strategy": self.name, "deleted": deleted, "rows": written},
        )
        return written


def strategy_for(descriptor: SyncDescriptor, marker_present: bool) -> CommitStrategy:
    """
    Select the commit strategy for a table.

    Args:
        descriptor: Table being synced
        marker_present: Whether the target has the origin marker column
    """
    if descriptor.pk_reliability == "unstable":
        return DeleteInsertStrategy(descriptor, marker_present)
    return UpsertStrategy(descriptor, marker_present)
