"""
SyncDescriptorRegistry - immutable lookup over the loaded sync descriptors.
"""

from collections.abc import Iterable
from typing import Literal

from bisync.core.exceptions import ConfigurationError, UnknownTableError
from bisync.core.models import ForeignKeyRule, SyncDescriptor
from bisync.observability.logger import get_logger

logger = get_logger(__name__)


class SyncDescriptorRegistry:
    """
    Holds every replicated table's descriptor and answers ordering questions.

    Forward order is all reference tables in declaration order followed by all
    transactional tables in declaration order, so parent key sets are loaded
    before the tables that reference them.
    """

    def __init__(self, descriptors: Iterable[SyncDescriptor]):
        self._descriptors: tuple[SyncDescriptor, ...] = tuple(descriptors)
        self._check_unique()
        self._check_fk_references()

        self._by_name = {d.name: d for d in self._descriptors}
        self._aliases: dict[str, SyncDescriptor] = {}
        for d in self._descriptors:
            self._aliases.setdefault(d.source_table, d)
            self._aliases.setdefault(d.target_table, d)

    def _check_unique(self) -> None:
        seen_names: set[str] = set()
        seen_targets: set[str] = set()
        for d in self._descriptors:
            if d.name in seen_names:
                raise ConfigurationError(f"Duplicate sync descriptor name: {d.name}")
            target = f"{d.target_schema}.{d.target_table}"
            if target in seen_targets:
                raise ConfigurationError(f"Target table {target} is claimed by more than one descriptor")
            seen_names.add(d.name)
            seen_targets.add(target)

    def _check_fk_references(self) -> None:
        targets = {d.target_table for d in self._descriptors}
        position = {d.target_table: i for i, d in enumerate(self.forward_order())}

        for d in self._descriptors:
            for rule in d.fk_rules:
                if rule.reference_table not in targets:
                    raise ConfigurationError(
                        f"Table '{d.name}' has a foreign key rule on {rule.column} "
                        f"referencing unknown table '{rule.reference_table}'"
                    )
                if d.forward and position.get(rule.reference_table, -1) > position.get(d.target_table, -1):
                    logger.warning(
                        f"Table '{d.name}' is synced before its parent '{rule.reference_table}'; "
                        "rows referencing new parent keys will be filtered until the next run",
                        extra={"table": d.name, "reference_table": rule.reference_table},
                    )

    def __len__(self) -> int:
        return len(self._descriptors)

    def __iter__(self):
        return iter(self._descriptors)

    def __contains__(self, name: str) -> bool:
        return name in self._by_name or name in self._aliases

    def get(self, name: str) -> SyncDescriptor:
        """
        Resolve a descriptor by logical name, origin table or cloud table.

        Raises:
            UnknownTableError: If nothing matches
        """
        descriptor = self._by_name.get(name) or self._aliases.get(name)
        if descriptor is None:
            raise UnknownTableError(name)
        return descriptor

    def forward_order(self) -> list[SyncDescriptor]:
        forward = [d for d in self._descriptors if d.forward]
        return [d for d in forward if d.is_reference] + [d for d in forward if not d.is_reference]

    def reference_tables(self) -> list[SyncDescriptor]:
        return [d for d in self.forward_order() if d.is_reference]

    def transactional_tables(self) -> list[SyncDescriptor]:
        return [d for d in self.forward_order() if not d.is_reference]

    def reverse_tables(self) -> list[SyncDescriptor]:
        return [d for d in self._descriptors if d.reverse is not None]

    def names(self, direction: Literal["forward", "reverse"] = "forward") -> list[str]:
        tables = self.forward_order() if direction == "forward" else self.reverse_tables()
        return [d.name for d in tables]

    def fk_rules(self, target_table: str) -> tuple[ForeignKeyRule, ...]:
        return self.get(target_table).fk_rules

    def all_fk_rules(self) -> list[ForeignKeyRule]:
        return [rule for d in self.forward_order() for rule in d.fk_rules]

    def dependents_of(self, target_table: str) -> list[SyncDescriptor]:
        """Descriptors with at least one rule referencing target_table."""
        return [d for d in self.forward_order() if target_table in d.referenced_tables()]
