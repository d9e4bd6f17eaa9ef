"""
ForeignKeyValidator - checks a column value against a cached set of parent keys.
"""

from typing import Any

from bisync.core.models import ForeignKeyRule

from .base_validator import BaseValidator, ValidationError


class ForeignKeyValidator(BaseValidator):
    """
    Validates that a referencing column points at an existing parent row.

    Keys are compared by their string form, matching how the parent key sets
    are cached. Absent values and the rule's exempt sentinels always pass.
    """

    def __init__(self, rule: ForeignKeyRule, valid_keys: frozenset[str]):
        """
        Args:
            rule: The foreign key rule to enforce
            valid_keys: String forms of every key present in the reference table
        """
        super().__init__(rule.column)
        self.rule = rule
        self.valid_keys = valid_keys

    def validate(self, value: Any, record: dict[str, Any]) -> None:
        """
        Raises:
            ValidationError: If the value is neither exempt nor a known parent key
        """
        if self.rule.is_exempt(value):
            return

        if str(value) not in self.valid_keys:
            raise ValidationError(
                rule_name=self.rule_type,
                field_name=self.field_name,
                message=(
                    f"Invalid {self.field_name}={value} "
                    f"(no matching {self.rule.reference_table}.{self.rule.reference_column})"
                ),
            )

    @property
    def rule_type(self) -> str:
        return "foreign_key"
