"""
Base validator interface for row-level checks.

A validator inspects one column of one record and raises ValidationError
when the value is unacceptable. Failing rows are excluded from the batch,
never the whole batch.
"""

from abc import ABC, abstractmethod
from typing import Any


class ValidationError(Exception):
    """Raised when a row fails a validation rule."""

    def __init__(self, rule_name: str, field_name: str, message: str):
        self.rule_name = rule_name
        self.field_name = field_name
        self.message = message
        super().__init__(f"[{rule_name}] {field_name}: {message}")


class BaseValidator(ABC):
    """
    Abstract base class for all validators.
    """

    def __init__(self, field_name: str):
        """
        Initialize validator.

        Args:
            field_name: Name of the column to validate
        """
        self.field_name = field_name

    def check(self, record: dict[str, Any]) -> None:
        """Validate this validator's column of a record."""
        self.validate(record.get(self.field_name), record)

    @abstractmethod
    def validate(self, value: Any, record: dict[str, Any]) -> None:
        """
        Validate a value against this rule.

        Args:
            value: The column value to validate
            record: The entire record

        Raises:
            ValidationError: If validation fails
        """

    @property
    @abstractmethod
    def rule_type(self) -> str:
        """Return the rule type identifier."""

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(field={self.field_name})"
