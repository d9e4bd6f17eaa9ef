"""
ForeignKeyRule model describing one referential check on a target table.
"""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator


class ForeignKeyRule(BaseModel):
    """
    A table-scoped foreign key check evaluated before rows reach the cloud store.

    The origin store enforces no foreign keys, so these rules stand in for the
    constraints the cloud store would otherwise reject rows on.

    Attributes:
        column: Column on the target table holding the reference
        reference_table: Cloud table whose keys are valid values
        reference_column: Key column on the reference table (defaults to column)
        exempt_values: Sentinels that always pass (e.g. 0 meaning "unassigned")
    """

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
        json_schema_extra={
            "example": {
                "column": "staff_id",
                "reference_table": "mbstaff",
                "reference_column": "staff_id",
                "exempt_values": [0],
            }
        },
    )

    column: str = Field(..., min_length=1)
    reference_table: str = Field(..., min_length=1)
    reference_column: str = ""
    exempt_values: tuple[Any, ...] = ()

    @model_validator(mode="before")
    @classmethod
    def default_reference_column(cls, data):
        """Use the referencing column name when reference_column is omitted."""
        if isinstance(data, dict) and not data.get("reference_column"):
            data = {**data, "reference_column": data.get("column", "")}
        return data

    @property
    def reference_key(self) -> tuple[str, str]:
        return (self.reference_table, self.reference_column)

    def is_exempt(self, value: Any) -> bool:
        """
        Check whether a value bypasses the reference lookup.

        None, blank strings and configured sentinels are treated as unassigned.
        Sentinels are compared by string form so 0 matches "0".
        """
        if value is None:
            return True
        text = str(value)
        if not text.strip():
            return True
        return any(text == str(exempt) for exempt in self.exempt_values)
