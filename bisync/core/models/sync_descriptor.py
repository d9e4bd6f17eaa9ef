"""
SyncDescriptor model: the static, validated description of one replicated table.

Descriptors are loaded once per process from YAML and never mutated. Every
column rule is a closed, tagged type so a typo in configuration fails at load
time instead of silently doing nothing during a sync.
"""

from datetime import datetime
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .fk_rule import ForeignKeyRule

ORIGIN_MARKER = "D"
CLOUD_MARKER = "M"


class StaticValue(BaseModel):
    """A constant written into every transformed record."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    kind: Literal["static"] = "static"
    value: Any = None

    def evaluate(self, now: datetime) -> Any:
        return self.value


class ComputedValue(BaseModel):
    """
    A value computed at transform time.

    Only "now" is supported; it is evaluated once per batch so every row of a
    batch carries the same timestamp.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    kind: Literal["computed"] = "computed"
    function: Literal["now"]

    def evaluate(self, now: datetime) -> Any:
        return now


AddColumn = Annotated[Union[StaticValue, ComputedValue], Field(discriminator="kind")]


class LookupRule(BaseModel):
    """
    Derived column resolved through another cloud table.

    Attributes:
        target_column: Column populated on the transformed record
        from_table: Cloud table holding the mapping
        match_column: Column matched against the extracted row's value
        select_column: Column whose value is copied into target_column
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    target_column: str = Field(..., min_length=1)
    from_table: str = Field(..., min_length=1)
    match_column: str = Field(..., min_length=1)
    select_column: str = Field(..., min_length=1)


class CombineDateTime(BaseModel):
    """Widen a time-of-day column into a timestamp using a sibling date column."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    kind: Literal["combine_date_time"] = "combine_date_time"
    column: str
    date_column: str


class Truncate(BaseModel):
    """Clip a text column to a fixed length."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    kind: Literal["truncate"] = "truncate"
    column: str
    max_length: int = Field(..., gt=0)


Coercion = Annotated[Union[CombineDateTime, Truncate], Field(discriminator="kind")]


class ReverseRule(BaseModel):
    """
    Settings for applying cloud-authored rows back to the origin store.

    Attributes:
        primary_key: Origin column used for the insert-only existence check
        timestamp_column: Cloud column driving the reverse watermark
        drop_columns: Cloud bookkeeping columns never copied to the origin
        cloud_authored_only: Fetch only marker "M" rows when the marker column exists
        truncate_to_origin: Clip strings to the origin's varchar limits
        coercions: Explicit per-column type adjustments, applied in order
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    primary_key: str = Field(..., min_length=1)
    timestamp_column: str = "updated_at"
    drop_columns: tuple[str, ...] = ("created_at", "updated_at")
    cloud_authored_only: bool = True
    truncate_to_origin: bool = True
    coercions: tuple[Coercion, ...] = ()


class SyncDescriptor(BaseModel):
    """
    Describes how one logical table is replicated.

    Attributes:
        name: Logical table name, also the key in both metadata tables
        source_table: Table on the origin store
        target_table: Table on the cloud store
        classification: "reference" (full replace) or "transactional" (incremental)
        pk_reliability: "stable" tables are upserted, "unstable" ones delete-and-reinserted
        primary_key: Conflict target for upserts and key for deduplication
        skip_columns: Origin columns removed before staging
        add_columns: Columns added to every record (static or computed)
        lookups: Derived columns resolved through the lookup cache
        fk_rules: Referential checks applied before staging
        timestamp_columns: Mutation timestamp columns used for incremental extraction
        deduplicate: Keep only the newest origin row per primary key
        marker_column: Origin marker column ("D" origin-authored, "M" cloud-authored)
        forward: Whether the table takes part in forward runs
        reverse: Reverse sync settings; None when the table only syncs forward
    """

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
        json_schema_extra={
            "example": {
                "name": "jobtasks",
                "classification": "transactional",
                "pk_reliability": "unstable",
                "skip_columns": ["jt_id"],
                "add_columns": {"source": "D", "updated_at": {"kind": "computed", "function": "now"}},
                "lookups": [
                    {
                        "target_column": "client_id",
                        "from_table": "jobshead",
                        "match_column": "job_id",
                        "select_column": "client_id",
                    }
                ],
                "fk_rules": [{"column": "job_id", "reference_table": "jobshead"}],
            }
        },
    )

    name: str = Field(..., min_length=1, max_length=100)
    source_table: str = ""
    target_table: str = ""
    source_schema: str = "public"
    target_schema: str = "public"
    classification: Literal["reference", "transactional"]
    pk_reliability: Literal["stable", "unstable"] = "stable"
    primary_key: tuple[str, ...] = ()
    skip_columns: tuple[str, ...] = ()
    add_columns: dict[str, AddColumn] = Field(default_factory=dict)
    lookups: tuple[LookupRule, ...] = ()
    fk_rules: tuple[ForeignKeyRule, ...] = ()
    timestamp_columns: tuple[str, ...] = ("updated_at", "created_at")
    deduplicate: bool = False
    marker_column: str = "source"
    forward: bool = True
    reverse: ReverseRule | None = None

    @field_validator("primary_key", mode="before")
    @classmethod
    def wrap_single_key(cls, v):
        """Accept a bare column name for single-column keys."""
        if isinstance(v, str):
            return (v,)
        return v

    @field_validator("add_columns", mode="before")
    @classmethod
    def wrap_static_values(cls, v):
        """Bare scalars in configuration are shorthand for static values."""
        if not isinstance(v, dict):
            return v
        return {
            column: spec if isinstance(spec, (dict, StaticValue, ComputedValue)) else {"kind": "static", "value": spec}
            for column, spec in v.items()
        }

    @model_validator(mode="before")
    @classmethod
    def default_table_names(cls, data):
        """Source and target tables default to the logical name."""
        if isinstance(data, dict) and data.get("name"):
            data = dict(data)
            data["source_table"] = data.get("source_table") or data["name"]
            data["target_table"] = data.get("target_table") or data["name"]
        return data

    @model_validator(mode="after")
    def check_consistency(self) -> "SyncDescriptor":
        """Reject contradictory rules."""
        if self.pk_reliability == "stable" and self.forward and not self.primary_key:
            raise ValueError(f"Table '{self.name}' has a stable primary key but none is configured")
        if self.deduplicate and not self.primary_key:
            raise ValueError(f"Table '{self.name}' requests deduplication without a primary_key")

        overlap = set(self.skip_columns) & set(self.add_columns)
        if overlap:
            raise ValueError(
                f"Table '{self.name}' both skips and adds columns: {sorted(overlap)}"
            )
        return self

    @property
    def is_reference(self) -> bool:
        return self.classification == "reference"

    @property
    def forces_full_extraction(self) -> bool:
        """Reference tables and unstable-PK tables are always extracted in full."""
        return self.is_reference or self.pk_reliability == "unstable"

    def referenced_tables(self) -> set[str]:
        return {rule.reference_table for rule in self.fk_rules}
