"""
Result models returned by validation and sync operations (ephemeral, not persisted).
"""

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field, computed_field


class FkValidationResult(BaseModel):
    """
    Outcome of checking one record against its table's foreign key rules.

    Attributes:
        valid: True when every rule passed
        reasons: One message per failed rule
    """

    valid: bool
    reasons: list[str] = Field(default_factory=list)


class InvalidRecord(BaseModel):
    """A record dropped by foreign key filtering, with the reasons."""

    record: dict[str, Any]
    reasons: list[str]


class FilterResult(BaseModel):
    """Partition of a batch into valid and invalid records."""

    valid_records: list[dict[str, Any]] = Field(default_factory=list)
    invalid_records: list[InvalidRecord] = Field(default_factory=list)


class TableSyncResult(BaseModel):
    """
    Outcome of syncing one table in one direction.

    Attributes:
        table: Logical table name
        direction: "forward" (origin to cloud) or "reverse" (cloud to origin)
        mode: Effective extraction mode after any downgrade
        status: "success" or "error"
        extracted: Rows read from the source side
        filtered: Rows dropped by foreign key validation (forward only)
        written: Rows applied to the destination
        skipped: Rows already present at the destination (reverse only)
        failed: Rows that raised during apply (reverse only)
        watermark: Watermark after the sync
        duration_seconds: Wall time of the sync
        error: Failure message when status is "error"
    """

    table: str
    direction: Literal["forward", "reverse"]
    mode: Literal["full", "incremental"]
    status: Literal["success", "error"] = "success"
    extracted: int = 0
    filtered: int = 0
    written: int = 0
    skipped: int = 0
    failed: int = 0
    watermark: datetime | None = None
    duration_seconds: float = 0.0
    error: str | None = None


class RunSummary(BaseModel):
    """Aggregated outcome of a forward or reverse run."""

    direction: Literal["forward", "reverse"]
    mode: Literal["full", "incremental"]
    started_at: datetime
    finished_at: datetime | None = None
    tables: list[TableSyncResult] = Field(default_factory=list)

    @computed_field
    @property
    def succeeded(self) -> bool:
        return all(t.status == "success" for t in self.tables)

    @computed_field
    @property
    def failed_tables(self) -> list[str]:
        return [t.table for t in self.tables if t.status == "error"]

    @computed_field
    @property
    def total_written(self) -> int:
        return sum(t.written for t in self.tables)

    @computed_field
    @property
    def total_filtered(self) -> int:
        return sum(t.filtered for t in self.tables)
