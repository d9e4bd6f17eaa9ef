"""
Watermark model representing one row of a sync metadata table.
"""

from datetime import datetime, timezone
from typing import Literal

from pydantic import BaseModel, Field

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class Watermark(BaseModel):
    """
    Per-table incremental cursor and last outcome, one row per table per direction.

    last_sync_timestamp is always taken from data observed in a completed
    batch and never moves backwards.

    Attributes:
        table_name: Logical table name (PK)
        last_sync_timestamp: Highest mutation timestamp already processed
        last_sync_id: Reserved cursor for id-based extraction
        sync_status: "pending" until the first sync, then "success" or "error"
        records_synced: Rows written by the last successful sync
        error_message: Message of the last failure, cleared on success
        updated_at: When the row was last written
    """

    table_name: str = Field(..., min_length=1, max_length=100)
    last_sync_timestamp: datetime = EPOCH
    last_sync_id: int | None = None
    sync_status: Literal["pending", "success", "error"] = "pending"
    records_synced: int = Field(0, ge=0)
    error_message: str | None = None
    updated_at: datetime | None = None

    class Config:
        json_schema_extra = {
            "example": {
                "table_name": "workdiary",
                "last_sync_timestamp": "2025-11-02T08:15:00+00:00",
                "sync_status": "success",
                "records_synced": 412,
                "error_message": None,
            }
        }
