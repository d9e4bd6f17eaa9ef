"""
Core data models for the replication engine.

All models use Pydantic for runtime validation and type safety.
"""

from .fk_rule import ForeignKeyRule
from .results import FilterResult, FkValidationResult, InvalidRecord, RunSummary, TableSyncResult
from .settings import EngineSettings, StoreConfig
from .sync_descriptor import (
    CLOUD_MARKER,
    ORIGIN_MARKER,
    CombineDateTime,
    ComputedValue,
    LookupRule,
    ReverseRule,
    StaticValue,
    SyncDescriptor,
    Truncate,
)
from .watermark import EPOCH, Watermark

__all__ = [
    "SyncDescriptor",
    "ORIGIN_MARKER",
    "CLOUD_MARKER",
    "StaticValue",
    "ComputedValue",
    "LookupRule",
    "ReverseRule",
    "CombineDateTime",
    "Truncate",
    "ForeignKeyRule",
    "Watermark",
    "EPOCH",
    "FkValidationResult",
    "InvalidRecord",
    "FilterResult",
    "TableSyncResult",
    "RunSummary",
    "StoreConfig",
    "EngineSettings",
]
