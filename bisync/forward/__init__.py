"""
Forward replication: origin store to cloud store.
"""

from .fk_cache import ForeignKeyCache
from .lookup_cache import LookupCache
from .pipeline import ForwardSyncEngine
from .transform import transform_batch, transform_record

__all__ = [
    "ForwardSyncEngine",
    "ForeignKeyCache",
    "LookupCache",
    "transform_batch",
    "transform_record",
]
