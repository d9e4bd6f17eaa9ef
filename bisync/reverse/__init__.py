"""
Reverse replication: cloud store back to origin store.
"""

from .pipeline import ReverseSyncEngine
from .projection import apply_coercions, combine_date_time, project_record

__all__ = [
    "ReverseSyncEngine",
    "project_record",
    "apply_coercions",
    "combine_date_time",
]
