"""
Sync descriptor registry and configuration management.
"""

from .descriptor_config import DescriptorConfigBuilder, DescriptorConfigLoader, load_registry
from .registry import SyncDescriptorRegistry

__all__ = [
    "SyncDescriptorRegistry",
    "DescriptorConfigLoader",
    "DescriptorConfigBuilder",
    "load_registry",
]
