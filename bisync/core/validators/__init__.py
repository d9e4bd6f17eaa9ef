"""
Row-level validation rules.
"""

from .base_validator import BaseValidator, ValidationError
from .fk_validator import ForeignKeyValidator

__all__ = [
    "BaseValidator",
    "ValidationError",
    "ForeignKeyValidator",
]
