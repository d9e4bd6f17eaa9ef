"""
Sync descriptor configuration management.

Loads table descriptors from YAML files and provides a builder for
assembling registries programmatically.
"""

from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from bisync.core.exceptions import ConfigurationError
from bisync.core.models import SyncDescriptor
from bisync.observability.logger import get_logger

from .registry import SyncDescriptorRegistry

logger = get_logger(__name__)


class DescriptorConfigLoader:
    """
    Loads sync descriptors from YAML configuration files.

    Expected YAML format:
    ```yaml
    tables:
      - name: orgmaster
        classification: reference
        primary_key: org_id

      - name: mbreminder
        target_table: reminder
        classification: transactional
        primary_key: rem_id
        add_columns:
          source: D
          updated_at: {kind: computed, function: now}
        fk_rules:
          - column: staff_id
            reference_table: mbstaff
    ```
    """

    def __init__(self, config_path: str | Path):
        """
        Initialize the descriptor config loader.

        Args:
            config_path: Path to the YAML configuration file
        """
        self.config_path = Path(config_path)
        if not self.config_path.exists():
            raise ConfigurationError(f"Sync descriptor file not found: {config_path}")

    def load(self) -> SyncDescriptorRegistry:
        """
        Parse the YAML file into a registry.

        Raises:
            ConfigurationError: If the YAML is malformed or a descriptor is invalid
        """
        try:
            with open(self.config_path) as f:
                config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {self.config_path}: {e}") from e

        registry = load_registry(config)
        logger.info(
            f"Loaded {len(registry)} sync descriptors from {self.config_path}",
            extra={"descriptor_count": len(registry), "path": str(self.config_path)},
        )
        return registry


def load_registry(config: dict[str, Any] | None) -> SyncDescriptorRegistry:
    """
    Validate a parsed configuration mapping into a registry.

    Args:
        config: Mapping with a "tables" list

    Raises:
        ConfigurationError: On the first invalid descriptor
    """
    if not config or "tables" not in config:
        raise ConfigurationError("Configuration must contain a 'tables' section")

    tables = config["tables"]
    if not isinstance(tables, list):
        raise ConfigurationError("'tables' must be a list of descriptors")

    descriptors = []
    for idx, table_def in enumerate(tables):
        if not isinstance(table_def, dict):
            raise ConfigurationError(f"Descriptor #{idx} must be a mapping")
        try:
            descriptors.append(SyncDescriptor.model_validate(table_def))
        except ValidationError as e:
            name = table_def.get("name", f"#{idx}")
            raise ConfigurationError(f"Invalid sync descriptor '{name}': {e}") from e

    return SyncDescriptorRegistry(descriptors)


class DescriptorConfigBuilder:
    """
    Programmatically build descriptor configurations (for testing or ad-hoc runs).
    """

    def __init__(self):
        """Initialize empty descriptor configuration."""
        self.tables: list[dict[str, Any]] = []

    def add_reference(self, name: str, primary_key: str, **options: Any) -> "DescriptorConfigBuilder":
        """Add a reference table (always fully replaced)."""
        self.tables.append({
            "name": name,
            "classification": "reference",
            "primary_key": primary_key,
            **options,
        })
        return self

    def add_transactional(
        self,
        name: str,
        primary_key: str | None = None,
        pk_reliability: str = "stable",
        **options: Any,
    ) -> "DescriptorConfigBuilder":
        """Add a transactional table (incremental unless its key is unstable)."""
        table = {
            "name": name,
            "classification": "transactional",
            "pk_reliability": pk_reliability,
            **options,
        }
        if primary_key:
            table["primary_key"] = primary_key
        self.tables.append(table)
        return self

    def add_fk_rule(
        self,
        column: str,
        reference_table: str,
        reference_column: str | None = None,
        exempt_values: list[Any] | None = None,
    ) -> "DescriptorConfigBuilder":
        """Attach a foreign key rule to the most recently added table."""
        self._last().setdefault("fk_rules", []).append({
            "column": column,
            "reference_table": reference_table,
            "reference_column": reference_column or column,
            "exempt_values": exempt_values or [],
        })
        return self

    def add_lookup(
        self,
        target_column: str,
        from_table: str,
        match_column: str,
        select_column: str,
    ) -> "DescriptorConfigBuilder":
        """Attach a lookup rule to the most recently added table."""
        self._last().setdefault("lookups", []).append({
            "target_column": target_column,
            "from_table": from_table,
            "match_column": match_column,
            "select_column": select_column,
        })
        return self

    def with_reverse(self, primary_key: str, **options: Any) -> "DescriptorConfigBuilder":
        """Enable reverse sync for the most recently added table."""
        self._last()["reverse"] = {"primary_key": primary_key, **options}
        return self

    def _last(self) -> dict[str, Any]:
        if not self.tables:
            raise ConfigurationError("Add a table before attaching rules to it")
        return self.tables[-1]

    def build_config(self) -> dict[str, Any]:
        """Return the raw configuration mapping."""
        return {"tables": self.tables}

    def build(self) -> SyncDescriptorRegistry:
        """Validate and return a registry."""
        return load_registry(self.build_config())
