"""
Exception hierarchy for the replication engine.

Row-level problems never raise; they are counted on the table result.
Table-level failures are logged and recorded in the metadata store, and only
propagate as TableSyncError when the engine runs in strict mode. Run-level
failures (StoreConnectionError) always propagate.
"""


class SyncError(Exception):
    """Base class for all replication errors."""


class ConfigurationError(SyncError):
    """Raised when descriptors or connection settings are invalid."""


class UnknownTableError(ConfigurationError):
    """Raised when a table name does not resolve to any sync descriptor."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"No sync descriptor registered for table '{name}'")


class StoreConnectionError(SyncError):
    """Raised when a store cannot be reached. Aborts the whole run."""

    def __init__(self, store: str, message: str):
        self.store = store
        super().__init__(f"[{store}] {message}")


class TableSyncError(SyncError):
    """Raised in strict mode when a single table sync fails."""

    def __init__(self, table: str, cause: BaseException):
        self.table = table
        self.cause = cause
        super().__init__(f"Sync failed for table '{table}': {cause}")
