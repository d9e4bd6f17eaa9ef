"""
SyncEngine - the entry point callers drive.

Wires settings, pools, the descriptor registry, both watermark stores and the
two direction engines together.

Usage:
    with SyncEngine(EngineSettings.from_env()) as engine:
        summary = engine.sync_all("incremental")
        engine.sync_reverse()
"""

from typing import Literal, Optional

from bisync.core.exceptions import SyncError
from bisync.core.models import EngineSettings, RunSummary, TableSyncResult, Watermark
from bisync.core.registry import DescriptorConfigLoader, SyncDescriptorRegistry
from bisync.forward import ForwardSyncEngine
from bisync.observability.logger import ROOT_LOGGER, get_logger, setup_logger
from bisync.observability.metrics import start_metrics_server
from bisync.reverse import ReverseSyncEngine
from bisync.stores.connection import StorePool
from bisync.stores.metadata import WatermarkStore

logger = get_logger(__name__)


class SyncEngine:
    """
    Bidirectional replication between the origin and cloud stores.

    Forward watermarks live on the cloud store, reverse watermarks on the
    origin store, next to the data each direction writes.
    """

    def __init__(
        self,
        settings: Optional[EngineSettings] = None,
        registry: Optional[SyncDescriptorRegistry] = None,
        origin: Optional[StorePool] = None,
        cloud: Optional[StorePool] = None,
    ):
        """
        Initialize the engine without touching the network.

        Args:
            settings: Engine settings (defaults to EngineSettings.from_env())
            registry: Pre-built registry; loaded from settings.descriptor_path when None
            origin: Pre-built origin pool, mainly for tests
            cloud: Pre-built cloud pool, mainly for tests
        """
        self.settings = settings or EngineSettings.from_env()
        self.registry = registry
        self.origin = origin or StorePool(self.settings.origin)
        self.cloud = cloud or StorePool(self.settings.cloud)

        self.forward_watermarks: Optional[WatermarkStore] = None
        self.reverse_watermarks: Optional[WatermarkStore] = None
        self.forward: Optional[ForwardSyncEngine] = None
        self.reverse: Optional[ReverseSyncEngine] = None
        self._initialized = False

    def initialize(self, max_retries: int = 3, retry_delay: float = 2.0) -> None:
        """
        Open both stores, load descriptors and bootstrap both metadata tables.

        Raises:
            StoreConnectionError: If either store is unreachable
            ConfigurationError: If the descriptor file is missing or invalid
        """
        if self._initialized:
            return

        setup_logger(ROOT_LOGGER, level=self.settings.log_level, format_type=self.settings.log_format)

        if self.registry is None:
            self.registry = DescriptorConfigLoader(self.settings.descriptor_path).load()

        try:
            self.origin.open(max_retries=max_retries, retry_delay=retry_delay)
            self.cloud.open(max_retries=max_retries, retry_delay=retry_delay)

            self.forward_watermarks = WatermarkStore(
                self.cloud, self.settings.forward_metadata_table, direction="forward"
            )
            self.reverse_watermarks = WatermarkStore(
                self.origin, self.settings.reverse_metadata_table, direction="reverse"
            )
            self.forward_watermarks.ensure_table(self.registry.names("forward"))
            self.reverse_watermarks.ensure_table(self.registry.names("reverse"))
        except Exception:
            self.cleanup()
            raise

        self.forward = ForwardSyncEngine(
            self.origin, self.cloud, self.registry, self.forward_watermarks, strict=self.settings.strict
        )
        self.reverse = ReverseSyncEngine(
            self.origin, self.cloud, self.registry, self.reverse_watermarks, strict=self.settings.strict
        )

        if self.settings.metrics_port:
            start_metrics_server(self.settings.metrics_port)
            logger.info(
                f"Serving metrics on port {self.settings.metrics_port}",
                extra={"port": self.settings.metrics_port},
            )

        self._initialized = True
        logger.info(
            f"Sync engine ready: {len(self.registry.forward_order())} forward tables, "
            f"{len(self.registry.reverse_tables())} reverse tables",
            extra={
                "forward_tables": len(self.registry.forward_order()),
                "reverse_tables": len(self.registry.reverse_tables()),
            },
        )

    def _require_initialized(self) -> None:
        if not self._initialized:
            raise SyncError("SyncEngine is not initialized. Call initialize() first.")

    def sync_all(self, mode: Literal["full", "incremental"] = "incremental") -> RunSummary:
        """Forward-sync every table in dependency order."""
        self._require_initialized()
        return self.forward.run(mode)

    def sync_table(self, name: str, mode: Literal["full", "incremental"] = "incremental") -> TableSyncResult:
        """
        Forward-sync a single table.

        Args:
            name: Logical name, origin table or cloud table

        Raises:
            UnknownTableError: If the name is not registered
        """
        self._require_initialized()
        descriptor = self.registry.get(name)
        if not descriptor.forward:
            raise SyncError(f"Table '{descriptor.name}' is not configured for forward sync")

        self.forward.refresh_schema()
        result, _ = self.forward.sync_table(descriptor, mode)
        return result

    def sync_reverse(self) -> RunSummary:
        """Reverse-sync every table with a reverse rule."""
        self._require_initialized()
        return self.reverse.run()

    def sync_reverse_table(self, name: str) -> TableSyncResult:
        """
        Reverse-sync a single table.

        Raises:
            UnknownTableError: If the name is not registered
        """
        self._require_initialized()
        self.reverse.refresh_schema()
        return self.reverse.sync_table(self.registry.get(name))

    def status(self, direction: Literal["forward", "reverse"] = "forward") -> list[Watermark]:
        """Every watermark row of one direction, ordered by table name."""
        self._require_initialized()
        store = self.forward_watermarks if direction == "forward" else self.reverse_watermarks
        return store.list_all()

    def cleanup(self) -> None:
        """Close both pools. Safe to call more than once."""
        self.origin.close()
        self.cloud.close()
        self._initialized = False

    def __enter__(self):
        self.initialize()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.cleanup()
        return False
