"""
Runtime configuration for store connections and the engine.

Values come from the environment (optionally seeded from a .env file) so the
same code runs against a local origin server and a hosted cloud database.
"""

import os
from pathlib import Path
from typing import Literal

from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError

from bisync.core.exceptions import ConfigurationError

ORIGIN_PREFIX = "ORIGIN_DB_"
CLOUD_PREFIX = "CLOUD_DB_"


class StoreConfig(BaseModel):
    """
    Connection settings for one PostgreSQL store.

    Attributes:
        name: Label used in logs and errors ("origin" or "cloud")
        host, port, database, user, password: Connection target
        sslmode: libpq sslmode ("disable", "prefer", "require", ...)
        min_size, max_size: Pool bounds
        connect_timeout: Seconds allowed for establishing a connection
        pool_timeout: Seconds to wait for a free pooled connection
        idle_timeout: Seconds an idle pooled connection is kept
        statement_timeout_ms: Per-statement limit, 0 disables it
    """

    name: str
    host: str = "localhost"
    port: int = Field(5432, gt=0, lt=65536)
    database: str = "postgres"
    user: str = "postgres"
    password: str = Field(..., min_length=1, repr=False)
    sslmode: Literal["disable", "allow", "prefer", "require", "verify-ca", "verify-full"] = "prefer"
    min_size: int = Field(1, ge=0)
    max_size: int = Field(10, ge=1)
    connect_timeout: int = Field(10, ge=1)
    pool_timeout: float = Field(10.0, gt=0)
    idle_timeout: float = Field(30.0, gt=0)
    statement_timeout_ms: int = Field(0, ge=0)

    @classmethod
    def from_env(cls, name: str, prefix: str, sslmode: str = "prefer") -> "StoreConfig":
        """
        Build a store config from prefixed environment variables.

        Args:
            name: Store label
            prefix: Variable prefix, e.g. "CLOUD_DB_"
            sslmode: Default sslmode when <prefix>SSLMODE is unset

        Raises:
            ConfigurationError: If the password is missing or a value is malformed
        """
        password = os.getenv(f"{prefix}PASSWORD")
        if not password:
            raise ConfigurationError(
                f"Database password for the {name} store must be provided. "
                f"Set {prefix}PASSWORD in the environment or .env file."
            )

        try:
            return cls(
                name=name,
                host=os.getenv(f"{prefix}HOST", "localhost"),
                port=int(os.getenv(f"{prefix}PORT", "5432")),
                database=os.getenv(f"{prefix}NAME", "postgres"),
                user=os.getenv(f"{prefix}USER", "postgres"),
                password=password,
                sslmode=os.getenv(f"{prefix}SSLMODE", sslmode),
                min_size=int(os.getenv(f"{prefix}POOL_MIN", "1")),
                max_size=int(os.getenv(f"{prefix}POOL_MAX", "10")),
                connect_timeout=int(os.getenv(f"{prefix}CONNECT_TIMEOUT", "10")),
                pool_timeout=float(os.getenv(f"{prefix}POOL_TIMEOUT", "10")),
                idle_timeout=float(os.getenv(f"{prefix}IDLE_TIMEOUT", "30")),
                statement_timeout_ms=int(os.getenv(f"{prefix}STATEMENT_TIMEOUT_MS", "0")),
            )
        except (ValueError, ValidationError) as e:
            raise ConfigurationError(f"Invalid {name} store configuration: {e}") from e


class EngineSettings(BaseModel):
    """
    Everything SyncEngine needs to run.

    Attributes:
        origin: On-premises store settings
        cloud: Cloud store settings
        descriptor_path: YAML file listing the replicated tables
        strict: Halt the run on the first table failure
        forward_metadata_table: Watermark table on the cloud store
        reverse_metadata_table: Watermark table on the origin store
        log_level: Root log level for the bisync logger
        log_format: "json" or "text"
        metrics_port: Port for the Prometheus HTTP endpoint, None to disable
    """

    origin: StoreConfig
    cloud: StoreConfig
    descriptor_path: Path = Path("config/sync_descriptors.yaml")
    strict: bool = False
    forward_metadata_table: str = "_sync_metadata"
    reverse_metadata_table: str = "_reverse_sync_metadata"
    log_level: str = "INFO"
    log_format: Literal["json", "text"] = "json"
    metrics_port: int | None = None

    @classmethod
    def from_env(cls, env_file: str | Path | None = None) -> "EngineSettings":
        """
        Load settings from the environment, reading a .env file first if present.

        Args:
            env_file: Explicit .env path; defaults to searching from the cwd

        Raises:
            ConfigurationError: If required values are missing or malformed
        """
        load_dotenv(env_file)

        metrics_port = os.getenv("METRICS_PORT")
        try:
            return cls(
                origin=StoreConfig.from_env("origin", ORIGIN_PREFIX, sslmode="prefer"),
                cloud=StoreConfig.from_env("cloud", CLOUD_PREFIX, sslmode="require"),
                descriptor_path=Path(os.getenv("BISYNC_DESCRIPTORS", "config/sync_descriptors.yaml")),
                strict=os.getenv("BISYNC_STRICT", "false").lower() in ("1", "true", "yes"),
                forward_metadata_table=os.getenv("BISYNC_FORWARD_METADATA_TABLE", "_sync_metadata"),
                reverse_metadata_table=os.getenv("BISYNC_REVERSE_METADATA_TABLE", "_reverse_sync_metadata"),
                log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
                log_format=os.getenv("LOG_FORMAT", "json"),
                metrics_port=int(metrics_port) if metrics_port else None,
            )
        except (ValueError, ValidationError) as e:
            raise ConfigurationError(f"Invalid engine settings: {e}") from e
