"""
Pytest configuration and fixtures for bisync tests

This module provides shared fixtures for unit, integration, and E2E tests.
One PostgreSQL container hosts two databases standing in for the origin and
cloud stores.
"""
import os
from typing import Generator

import psycopg
import pytest
from testcontainers.postgres import PostgresContainer

from bisync.core.models import EngineSettings, StoreConfig
from bisync.core.registry import DescriptorConfigBuilder, SyncDescriptorRegistry
from bisync.forward import ForwardSyncEngine
from bisync.reverse import ReverseSyncEngine
from bisync.stores.connection import StorePool
from bisync.stores.metadata import WatermarkStore

FIXTURES_DIR = os.path.join(os.path.dirname(__file__), "fixtures")

ORIGIN_DB = "origin_db"
CLOUD_DB = "cloud_db"

MOBILE_COLUMNS = {
    "source": "D",
    "created_at": {"kind": "computed", "function": "now"},
    "updated_at": {"kind": "computed", "function": "now"},
}


# =======================
# PYTEST CONFIGURATION
# =======================

def pytest_configure(config):
    """Configure pytest with custom markers"""
    config.addinivalue_line(
        "markers", "unit: Unit tests that don't require external services"
    )
    config.addinivalue_line(
        "markers", "integration: Integration tests that require Docker containers"
    )
    config.addinivalue_line(
        "markers", "e2e: End-to-end tests that run the full sync engine"
    )
    config.addinivalue_line(
        "markers", "slow: Tests that take more than 5 seconds to run"
    )


# =======================
# REGISTRY FIXTURES
# =======================

def build_test_registry() -> SyncDescriptorRegistry:
    """Descriptor set matching tests/fixtures/*_schema.sql"""
    return (
        DescriptorConfigBuilder()
        .add_reference("orgmaster", "org_id")
        .add_reference("locmaster", "loc_id")
        .add_fk_rule("org_id", "orgmaster")
        .add_reference("mbstaff", "staff_id")
        .add_fk_rule("org_id", "orgmaster")
        .add_fk_rule("loc_id", "locmaster")
        .add_transactional(
            "jobshead",
            primary_key="job_id",
            pk_reliability="unstable",
            skip_columns=["jctincharge"],
            add_columns=MOBILE_COLUMNS,
        )
        .add_fk_rule("org_id", "orgmaster")
        .add_fk_rule("loc_id", "locmaster")
        .add_transactional("jobtasks", pk_reliability="unstable", skip_columns=["jt_id"], add_columns=MOBILE_COLUMNS)
        .add_lookup("client_id", "jobshead", "job_id", "client_id")
        .add_fk_rule("job_id", "jobshead")
        .add_fk_rule("staff_id", "mbstaff")
        .add_transactional("mbreminder", primary_key="rem_id", target_table="reminder", add_columns=MOBILE_COLUMNS)
        .add_fk_rule("staff_id", "mbstaff", exempt_values=[0])
        .add_transactional("learequest", primary_key="lea_id", add_columns=MOBILE_COLUMNS)
        .with_reverse("lea_id")
        .add_transactional("workdiary", forward=False)
        .with_reverse(
            "wd_id",
            coercions=[
                {"kind": "combine_date_time", "column": "timefrom", "date_column": "date"},
                {"kind": "combine_date_time", "column": "timeto", "date_column": "date"},
                {"kind": "truncate", "column": "tasknotes", "max_length": 50},
            ],
        )
        .build()
    )


@pytest.fixture(scope="function")
def test_registry() -> SyncDescriptorRegistry:
    """
    Registry covering reference, transactional and reverse-only tables

    Returns:
        SyncDescriptorRegistry built without touching any database
    """
    return build_test_registry()


# =======================
# DATABASE FIXTURES (Testcontainers)
# =======================

@pytest.fixture(scope="session")
def postgres_container() -> Generator[PostgresContainer, None, None]:
    """
    Start PostgreSQL container and create the origin and cloud databases

    Yields:
        PostgresContainer instance
    """
    with PostgresContainer(
        image="postgres:16.2-alpine",
        username="bisync_test",
        password="test_password",
        dbname="postgres",
    ) as postgres:
        with psycopg.connect(
            host=postgres.get_container_host_ip(),
            port=int(postgres.get_exposed_port(5432)),
            user="bisync_test",
            password="test_password",
            dbname="postgres",
            autocommit=True,
        ) as conn:
            for database in (ORIGIN_DB, CLOUD_DB):
                conn.execute(f"CREATE DATABASE {database}")

        yield postgres


def _store_config(container: PostgresContainer, name: str, database: str) -> StoreConfig:
    return StoreConfig(
        name=name,
        host=container.get_container_host_ip(),
        port=int(container.get_exposed_port(5432)),
        database=database,
        user="bisync_test",
        password="test_password",
        sslmode="disable",
        min_size=1,
        max_size=4,
        connect_timeout=5,
        pool_timeout=5.0,
    )


@pytest.fixture(scope="session")
def origin_config(postgres_container) -> StoreConfig:
    return _store_config(postgres_container, "origin", ORIGIN_DB)


@pytest.fixture(scope="session")
def cloud_config(postgres_container) -> StoreConfig:
    return _store_config(postgres_container, "cloud", CLOUD_DB)


def _apply_schema(config: StoreConfig, filename: str) -> None:
    with open(os.path.join(FIXTURES_DIR, filename)) as f:
        ddl = f.read()

    with psycopg.connect(
        host=config.host,
        port=config.port,
        user=config.user,
        password=config.password,
        dbname=config.database,
    ) as conn:
        conn.execute(ddl)
        conn.commit()


@pytest.fixture(scope="function")
def clean_stores(origin_config, cloud_config) -> None:
    """
    Recreate both schemas (and drop both metadata tables) before a test
    """
    _apply_schema(origin_config, "origin_schema.sql")
    _apply_schema(cloud_config, "cloud_schema.sql")


@pytest.fixture(scope="function")
def origin_pool(clean_stores, origin_config) -> Generator[StorePool, None, None]:
    """
    Open origin store pool on a freshly created schema

    Yields:
        Opened StorePool
    """
    pool = StorePool(origin_config)
    pool.open(max_retries=1)
    yield pool
    pool.close()


@pytest.fixture(scope="function")
def cloud_pool(clean_stores, cloud_config) -> Generator[StorePool, None, None]:
    """
    Open cloud store pool on a freshly created schema

    Yields:
        Opened StorePool
    """
    pool = StorePool(cloud_config)
    pool.open(max_retries=1)
    yield pool
    pool.close()


# =======================
# ENGINE FIXTURES
# =======================

@pytest.fixture(scope="function")
def forward_watermarks(cloud_pool) -> WatermarkStore:
    return WatermarkStore(cloud_pool, "_sync_metadata", direction="forward")


@pytest.fixture(scope="function")
def reverse_watermarks(origin_pool) -> WatermarkStore:
    return WatermarkStore(origin_pool, "_reverse_sync_metadata", direction="reverse")


@pytest.fixture(scope="function")
def forward_engine(origin_pool, cloud_pool, test_registry, forward_watermarks) -> ForwardSyncEngine:
    """
    Forward engine wired to both test stores

    Returns:
        ForwardSyncEngine in continue-on-error mode
    """
    return ForwardSyncEngine(origin_pool, cloud_pool, test_registry, forward_watermarks)


@pytest.fixture(scope="function")
def reverse_engine(origin_pool, cloud_pool, test_registry, reverse_watermarks) -> ReverseSyncEngine:
    """
    Reverse engine wired to both test stores

    Returns:
        ReverseSyncEngine in continue-on-error mode
    """
    return ReverseSyncEngine(origin_pool, cloud_pool, test_registry, reverse_watermarks)


@pytest.fixture(scope="function")
def engine_settings(clean_stores, origin_config, cloud_config) -> EngineSettings:
    """
    Engine settings pointing at the test stores

    Returns:
        EngineSettings with text logging and no metrics server
    """
    return EngineSettings(
        origin=origin_config,
        cloud=cloud_config,
        log_level="DEBUG",
        log_format="text",
    )


# =======================
# CONFIGURATION FIXTURES
# =======================

@pytest.fixture(scope="function")
def store_env(monkeypatch):
    """
    Set the environment variables EngineSettings.from_env() reads

    Returns:
        The monkeypatch fixture, for further overrides
    """
    for prefix in ("ORIGIN_DB_", "CLOUD_DB_"):
        monkeypatch.setenv(f"{prefix}HOST", f"{prefix.split('_')[0].lower()}.example.internal")
        monkeypatch.setenv(f"{prefix}PORT", "5433")
        monkeypatch.setenv(f"{prefix}NAME", "powerca")
        monkeypatch.setenv(f"{prefix}USER", "sync")
        monkeypatch.setenv(f"{prefix}PASSWORD", "secret")
    for name in ("BISYNC_STRICT", "METRICS_PORT", "LOG_FORMAT", "LOG_LEVEL", "BISYNC_DESCRIPTORS"):
        monkeypatch.delenv(name, raising=False)
    return monkeypatch
