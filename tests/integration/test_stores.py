"""
Integration tests for the store layer: pools, introspection, watermarks and
staging, against a real PostgreSQL container.
"""
from datetime import datetime, timedelta, timezone

import psycopg
import pytest

from bisync.core.exceptions import StoreConnectionError
from bisync.core.models import EPOCH, StoreConfig
from bisync.stores.connection import StorePool
from bisync.stores.introspection import SchemaInspector
from bisync.stores.staging import StagingTable

T0 = datetime(2025, 6, 1, 9, 0, tzinfo=timezone.utc)


@pytest.mark.integration
class TestStorePool:
    """Tests for StorePool"""

    def test_execute_query_returns_dicts(self, cloud_pool):
        result = cloud_pool.execute_query("SELECT 42 AS answer")
        assert result == [{"answer": 42}]

    def test_session_timezone_is_utc(self, origin_pool):
        [row] = origin_pool.execute_query("SELECT current_setting('TimeZone') AS tz")
        assert row["tz"] == "UTC"

    def test_execute_command_commits(self, origin_pool):
        inserted = origin_pool.execute_command(
            "INSERT INTO orgmaster (org_id, orgname) VALUES (%s, %s), (%s, %s)", (1, "Head Office", 2, "Branch")
        )
        assert inserted == 2
        assert len(origin_pool.execute_query("SELECT * FROM orgmaster")) == 2

    def test_connection_rolls_back_on_error(self, origin_pool):
        with pytest.raises(psycopg.errors.UniqueViolation):
            with origin_pool.get_connection() as conn:
                conn.execute("INSERT INTO orgmaster (org_id) VALUES (1)")
                conn.execute("INSERT INTO orgmaster (org_id) VALUES (1)")

        assert origin_pool.execute_query("SELECT * FROM orgmaster") == []

    def test_unreachable_store(self):
        pool = StorePool(
            StoreConfig(
                name="origin",
                host="127.0.0.1",
                port=1,
                password="pw",
                sslmode="disable",
                connect_timeout=1,
                pool_timeout=1.0,
            )
        )
        with pytest.raises(StoreConnectionError) as exc_info:
            pool.open(max_retries=2, retry_delay=0)

        assert exc_info.value.store == "origin"
        assert "2 attempts" in str(exc_info.value)
        assert not pool.is_open


@pytest.mark.integration
class TestSchemaInspector:
    """Tests for SchemaInspector"""

    def test_columns_in_ordinal_order(self, cloud_pool):
        inspector = SchemaInspector(cloud_pool)
        assert inspector.column_names("learequest") == [
            "lea_id",
            "staff_id",
            "leavetype",
            "fromdate",
            "remarks",
            "source",
            "created_at",
            "updated_at",
        ]

    def test_missing_table(self, cloud_pool):
        inspector = SchemaInspector(cloud_pool)
        assert inspector.columns("payroll") == {}
        assert not inspector.table_exists("payroll")

    def test_varchar_limits(self, origin_pool):
        limits = SchemaInspector(origin_pool).varchar_limits("workdiary")
        assert limits == {"tasknotes": 50, "doc_ref": 15, "source": 1}

    def test_present_columns_keeps_candidate_order(self, origin_pool):
        inspector = SchemaInspector(origin_pool)
        assert inspector.present_columns("mbreminder", ["updated_at", "created_at", "modified_on"]) == [
            "updated_at",
            "created_at",
        ]
        assert inspector.present_columns("jobtasks", ["updated_at", "created_at"]) == []

    def test_primary_key(self, cloud_pool):
        inspector = SchemaInspector(cloud_pool)
        assert inspector.primary_key("reminder") == ["rem_id"]
        assert inspector.primary_key("jobshead") == []

    def test_cache_and_invalidate(self, cloud_pool):
        inspector = SchemaInspector(cloud_pool)
        assert not inspector.has_column("reminder", "priority")

        cloud_pool.execute_command("ALTER TABLE reminder ADD COLUMN priority INTEGER")
        assert not inspector.has_column("reminder", "priority")

        inspector.invalidate("reminder")
        assert inspector.has_column("reminder", "priority")


@pytest.mark.integration
class TestWatermarkStore:
    """Tests for WatermarkStore"""

    def test_missing_metadata_table(self, forward_watermarks):
        assert forward_watermarks.get("jobshead") is None
        assert forward_watermarks.get_timestamp("jobshead") == EPOCH
        assert forward_watermarks.list_all() == []

    def test_ensure_table_seeds_pending_rows(self, forward_watermarks):
        forward_watermarks.ensure_table(["orgmaster", "jobshead"])

        rows = forward_watermarks.list_all()
        assert [w.table_name for w in rows] == ["jobshead", "orgmaster"]
        assert all(w.sync_status == "pending" and w.last_sync_timestamp == EPOCH for w in rows)

    def test_ensure_table_keeps_existing_rows(self, forward_watermarks):
        forward_watermarks.ensure_table(["jobshead"])
        forward_watermarks.record_success("jobshead", T0, 5)

        forward_watermarks.ensure_table(["jobshead", "jobtasks"])

        assert forward_watermarks.get_timestamp("jobshead") == T0
        assert forward_watermarks.get("jobtasks").sync_status == "pending"

    def test_watermark_never_moves_backwards(self, forward_watermarks):
        forward_watermarks.ensure_table(["mbreminder"])

        assert forward_watermarks.record_success("mbreminder", T0, 3) == T0
        assert forward_watermarks.record_success("mbreminder", T0 - timedelta(days=1), 1) == T0
        assert forward_watermarks.record_success("mbreminder", None, 0) == T0

        watermark = forward_watermarks.get("mbreminder")
        assert watermark.last_sync_timestamp == T0
        assert watermark.records_synced == 0
        assert watermark.sync_status == "success"

    def test_record_success_creates_missing_row(self, forward_watermarks):
        forward_watermarks.ensure_table()
        assert forward_watermarks.record_success("learequest", None, 0) == EPOCH
        assert forward_watermarks.get("learequest").sync_status == "success"

    def test_record_error_keeps_timestamp(self, forward_watermarks):
        forward_watermarks.ensure_table(["mbreminder"])
        forward_watermarks.record_success("mbreminder", T0, 3)

        forward_watermarks.record_error("mbreminder", "check constraint violated")

        watermark = forward_watermarks.get("mbreminder")
        assert watermark.sync_status == "error"
        assert watermark.error_message == "check constraint violated"
        assert watermark.last_sync_timestamp == T0

        forward_watermarks.record_success("mbreminder", T0, 0)
        assert forward_watermarks.get("mbreminder").error_message is None

    def test_record_error_without_metadata_table_does_not_raise(self, forward_watermarks):
        forward_watermarks.record_error("mbreminder", "boom")  # Should not raise

    def test_record_success_joins_caller_transaction(self, cloud_pool, forward_watermarks):
        """Test a rolled back transaction also discards the watermark write"""
        forward_watermarks.ensure_table(["mbreminder"])

        with pytest.raises(RuntimeError):
            with cloud_pool.get_connection() as conn:
                with conn.transaction():
                    forward_watermarks.record_success("mbreminder", T0, 3, conn=conn)
                    raise RuntimeError("commit failed")

        assert forward_watermarks.get_timestamp("mbreminder") == EPOCH


@pytest.mark.integration
class TestStagingTable:
    """Tests for StagingTable"""

    def test_staging_is_dropped_at_commit(self, cloud_pool):
        with cloud_pool.get_connection() as conn:
            with conn.transaction():
                stage = StagingTable(conn, "public", "reminder")
                stage.create()
                assert stage.load(["rem_id", "remtitle"], [{"rem_id": 1, "remtitle": "Call"}, {"rem_id": 2}]) == 2
                count = conn.execute(f"SELECT count(*) AS n FROM {stage.name}").fetchone()["n"]
                assert count == 2

            exists = conn.execute("SELECT to_regclass('pg_temp._stage_reminder') AS t").fetchone()["t"]
            assert exists is None

    def test_load_failure_aborts_transaction(self, cloud_pool):
        with pytest.raises(psycopg.DataError):
            with cloud_pool.get_connection() as conn:
                with conn.transaction():
                    stage = StagingTable(conn, "public", "reminder")
                    stage.create()
                    stage.load(["rem_id"], [{"rem_id": "not-a-number"}])
