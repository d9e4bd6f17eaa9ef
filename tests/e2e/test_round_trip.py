"""
End-to-end tests for the SyncEngine facade.

Tests the complete flow: origin edit -> forward run -> mobile edit ->
reverse run -> forward run again, without rows bouncing between stores.
"""
from datetime import date, datetime, timezone

import pytest

from bisync.core.exceptions import StoreConnectionError, SyncError, UnknownTableError
from bisync.core.models import StoreConfig
from bisync.engine import SyncEngine


@pytest.fixture
def engine(engine_settings, test_registry):
    """Initialized engine on the test stores; closed after the test."""
    sync_engine = SyncEngine(engine_settings, registry=test_registry)
    sync_engine.initialize(max_retries=1)

    yield sync_engine

    sync_engine.cleanup()


def seed_origin(engine):
    with engine.origin.get_connection() as conn:
        conn.execute("INSERT INTO orgmaster (org_id, orgname) VALUES (1, 'Head Office')")
        conn.execute("INSERT INTO locmaster (loc_id, org_id, locname) VALUES (10, 1, 'Chennai')")
        conn.execute("INSERT INTO mbstaff (staff_id, org_id, loc_id, name) VALUES (100, 1, 10, 'Asha')")
        conn.execute(
            "INSERT INTO learequest (lea_id, staff_id, leavetype, fromdate, remarks, source, updated_at) "
            "VALUES (1, 100, 'Annual', '2025-06-10', 'Desk entry', 'D', '2025-06-01 09:00')"
        )


@pytest.mark.e2e
@pytest.mark.integration
class TestRoundTrip:
    """Tests for both directions driven through SyncEngine"""

    def test_round_trip_without_echo(self, engine):
        """
        Test complete bidirectional flow.

        Scenario:
        1. Origin row is replicated to the cloud
        2. A mobile user files a leave request in the cloud
        3. Reverse run inserts it at the origin, marked as cloud-authored
        4. The next forward run does not send it back or touch it
        """
        seed_origin(engine)

        forward = engine.sync_all("incremental")
        assert forward.succeeded
        assert engine.cloud.execute_query("SELECT lea_id, source FROM learequest") == [
            {"lea_id": 1, "source": "D"}
        ]

        engine.cloud.execute_command(
            "INSERT INTO learequest (lea_id, staff_id, leavetype, fromdate, remarks, source, updated_at) "
            "VALUES (%s, %s, %s, %s, %s, 'M', %s)",
            (2, 100, "Sick", date(2025, 6, 12), "Filed from phone", datetime(2025, 6, 2, 8, 0, tzinfo=timezone.utc)),
        )

        reverse = engine.sync_reverse()
        assert reverse.succeeded
        assert engine.origin.execute_query("SELECT lea_id, source FROM learequest ORDER BY lea_id") == [
            {"lea_id": 1, "source": "D"},
            {"lea_id": 2, "source": "M"},
        ]

        again = engine.sync_all("incremental")
        learequest = next(t for t in again.tables if t.table == "learequest")
        assert learequest.extracted == 0
        [row] = engine.cloud.execute_query("SELECT remarks, source FROM learequest WHERE lea_id = 2")
        assert row == {"remarks": "Filed from phone", "source": "M"}

    def test_status_lists_both_directions(self, engine):
        engine.sync_all()
        engine.sync_reverse()

        forward = {w.table_name: w.sync_status for w in engine.status("forward")}
        reverse = {w.table_name: w.sync_status for w in engine.status("reverse")}

        assert set(forward) == set(engine.registry.names("forward"))
        assert set(forward.values()) == {"success"}
        assert reverse == {"learequest": "success", "workdiary": "success"}

    def test_single_table_sync(self, engine):
        seed_origin(engine)

        result = engine.sync_table("orgmaster", "full")
        assert result.status == "success"
        assert result.written == 1

        # Cloud table name resolves to its descriptor
        assert engine.sync_table("reminder").table == "mbreminder"
        assert engine.sync_reverse_table("learequest").direction == "reverse"

    def test_unknown_table(self, engine):
        with pytest.raises(UnknownTableError):
            engine.sync_table("payroll")

    def test_reverse_only_table_cannot_be_forward_synced(self, engine):
        with pytest.raises(SyncError):
            engine.sync_table("workdiary")


@pytest.mark.e2e
@pytest.mark.integration
class TestEngineLifecycle:
    """Tests for initialize and cleanup"""

    def test_context_manager(self, engine_settings, test_registry):
        with SyncEngine(engine_settings, registry=test_registry) as engine:
            assert engine.origin.is_open and engine.cloud.is_open
            assert engine.sync_all().succeeded

        assert not engine.origin.is_open
        assert not engine.cloud.is_open

    def test_cleanup_is_idempotent(self, engine):
        engine.cleanup()
        engine.cleanup()  # Should not raise

        with pytest.raises(SyncError):
            engine.sync_all()

    def test_operations_require_initialize(self, engine_settings, test_registry):
        engine = SyncEngine(engine_settings, registry=test_registry)
        with pytest.raises(SyncError):
            engine.status()

    def test_unreachable_store_aborts_initialize(self, engine_settings, test_registry):
        unreachable = StoreConfig(
            name="cloud",
            host="127.0.0.1",
            port=1,
            password="pw",
            sslmode="disable",
            connect_timeout=1,
            pool_timeout=1.0,
        )
        engine = SyncEngine(
            engine_settings.model_copy(update={"cloud": unreachable}),
            registry=test_registry,
        )

        with pytest.raises(StoreConnectionError) as exc_info:
            engine.initialize(max_retries=1, retry_delay=0)

        assert exc_info.value.store == "cloud"
        # The origin pool opened first is released again
        assert not engine.origin.is_open
