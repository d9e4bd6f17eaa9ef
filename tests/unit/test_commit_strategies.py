"""
Unit tests for commit strategy selection and generated SQL.

SQL is rendered without a connection, so these tests need no database.
"""

import pytest
from psycopg import sql

from bisync.core.registry import DescriptorConfigBuilder
from bisync.forward import ForwardSyncEngine
from bisync.reverse import ReverseSyncEngine
from bisync.stores.commit_strategies import DeleteInsertStrategy, UpsertStrategy, strategy_for
from bisync.stores.staging import adapt_value, batch_columns

STAGE = sql.Identifier("_stage_reminder")


def render(composable) -> str:
    return composable.as_string(None)


class TestStrategySelection:
    """Tests for strategy_for"""

    def test_stable_key_upserts(self, test_registry):
        strategy = strategy_for(test_registry.get("mbreminder"), marker_present=True)
        assert isinstance(strategy, UpsertStrategy)
        assert strategy.name == "upsert"

    def test_unstable_key_deletes_and_inserts(self, test_registry):
        strategy = strategy_for(test_registry.get("jobtasks"), marker_present=True)
        assert isinstance(strategy, DeleteInsertStrategy)
        assert strategy.name == "delete_insert"

    def test_reference_tables_upsert(self, test_registry):
        assert isinstance(strategy_for(test_registry.get("orgmaster"), marker_present=False), UpsertStrategy)


class TestUpsertStrategy:
    """Tests for the generated upsert"""

    def test_update_guarded_by_origin_marker(self, test_registry):
        """Test cloud-authored rows are never overwritten"""
        strategy = UpsertStrategy(test_registry.get("mbreminder"), marker_present=True)
        [statement] = strategy.statements(STAGE, ["rem_id", "remtitle", "source"])
        text = render(statement)

        assert text.startswith('INSERT INTO "public"."reminder" ("rem_id", "remtitle", "source")')
        assert 'FROM "_stage_reminder"' in text
        assert 'ON CONFLICT ("rem_id") DO UPDATE SET' in text
        assert '"remtitle" = EXCLUDED."remtitle"' in text
        assert '"rem_id" = EXCLUDED' not in text
        assert "WHERE \"reminder\".\"source\" = 'D' OR \"reminder\".\"source\" IS NULL" in text

    def test_one_staged_row_per_key(self, test_registry):
        """Test repeated origin keys collapse before ON CONFLICT sees them"""
        strategy = UpsertStrategy(test_registry.get("mbreminder"), marker_present=True)
        [statement] = strategy.statements(STAGE, ["rem_id", "remtitle", "source", "updated_at"])
        text = render(statement)

        assert (
            'SELECT DISTINCT ON ("rem_id") "rem_id", "remtitle", "source", "updated_at" '
            'FROM "_stage_reminder" ORDER BY "rem_id", ctid DESC ON CONFLICT'
        ) in text

    def test_newest_staged_row_wins(self):
        registry = DescriptorConfigBuilder().add_reference("orgmaster", "org_id").build()
        strategy = UpsertStrategy(registry.get("orgmaster"), marker_present=False)
        [statement] = strategy.statements(
            sql.Identifier("_stage_orgmaster"), ["org_id", "orgname", "updated_at", "created_at"]
        )

        assert (
            'ORDER BY "org_id", "updated_at" DESC NULLS LAST, "created_at" DESC NULLS LAST, ctid DESC'
        ) in render(statement)

    def test_no_marker_column_updates_unconditionally(self, test_registry):
        strategy = UpsertStrategy(test_registry.get("orgmaster"), marker_present=False)
        [statement] = strategy.statements(sql.Identifier("_stage_orgmaster"), ["org_id", "orgname"])
        text = render(statement)
        assert "WHERE" not in text
        assert '"orgname" = EXCLUDED."orgname"' in text

    def test_key_only_batch_does_nothing_on_conflict(self, test_registry):
        strategy = UpsertStrategy(test_registry.get("orgmaster"), marker_present=False)
        [statement] = strategy.statements(sql.Identifier("_stage_orgmaster"), ["org_id"])
        assert render(statement).endswith("DO NOTHING")

    def test_missing_key_column_rejected(self, test_registry):
        strategy = UpsertStrategy(test_registry.get("mbreminder"), marker_present=True)
        with pytest.raises(ValueError) as exc_info:
            strategy.statements(STAGE, ["remtitle"])
        assert "rem_id" in str(exc_info.value)


class TestDeleteInsertStrategy:
    """Tests for the generated delete and insert"""

    def test_delete_spares_cloud_rows(self, test_registry):
        strategy = DeleteInsertStrategy(test_registry.get("jobtasks"), marker_present=True)
        delete, insert = strategy.statements(sql.Identifier("_stage_jobtasks"), ["job_id", "source"])

        assert render(delete) == "DELETE FROM \"public\".\"jobtasks\" WHERE \"source\" = 'D' OR \"source\" IS NULL"
        assert render(insert) == (
            'INSERT INTO "public"."jobtasks" ("job_id", "source") SELECT "job_id", "source" FROM "_stage_jobtasks"'
        )

    def test_without_marker_column_replaces_everything(self, test_registry):
        strategy = DeleteInsertStrategy(test_registry.get("jobtasks"), marker_present=False)
        delete, _ = strategy.statements(sql.Identifier("_stage_jobtasks"), ["job_id"])
        assert render(delete) == 'DELETE FROM "public"."jobtasks"'


class TestExtractQueries:
    """Tests for the extraction SQL of both directions"""

    def test_incremental_forward_extract(self, test_registry):
        engine = ForwardSyncEngine(None, None, test_registry, None)
        query = engine.build_extract_query(
            test_registry.get("mbreminder"), "incremental", ["updated_at", "created_at"], marker_on_origin=True
        )
        assert render(query) == (
            'SELECT * FROM "public"."mbreminder" WHERE ("updated_at" > %s OR "created_at" > %s) '
            "AND \"source\" IS DISTINCT FROM 'M'"
        )

    def test_full_forward_extract_without_marker(self, test_registry):
        engine = ForwardSyncEngine(None, None, test_registry, None)
        query = engine.build_extract_query(test_registry.get("orgmaster"), "full", [], marker_on_origin=False)
        assert render(query) == 'SELECT * FROM "public"."orgmaster"'

    def test_deduplicating_extract(self):
        registry = (
            DescriptorConfigBuilder()
            .add_transactional("jobshead", primary_key="job_id", deduplicate=True)
            .build()
        )
        engine = ForwardSyncEngine(None, None, registry, None)
        query = engine.build_extract_query(registry.get("jobshead"), "full", ["updated_at"], marker_on_origin=False)
        assert render(query) == (
            'SELECT DISTINCT ON ("job_id") * FROM "public"."jobshead" '
            'ORDER BY "job_id", "updated_at" DESC NULLS LAST'
        )

    def test_reverse_extract(self, test_registry):
        engine = ReverseSyncEngine(None, None, test_registry, None)
        query = engine.build_extract_query(test_registry.get("learequest"), has_timestamp=True, cloud_only=True)
        assert render(query) == (
            "SELECT * FROM \"public\".\"learequest\" WHERE \"updated_at\" > %s AND \"source\" = 'M' "
            'ORDER BY "updated_at"'
        )

    def test_reverse_extract_without_timestamp(self, test_registry):
        engine = ReverseSyncEngine(None, None, test_registry, None)
        query = engine.build_extract_query(test_registry.get("workdiary"), has_timestamp=False, cloud_only=False)
        assert render(query) == 'SELECT * FROM "public"."workdiary"'


class TestStagingHelpers:
    """Tests for staging helpers"""

    def test_batch_columns_is_ordered_union(self):
        records = [{"a": 1, "b": 2}, {"b": 3, "c": 4}]
        assert batch_columns(records) == ["a", "b", "c"]

    def test_adapt_value_wraps_dicts(self):
        wrapped = adapt_value({"k": "v"})
        assert wrapped.obj == {"k": "v"}
        assert adapt_value(5) == 5
