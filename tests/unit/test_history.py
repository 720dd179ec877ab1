"""Tests for the migration history ledger on SQLite."""

from datetime import datetime, timezone

import pytest
from sqlalchemy import text

from hybridmigrate.core.migrations.history import MigrationHistory, version_of
from hybridmigrate.core.migrations.models import Dialect, MigrationFile, MigrationMode, MigrationState


@pytest.fixture
def history(engine, settings):
    history = MigrationHistory(engine, Dialect.SQLITE, settings)
    history.ensure_schema()
    return history


def make_migration(name="create users", second=0) -> MigrationFile:
    return MigrationFile(
        name=name,
        timestamp=datetime(2024, 1, 2, 3, 4, second, tzinfo=timezone.utc),
        checksum="c" * 64,
        mode=MigrationMode.AUTOMATIC,
        up_script="SELECT 1;",
        down_script="SELECT 2;",
    )


def apply(history, migration):
    with history.engine.begin() as conn:
        record_id = history.add_record(conn, migration)
        history.mark_applied(conn, record_id, migration, 12)
    return record_id


class TestMigrationHistory:
    def test_ensure_schema_is_idempotent(self, history, engine):
        history.ensure_schema()

        with engine.connect() as conn:
            tables = {
                row[0]
                for row in conn.execute(text("SELECT name FROM sqlite_master WHERE type = 'table'"))
            }
            indexes = {
                row[0]
                for row in conn.execute(text("SELECT name FROM sqlite_master WHERE type = 'index'"))
            }

        assert set(history.table_names) <= tables
        assert {"idx_migration_history_version", "idx_migration_history_state"} <= indexes

    def test_apply_records(self, history):
        migration = make_migration()

        apply(history, migration)

        records = history.get_applied_migrations()
        assert len(records) == 1
        record = records[0]
        assert record.migration_id == "20240102030400_create_users"
        assert record.state == MigrationState.APPLIED
        assert record.version == version_of(migration) == 20240102030400
        assert record.checksum == migration.checksum
        assert record.execution_time_ms == 12
        assert isinstance(record.applied_at, datetime)
        assert history.is_applied(migration.migration_id)
        assert history.applied_ids() == {migration.migration_id}

    def test_rolled_back_transaction_leaves_no_record(self, history):
        migration = make_migration()

        with pytest.raises(RuntimeError):
            with history.engine.begin() as conn:
                history.add_record(conn, migration)
                raise RuntimeError("statement failed")

        assert history.count_records() == 0

    def test_record_failure(self, history):
        migration = make_migration()

        history.record_failure(migration, "syntax error", 3)

        records = history.get_history()
        assert [r.state for r in records] == [MigrationState.FAILED]
        assert records[0].error_message == "syntax error"
        assert history.applied_ids() == set()

    def test_remove_record(self, history, engine):
        first, second = make_migration("first", 1), make_migration("second", 2)
        apply(history, first)
        apply(history, second)

        last = history.get_last_applied()
        assert last.migration_id == second.migration_id

        with engine.begin() as conn:
            history.remove_record(conn, last)

        assert history.applied_ids() == {first.migration_id}
        states = {r.migration_id: r.state for r in history.get_history()}
        assert states[second.migration_id] == MigrationState.ROLLED_BACK
        with engine.connect() as conn:
            compact = conn.execute(text(f'SELECT migration_id FROM "{history.migration_table}"')).fetchall()
        assert [row[0] for row in compact] == [first.migration_id]

    def test_snapshots(self, history):
        assert history.get_latest_snapshot() is None

        assert history.record_snapshot("h1", '{"users": {}}')
        assert not history.record_snapshot("h1", '{"users": {}}')
        assert history.record_snapshot("h2", "{}")

        assert history.get_latest_snapshot() == ("h2", "{}")
