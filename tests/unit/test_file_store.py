"""Tests for migration file persistence."""

from datetime import datetime, timezone

import pytest

from hybridmigrate.core.exceptions import MigrationFileError
from hybridmigrate.core.migrations.file_store import (
    DOWN_MARKER,
    UP_MARKER,
    MigrationFileStore,
    format_timestamp,
    parse_timestamp,
)
from hybridmigrate.core.migrations.models import ChangeType, MigrationChange, MigrationFile, MigrationMode


def make_migration(name="create users", when=None, **kwargs) -> MigrationFile:
    defaults = dict(
        name=name,
        timestamp=when or datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc),
        checksum="a" * 64,
        mode=MigrationMode.INTERACTIVE,
        up_script='CREATE TABLE "users" ("id" INTEGER PRIMARY KEY AUTOINCREMENT);',
        down_script='DROP TABLE IF EXISTS "users";',
    )
    defaults.update(kwargs)
    return MigrationFile(**defaults)


@pytest.fixture
def store(tmp_path):
    return MigrationFileStore(tmp_path / "migrations")


class TestTimestamps:
    def test_rfc3339(self):
        value = datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)

        assert format_timestamp(value) == "2024-01-02T03:04:05Z"
        assert parse_timestamp("2024-01-02T03:04:05Z") == value

    def test_naive_is_utc(self):
        assert format_timestamp(datetime(2024, 1, 2, 3, 4, 5)) == "2024-01-02T03:04:05Z"


class TestMigrationFileStore:
    """Tests for saving and loading migration files."""

    def test_save_writes_header_and_sections(self, store):
        migration = make_migration(warnings=["potential data loss: Drop column users.legacy"])

        path = store.save(migration)

        assert path.name == "20240102030405_create_users.sql"
        assert migration.file_path == path
        assert migration.migration_id == "20240102030405_create_users"

        content = path.read_text(encoding="utf-8")
        assert content.startswith("-- Migration: create users\n")
        assert "-- Created: 2024-01-02T03:04:05Z" in content
        assert f"-- Checksum: {'a' * 64}" in content
        assert "-- Mode: Interactive" in content
        assert "-- Has Destructive: false" in content
        assert "-- Requires Review: false" in content
        assert "-- WARNINGS:\n-- * potential data loss: Drop column users.legacy" in content
        assert content.index(UP_MARKER) < content.index(DOWN_MARKER)

    def test_round_trip(self, store):
        original = make_migration(errors=["something odd"])
        path = store.save(original)

        loaded = store.parse(path)

        assert loaded.name == original.name
        assert loaded.timestamp == original.timestamp
        assert loaded.checksum == original.checksum
        assert loaded.mode == MigrationMode.INTERACTIVE
        assert loaded.up_script == original.up_script
        assert loaded.down_script == original.down_script
        assert loaded.errors == ["something odd"]
        assert loaded.migration_id == original.migration_id
        assert not loaded.is_destructive()

    def test_destructive_flag_survives_reload(self, store):
        drop = MigrationChange(ChangeType.DROP_COLUMN, "users", column_name="legacy", is_destructive=True)
        migration = make_migration(name="drop legacy", changes=[drop])
        store.save(migration)

        loaded = store.load(migration.migration_id)

        assert loaded.changes == []
        assert loaded.is_destructive()
        assert loaded.requires_review()

    def test_never_overwrites(self, store):
        store.save(make_migration())

        with pytest.raises(MigrationFileError):
            store.save(make_migration())

    def test_load_all_sorted_by_timestamp(self, store):
        later = make_migration(name="second", when=datetime(2024, 5, 1, tzinfo=timezone.utc))
        earlier = make_migration(name="first", when=datetime(2024, 1, 1, tzinfo=timezone.utc))
        store.save(later)
        store.save(earlier)

        migrations = store.load_all()

        assert [m.name for m in migrations] == ["first", "second"]
        assert store.latest_timestamp() == later.timestamp
        assert store.find_by_name("second").migration_id == later.migration_id
        assert store.find_by_name("missing") is None

    def test_load_all_without_directory(self, store):
        assert store.load_all() == []
        assert store.latest_timestamp() is None

    def test_load_missing_file(self, store):
        with pytest.raises(MigrationFileError) as exc_info:
            store.load("20240101000000_nothing")

        assert exc_info.value.details["migration_id"] == "20240101000000_nothing"

    def test_parse_hand_written_file(self, store):
        store.ensure_directory()
        path = store.directory / "20240301120000_add_index.sql"
        path.write_text(
            f"{UP_MARKER}\nCREATE INDEX idx_users_email ON users (email);\n\n{DOWN_MARKER}\nDROP INDEX idx_users_email;\n",
            encoding="utf-8",
        )

        migration = store.parse(path)

        assert migration.name == "add_index"
        assert migration.timestamp == datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)
        assert migration.mode == MigrationMode.AUTOMATIC
        assert migration.down_script == "DROP INDEX idx_users_email;"

    def test_parse_rejects_file_without_up_section(self, store):
        store.ensure_directory()
        path = store.directory / "20240301120000_broken.sql"
        path.write_text("SELECT 1;\n", encoding="utf-8")

        with pytest.raises(MigrationFileError):
            store.parse(path)
