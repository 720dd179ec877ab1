"""Tests for MigrationVerifier."""

from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import MagicMock

from hybridmigrate.core.migrations.models import MigrationFile, MigrationMode, MigrationRecord, MigrationState
from hybridmigrate.core.migrations.verifier import MigrationVerifier


def migration_file(migration_id: str, name: str, checksum: str = "f" * 64) -> MigrationFile:
    return MigrationFile(
        name=name,
        timestamp=datetime(2024, 1, 1, tzinfo=timezone.utc),
        checksum=checksum,
        mode=MigrationMode.AUTOMATIC,
        file_path=Path(f"/migrations/{migration_id}.sql"),
    )


def record(migration_id: str, checksum: str = "f" * 64, state=MigrationState.APPLIED) -> MigrationRecord:
    return MigrationRecord(migration_id=migration_id, name=migration_id, checksum=checksum, state=state)


def make_verifier(files, applied, history=None):
    ledger = MagicMock()
    ledger.get_applied_migrations.return_value = applied
    ledger.get_history.return_value = history if history is not None else applied
    store = MagicMock()
    store.load_all.return_value = files
    return MigrationVerifier(ledger, store)


class TestMigrationVerifier:
    def test_consistent_ledger(self):
        files = [migration_file("20240101000000_init", "init")]
        result = make_verifier(files, [record("20240101000000_init")]).verify()

        assert result.ok
        assert result.issues == []

    def test_orphaned_migration(self):
        result = make_verifier([], [record("20240101000000_init")]).verify()

        assert not result.ok
        assert result.orphaned == ["20240101000000_init"]

    def test_checksum_mismatch(self):
        files = [migration_file("20240101000000_init", "init", checksum="b" * 64)]
        result = make_verifier(files, [record("20240101000000_init", checksum="a" * 64)]).verify()

        assert result.checksum_mismatches == [("20240101000000_init", "a" * 64, "b" * 64)]
        assert "Checksum mismatch" in result.issues[0]

    def test_duplicate_names(self):
        files = [
            migration_file("20240101000000_init", "init"),
            migration_file("20240102000000_init", "init"),
        ]
        result = make_verifier(files, []).verify()

        assert result.duplicate_names == ["init"]
        assert not result.ok

    def test_failed_migration_is_reported_but_not_fatal(self):
        files = [migration_file("20240101000000_init", "init")]
        failed = record("20240101000000_init", state=MigrationState.FAILED)
        result = make_verifier(files, [], history=[failed]).verify()

        assert result.failed == ["20240101000000_init"]
        assert result.ok
