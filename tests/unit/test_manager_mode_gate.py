"""Tests for the migration mode gate and MigrationManager orchestration."""

from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from hybridmigrate.core.exceptions import (
    MissingMigrationFilesError,
    ModeViolationError,
    NoChangesError,
)
from hybridmigrate.core.migrations.manager import MigrationManager, validate_migration_mode
from hybridmigrate.core.migrations.models import (
    ChangeType,
    MigrationChange,
    MigrationFile,
    MigrationMode,
    MigrationPlan,
)


class TestValidateMigrationMode:
    """Automatic refuses destructive or review-required changes; other modes allow them."""

    @pytest.mark.parametrize(
        "mode",
        [MigrationMode.INTERACTIVE, MigrationMode.GENERATE_ONLY, MigrationMode.FORCE_DESTRUCTIVE],
    )
    def test_non_automatic_modes_allow_everything(self, mode):
        validate_migration_mode(True, True, mode)

    def test_automatic_allows_safe_changes(self):
        validate_migration_mode(False, False, MigrationMode.AUTOMATIC)

    def test_automatic_rejects_destructive(self):
        with pytest.raises(ModeViolationError) as exc_info:
            validate_migration_mode(True, True, MigrationMode.AUTOMATIC)

        assert exc_info.value.mode == "Automatic"
        assert "destructive" in exc_info.value.reason

    def test_automatic_rejects_review(self):
        with pytest.raises(ModeViolationError) as exc_info:
            validate_migration_mode(False, True, MigrationMode.AUTOMATIC)

        assert "review" in exc_info.value.reason


def pending_file(name: str, destructive: bool) -> MigrationFile:
    return MigrationFile(
        name=name,
        timestamp=datetime(2024, 1, 1, tzinfo=timezone.utc),
        checksum="0" * 64,
        mode=MigrationMode.INTERACTIVE,
        up_script="SELECT 1;",
        file_path=Path(f"/migrations/20240101000000_{name}.sql"),
        has_destructive=destructive,
    )


@pytest.fixture
def mocked_manager(manager):
    """Manager whose collaborators are replaced by mocks."""
    manager.history = MagicMock()
    manager.history.applied_ids.return_value = set()
    manager.file_store = MagicMock()
    manager.file_store.latest_timestamp.return_value = None
    manager.detector = MagicMock()
    manager.generator = MagicMock()
    manager._apply_file = MagicMock()
    return manager


class TestManagerGate:
    def test_add_migration_rejects_empty_plan(self, mocked_manager):
        mocked_manager.detector.detect_changes.return_value = MigrationPlan()

        with pytest.raises(NoChangesError):
            mocked_manager.add_migration("nothing")

        mocked_manager.file_store.save.assert_not_called()

    def test_add_migration_rejects_destructive_in_automatic(self, mocked_manager):
        drop = MigrationChange(ChangeType.DROP_TABLE, "users", is_destructive=True)
        mocked_manager.detector.detect_changes.return_value = MigrationPlan(
            changes=[drop], has_destructive=True, requires_review=True
        )

        with pytest.raises(ModeViolationError):
            mocked_manager.add_migration("drop users", MigrationMode.AUTOMATIC)

        mocked_manager.generator.generate_migration_sql.assert_not_called()
        mocked_manager.file_store.save.assert_not_called()

    def test_apply_gates_every_file_before_executing(self, mocked_manager):
        mocked_manager.file_store.load_all.return_value = [
            pending_file("safe", False),
            pending_file("dangerous", True),
        ]

        with pytest.raises(ModeViolationError) as exc_info:
            mocked_manager.apply_migrations(MigrationMode.AUTOMATIC)

        assert "20240101000000_dangerous" in exc_info.value.message
        mocked_manager._apply_file.assert_not_called()

    def test_apply_force_destructive_runs_all(self, mocked_manager):
        mocked_manager.file_store.load_all.return_value = [
            pending_file("safe", False),
            pending_file("dangerous", True),
        ]

        result = mocked_manager.apply_migrations(MigrationMode.FORCE_DESTRUCTIVE)

        assert result.success
        assert result.applied_count == 2
        assert mocked_manager._apply_file.call_count == 2

    def test_generate_only_executes_nothing(self, mocked_manager):
        mocked_manager.file_store.load_all.return_value = [pending_file("dangerous", True)]

        result = mocked_manager.apply_migrations(MigrationMode.GENERATE_ONLY)

        assert result.skipped_migrations == ["20240101000000_dangerous"]
        assert result.applied_count == 0
        mocked_manager._apply_file.assert_not_called()

    def test_nothing_pending_but_drift(self, mocked_manager):
        mocked_manager.file_store.load_all.return_value = []
        mocked_manager.registry = MagicMock()
        mocked_manager.registry.__len__.return_value = 1
        mocked_manager.detector.detect_changes.return_value = MigrationPlan(
            changes=[MigrationChange(ChangeType.CREATE_TABLE, "users")]
        )

        with pytest.raises(MissingMigrationFilesError):
            mocked_manager.apply_migrations(MigrationMode.AUTOMATIC)

    def test_nothing_pending_without_models(self, mocked_manager):
        mocked_manager.file_store.load_all.return_value = []

        result = mocked_manager.apply_migrations()

        assert result.success
        assert result.warnings == ["No pending migrations"]
