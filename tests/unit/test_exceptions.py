"""Tests for the migration error taxonomy."""

import pytest

from hybridmigrate.core.exceptions import (
    ApplicationError,
    DetectionError,
    GenerationError,
    InspectionNotImplementedError,
    LedgerError,
    MigrationError,
    MigrationFileError,
    MissingMigrationFilesError,
    ModeViolationError,
    NoChangesError,
    ValidationError,
)


@pytest.mark.parametrize(
    "error",
    [
        DetectionError("x"),
        InspectionNotImplementedError("mysql"),
        ValidationError(["cycle"]),
        ModeViolationError("Automatic", "destructive changes"),
        GenerationError("x"),
        ApplicationError("m1", None, "boom"),
        LedgerError("x"),
        NoChangesError(),
        MissingMigrationFilesError(2),
        MigrationFileError("x"),
    ],
)
def test_every_error_is_a_migration_error(error):
    assert isinstance(error, MigrationError)
    assert str(error) == error.message


def test_inspection_not_implemented_is_detection_error():
    error = InspectionNotImplementedError("mysql")

    assert isinstance(error, DetectionError)
    assert error.message == "mysql schema inspection not yet implemented"
    assert error.details == {"dialect": "mysql"}


def test_mode_violation_names_mode():
    error = ModeViolationError("Automatic", "destructive changes")

    assert error.mode == "Automatic"
    assert "Automatic" in error.message


def test_application_error_includes_statement():
    error = ApplicationError("20240101000000_init", "DROP TABLE x", "no such table: x")

    assert error.statement == "DROP TABLE x"
    assert error.details["migration_id"] == "20240101000000_init"
    assert "(statement: DROP TABLE x)" in error.message


def test_missing_migration_files_message():
    error = MissingMigrationFilesError(3)

    assert "generate migration files first" in error.message
    assert error.change_count == 3


def test_details_default_to_empty_dict():
    assert MigrationError("x").details == {}
    assert NoChangesError().message == "no changes detected"
