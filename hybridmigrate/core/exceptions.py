"""Custom exceptions for the migration engine."""

from typing import Any


class MigrationError(Exception):
    """Base exception for migration engine errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class DetectionError(MigrationError):
    """Raised when the model registry or database inspector fails."""

    pass


class InspectionNotImplementedError(DetectionError):
    """Raised when schema inspection is not yet implemented for a dialect."""

    def __init__(self, dialect: str) -> None:
        super().__init__(
            f"{dialect} schema inspection not yet implemented",
            details={"dialect": dialect},
        )
        self.dialect = dialect


class ValidationError(MigrationError):
    """Raised when a migration plan fails validation (circular dependencies)."""

    def __init__(self, errors: list[str]) -> None:
        super().__init__(
            f"migration plan validation failed: {'; '.join(errors)}",
            details={"errors": errors},
        )
        self.errors = errors


class ModeViolationError(MigrationError):
    """Raised when a change is not allowed under the requested migration mode."""

    def __init__(self, mode: str, reason: str) -> None:
        super().__init__(f"{mode} mode cannot apply {reason}", details={"mode": mode})
        self.mode = mode
        self.reason = reason


class GenerationError(MigrationError):
    """Raised when SQL cannot be generated for a change on the target dialect."""

    def __init__(self, message: str, dialect: str | None = None, change_type: str | None = None) -> None:
        super().__init__(message, details={"dialect": dialect, "change_type": change_type})
        self.dialect = dialect
        self.change_type = change_type


class ApplicationError(MigrationError):
    """Raised when a migration script fails to execute."""

    def __init__(self, migration_id: str, statement: str | None, error: str) -> None:
        message = f"failed to apply migration {migration_id}: {error}"
        if statement:
            message += f" (statement: {statement})"
        super().__init__(
            message,
            details={"migration_id": migration_id, "statement": statement, "error": error},
        )
        self.migration_id = migration_id
        self.statement = statement
        self.error = error


class LedgerError(MigrationError):
    """Raised when the migration history tables cannot be read or written."""

    pass


class NoChangesError(MigrationError):
    """Raised when a migration is requested but models match the database."""

    def __init__(self) -> None:
        super().__init__("no changes detected")


class MissingMigrationFilesError(MigrationError):
    """Raised when the database differs from the models but no migration file covers it."""

    def __init__(self, change_count: int) -> None:
        super().__init__(
            f"detected {change_count} schema change(s) that require migration files; "
            "generate migration files first",
            details={"change_count": change_count},
        )
        self.change_count = change_count


class MigrationFileError(MigrationError):
    """Raised when a migration file cannot be read, parsed or found."""

    pass
