"""Model-driven schema migrations with reviewable, reversible SQL files."""

from hybridmigrate.core.migrations.manager import MigrationManager, validate_migration_mode
from hybridmigrate.core.migrations.models import (
    ApplyResult,
    ChangeType,
    ColumnInfo,
    Dialect,
    IndexInfo,
    MigrationChange,
    MigrationFile,
    MigrationMode,
    MigrationPlan,
    MigrationStatus,
    ModelSnapshot,
    TableSchema,
    VerificationResult,
)
from hybridmigrate.core.migrations.reporter import MigrationReporter
from hybridmigrate.core.migrations.schema import Embedded, Entity, Field
from hybridmigrate.core.migrations.verifier import MigrationVerifier

__all__ = [
    "MigrationManager",
    "MigrationVerifier",
    "MigrationReporter",
    "validate_migration_mode",
    "Entity",
    "Field",
    "Embedded",
    "ApplyResult",
    "ChangeType",
    "ColumnInfo",
    "Dialect",
    "IndexInfo",
    "MigrationChange",
    "MigrationFile",
    "MigrationMode",
    "MigrationPlan",
    "MigrationStatus",
    "ModelSnapshot",
    "TableSchema",
    "VerificationResult",
]
