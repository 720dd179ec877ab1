"""Migration manager: wires registry, inspector, detector, generator, files and ledger."""

import logging
import time
from datetime import timedelta
from pathlib import Path
from typing import Any, List, Optional

from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from hybridmigrate.core.config import Settings, get_settings
from hybridmigrate.core.db.session import create_migration_engine, detect_dialect
from hybridmigrate.core.exceptions import (
    ApplicationError,
    MigrationError,
    MissingMigrationFilesError,
    ModeViolationError,
    NoChangesError,
)
from hybridmigrate.core.migrations.detector import ChangeDetector
from hybridmigrate.core.migrations.file_store import MigrationFileStore
from hybridmigrate.core.migrations.generator import SQLGenerator, split_statements
from hybridmigrate.core.migrations.history import MigrationHistory
from hybridmigrate.core.migrations.inspector import DatabaseInspector
from hybridmigrate.core.migrations.models import (
    ApplyResult,
    Dialect,
    MigrationFile,
    MigrationMode,
    MigrationPlan,
    MigrationRecord,
    MigrationStatus,
    ModelSnapshot,
    VerificationResult,
    utcnow,
)
from hybridmigrate.core.migrations.registry import ModelRegistry
from hybridmigrate.core.migrations.verifier import MigrationVerifier

logger = logging.getLogger(__name__)


def validate_migration_mode(has_destructive: bool, requires_review: bool, mode: MigrationMode) -> None:
    """Policy gate for a mode.

    Automatic rejects destructive and review-required changes; Interactive,
    GenerateOnly and ForceDestructive let them through.
    """
    if mode != MigrationMode.AUTOMATIC:
        return
    if has_destructive:
        raise ModeViolationError(mode.value, "destructive changes; use Interactive or ForceDestructive mode")
    if requires_review:
        raise ModeViolationError(mode.value, "changes that require manual review")


class MigrationManager:
    """Manager for model-driven SQL migrations."""

    def __init__(
        self,
        engine: Optional[Engine] = None,
        migrations_dir: Optional[Path] = None,
        dialect: Optional[Dialect] = None,
        settings: Optional[Settings] = None,
    ):
        """Initialize migration manager.

        Args:
            engine: SQLAlchemy engine. Defaults to one built from settings.database_url
            migrations_dir: Directory holding migration files. Defaults to settings.MIGRATIONS_DIR
            dialect: Target dialect. Defaults to the engine's dialect
            settings: Settings instance. Defaults to get_settings()
        """
        self.settings = settings or get_settings()
        self.engine = engine or create_migration_engine(self.settings.database_url)
        self.dialect = dialect or detect_dialect(self.engine)
        self.migrations_dir = Path(migrations_dir or self.settings.MIGRATIONS_DIR)

        self.registry = ModelRegistry(self.dialect)
        self.history = MigrationHistory(self.engine, self.dialect, self.settings)
        self.inspector = DatabaseInspector(self.engine, self.dialect, system_tables=self.history.table_names)
        self.detector = ChangeDetector(self.registry, self.inspector)
        self.generator = SQLGenerator(self.dialect)
        self.file_store = MigrationFileStore(self.migrations_dir)

    def db_set(self, *entities: Any) -> List[ModelSnapshot]:
        """Register entities with the model registry."""
        return [self.registry.register_model(entity) for entity in entities]

    def _prepare(self) -> None:
        self.file_store.ensure_directory()
        self.history.ensure_schema()

    def detect_changes(self) -> MigrationPlan:
        plan = self.detector.detect_changes()
        self.detector.validate_plan(plan)
        return plan

    def add_migration(self, name: str, mode: MigrationMode = MigrationMode.AUTOMATIC) -> MigrationFile:
        """Detect changes and write them to a new migration file.

        Returns:
            The saved MigrationFile

        Raises:
            NoChangesError: models already match the database
            ModeViolationError: the plan is destructive and mode is Automatic
        """
        self._prepare()
        plan = self.detect_changes()
        if plan.is_empty:
            raise NoChangesError()

        validate_migration_mode(plan.has_destructive, plan.requires_review, mode)

        sql = self.generator.generate_migration_sql(plan)
        migration = MigrationFile(
            name=name,
            timestamp=self._next_timestamp(),
            checksum=plan.checksum,
            mode=mode,
            up_script=sql.up_script,
            down_script=sql.down_script,
            changes=plan.changes,
            has_destructive=plan.has_destructive,
            warnings=plan.warnings + sql.warnings,
            errors=list(plan.errors),
        )
        self.file_store.save(migration)
        logger.info(
            f"Created migration {migration.migration_id} with {len(plan.changes)} change(s)"
            f"{' (destructive)' if plan.has_destructive else ''}"
        )
        return migration

    def _next_timestamp(self):
        # Keep timestamps strictly increasing so file order matches creation order
        timestamp = utcnow().replace(microsecond=0)
        latest = self.file_store.latest_timestamp()
        if latest is not None and timestamp <= latest:
            timestamp = latest + timedelta(seconds=1)
        return timestamp

    def get_pending_migrations(self) -> List[MigrationFile]:
        self._prepare()
        applied = self.history.applied_ids()
        return [m for m in self.file_store.load_all() if m.migration_id not in applied]

    def get_applied_migrations(self) -> List[MigrationFile]:
        self._prepare()
        applied = self.history.applied_ids()
        return [m for m in self.file_store.load_all() if m.migration_id in applied]

    def get_last_applied(self) -> Optional[MigrationRecord]:
        self._prepare()
        return self.history.get_last_applied()

    def apply_migrations(self, mode: MigrationMode = MigrationMode.AUTOMATIC) -> ApplyResult:
        """Apply pending migration files, one transaction per file.

        Every pending file passes the mode gate before anything is executed.

        Raises:
            MissingMigrationFilesError: nothing pending but models differ from the database
            ModeViolationError: a pending file is not allowed under mode
            ApplicationError: a statement failed; the file was rolled back and recorded as failed
        """
        self._prepare()
        pending = self.get_pending_migrations()

        if not pending:
            if len(self.registry):
                plan = self.detector.detect_changes()
                if plan.changes:
                    raise MissingMigrationFilesError(len(plan.changes))
            return ApplyResult(success=True, mode=mode, warnings=["No pending migrations"])

        for migration in pending:
            try:
                validate_migration_mode(migration.is_destructive(), migration.requires_review(), mode)
            except ModeViolationError as e:
                raise ModeViolationError(mode.value, f"{e.reason} (migration {migration.migration_id})") from e

        if mode == MigrationMode.GENERATE_ONLY:
            skipped = [m.migration_id for m in pending]
            logger.info(f"GenerateOnly mode: {len(skipped)} pending migration(s) not executed")
            return ApplyResult(
                success=True,
                mode=mode,
                skipped_migrations=skipped,
                warnings=[f"GenerateOnly mode: {len(skipped)} pending migration(s) not executed"],
            )

        result = ApplyResult(success=True, mode=mode)
        for migration in pending:
            self._apply_file(migration)
            result.applied_migrations.append(migration.migration_id)
            result.applied_count += 1
            result.warnings.extend(migration.warnings)

        if len(self.registry):
            self.history.record_snapshot(self.registry.combined_checksum(), self.registry.snapshot_definition())
        return result

    def _apply_file(self, migration: MigrationFile) -> None:
        statements = split_statements(migration.up_script)
        statement: Optional[str] = None
        started = time.perf_counter()

        try:
            with self.engine.begin() as conn:
                record_id = self.history.add_record(conn, migration)
                for statement in statements:
                    conn.exec_driver_sql(statement)
                statement = None
                elapsed_ms = int((time.perf_counter() - started) * 1000)
                self.history.mark_applied(conn, record_id, migration, elapsed_ms)
        except SQLAlchemyError as e:
            elapsed_ms = int((time.perf_counter() - started) * 1000)
            error = str(getattr(e, "orig", None) or e)
            self.history.record_failure(migration, error, elapsed_ms)
            raise ApplicationError(migration.migration_id, statement, error) from e

        logger.info(f"Applied migration {migration.migration_id} ({len(statements)} statement(s))")

    def revert_migration(self) -> MigrationRecord:
        """Run the down script of the most recently applied migration.

        Returns:
            The ledger record that was rolled back
        """
        self._prepare()
        record = self.history.get_last_applied()
        if record is None:
            raise MigrationError("no applied migrations to revert")

        migration = self.file_store.load(record.migration_id)
        statements = split_statements(migration.down_script)
        statement: Optional[str] = None

        try:
            with self.engine.begin() as conn:
                for statement in statements:
                    conn.exec_driver_sql(statement)
                statement = None
                self.history.remove_record(conn, record)
        except SQLAlchemyError as e:
            error = str(getattr(e, "orig", None) or e)
            raise ApplicationError(record.migration_id, statement, error) from e

        logger.info(f"Reverted migration {record.migration_id}")
        return record

    def get_migration_status(self) -> MigrationStatus:
        self._prepare()
        applied_ids = self.history.applied_ids()
        files = self.file_store.load_all()
        file_ids = {m.migration_id for m in files}

        status = MigrationStatus(
            applied=[m for m in files if m.migration_id in applied_ids],
            pending=[m for m in files if m.migration_id not in applied_ids],
            orphaned=sorted(applied_ids - file_ids),
        )

        if len(self.registry):
            plan = self.detector.detect_changes()
            status.current_changes = plan.changes
            status.has_pending_changes = bool(plan.changes)
            status.has_destructive = plan.has_destructive
            status.summary = self.detector.get_change_summary(plan)
        else:
            status.summary = "No models registered"
        return status

    def verify(self) -> VerificationResult:
        self._prepare()
        return MigrationVerifier(self.history, self.file_store).verify()

    def close(self) -> None:
        self.engine.dispose()
