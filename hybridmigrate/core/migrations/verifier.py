"""Migration verifier for checking the ledger against migration files."""

import logging
from collections import Counter
from typing import Dict

from hybridmigrate.core.migrations.file_store import MigrationFileStore
from hybridmigrate.core.migrations.history import MigrationHistory
from hybridmigrate.core.migrations.models import MigrationFile, MigrationState, VerificationResult

logger = logging.getLogger(__name__)


class MigrationVerifier:
    """Verifier for ledger and migration file consistency."""

    def __init__(self, history: MigrationHistory, file_store: MigrationFileStore):
        self.history = history
        self.file_store = file_store

    def verify(self) -> VerificationResult:
        """Check applied migrations against the files on disk.

        Returns:
            VerificationResult object
        """
        result = VerificationResult()
        files: Dict[str, MigrationFile] = {m.migration_id: m for m in self.file_store.load_all()}
        applied = self.history.get_applied_migrations()

        # Orphaned migrations (in DB but not in files)
        for record in applied:
            migration = files.get(record.migration_id)
            if migration is None:
                result.orphaned.append(record.migration_id)
                result.issues.append(f"Applied migration {record.migration_id} has no migration file")
                continue
            if record.checksum and migration.checksum and record.checksum != migration.checksum:
                result.checksum_mismatches.append((record.migration_id, record.checksum, migration.checksum))
                result.issues.append(
                    f"Checksum mismatch for {record.migration_id}: "
                    f"ledger {record.checksum[:12]}, file {migration.checksum[:12]}"
                )

        name_counts = Counter(m.name for m in files.values())
        for name, count in sorted(name_counts.items()):
            if count > 1:
                result.duplicate_names.append(name)
                result.issues.append(f"Migration name '{name}' is used by {count} files")

        # Failed attempts that were never applied afterwards
        applied_ids = {record.migration_id for record in applied}
        latest_state: Dict[str, MigrationState] = {}
        for record in self.history.get_history():
            latest_state[record.migration_id] = record.state
        for migration_id, state in latest_state.items():
            if state == MigrationState.FAILED and migration_id not in applied_ids:
                result.failed.append(migration_id)
                result.issues.append(f"Migration {migration_id} failed and has not been applied")

        if result.ok:
            logger.info("Migration ledger matches migration files")
        else:
            logger.warning(f"Migration verification found {len(result.issues)} issue(s)")
        return result
